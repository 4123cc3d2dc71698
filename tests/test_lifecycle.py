from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from tests.utils_store import DOC_BARE, MEDIA, THUMB, FakeClock, RecordingNotifier, configure_env, make_user, save_payload


@pytest.fixture()
def env(tmp_path: Path, monkeypatch):
    configure_env(monkeypatch, tmp_path)

    from app.core.db import SessionLocal
    from app.projects.lifecycle import ProjectLifecycle
    from app.storage.backends import LocalBlobBackend
    from app.storage.blob_store import VersionedBlobStore

    store = VersionedBlobStore(LocalBlobBackend(tmp_path / "blobs"), clock=FakeClock(), day_tz="UTC")
    notifier = RecordingNotifier()
    db = SessionLocal()
    try:
        yield db, store, notifier, ProjectLifecycle(db, store, notifier=notifier)
    finally:
        db.close()


def _events(db, project_id: int) -> list[str]:
    from app.models.tables import AuditLog

    rows = db.query(AuditLog).order_by(AuditLog.created_at.asc()).all()
    return [r.event_type for r in rows if (r.context or {}).get("project_id") == project_id]


def test_create_writes_row_and_blobs(env):
    from app.storage.blob_store import Artifact

    db, store, _, life = env
    owner = make_user(db)

    project = life.create(owner.username, "demo", save_payload())

    assert project.id is not None
    assert project.deleted is None
    assert project.is_public is False and project.is_published is False
    assert project.last_shared is None and project.first_published is None
    assert store.get(project.id, Artifact.DOCUMENT).startswith(b"<project")
    assert store.get(project.id, Artifact.ASSETS) == MEDIA.encode()
    assert store.get(project.id, Artifact.THUMBNAIL) == THUMB.encode()
    assert "project.create" in _events(db, project.id)


def test_first_save_verifies_the_owner(env):
    db, _, _, life = env
    owner = make_user(db, verified=False)

    life.save(owner.username, "demo", save_payload())
    db.refresh(owner)
    assert owner.verified is True


def test_create_for_unknown_user_is_not_found(env):
    from app.core.errors import NotFound

    _, _, _, life = env
    with pytest.raises(NotFound):
        life.create("nobody-here", "demo", save_payload())


def test_second_create_with_same_name_conflicts(env):
    from app.core.errors import Conflict

    db, _, _, life = env
    owner = make_user(db)
    life.create(owner.username, "demo", save_payload())

    with pytest.raises(Conflict):
        life.create(owner.username, "demo", save_payload())


def test_save_dispatches_to_update_for_existing_project(env):
    from app.storage.blob_store import Artifact

    db, store, _, life = env
    owner = make_user(db)

    first = life.save(owner.username, "demo", save_payload())
    second = life.save(owner.username, "demo", save_payload(DOC_BARE))

    assert first.created is True and second.created is False
    assert first.project.id == second.project.id
    assert store.get(first.project.id, Artifact.DOCUMENT) == DOC_BARE.encode()
    assert store.get(first.project.id, Artifact.DOCUMENT, -1) != DOC_BARE.encode()


def test_update_of_missing_project_is_not_found(env):
    from app.core.errors import NotFound

    db, _, _, life = env
    owner = make_user(db)
    with pytest.raises(NotFound):
        life.update(owner.username, "ghost", save_payload())


def test_update_replaces_notes_and_bumps_last_updated(env):
    db, _, _, life = env
    owner = make_user(db)
    project = life.create(owner.username, "demo", save_payload(notes="one"))
    before = project.last_updated

    project = life.update(owner.username, "demo", save_payload(notes="two"))
    assert project.notes == "two"
    assert project.last_updated >= before


def test_visibility_timestamps(env):
    from app.projects.schemas import MetadataUpdate

    db, _, _, life = env
    owner = make_user(db)
    project = life.create(owner.username, "demo", save_payload())
    assert project.last_shared is None

    project = life.update_metadata(owner.username, "demo", MetadataUpdate(is_public=True))
    shared_at = project.last_shared
    assert shared_at is not None
    assert project.first_published is None

    # Staying public does not move last_shared.
    project = life.update(owner.username, "demo", save_payload(ispublic=True))
    assert project.last_shared == shared_at

    project = life.update_metadata(owner.username, "demo", MetadataUpdate(is_published=True))
    first_published = project.first_published
    assert first_published is not None
    assert project.last_shared >= shared_at

    project = life.update_metadata(owner.username, "demo", MetadataUpdate(is_published=False))
    project = life.update_metadata(owner.username, "demo", MetadataUpdate(is_published=True))
    assert project.first_published == first_published

    project = life.update_metadata(owner.username, "demo", MetadataUpdate(is_public=False))
    hidden_shared = project.last_shared
    project = life.update_metadata(owner.username, "demo", MetadataUpdate(is_public=True))
    assert project.last_shared > hidden_shared


def test_unset_flags_keep_current_visibility(env):
    from app.projects.schemas import MetadataUpdate

    db, _, _, life = env
    owner = make_user(db)
    life.create(owner.username, "demo", save_payload(ispublic=True, ispublished=True))

    project = life.update(owner.username, "demo", save_payload())
    assert project.is_public is True and project.is_published is True

    project = life.update_metadata(owner.username, "demo", MetadataUpdate())
    assert project.is_public is True and project.is_published is True


def test_soft_delete_keeps_row_and_blobs(env):
    from app.projects.catalog import find_active, find_tombstoned
    from app.storage.blob_store import Artifact

    db, store, notifier, life = env
    owner = make_user(db)
    project = life.create(owner.username, "demo", save_payload())

    life.soft_delete(owner.username, "demo")

    assert find_active(db, username=owner.username, projectname="demo") is None
    assert [p.id for p in find_tombstoned(db, username=owner.username, projectname="demo")] == [project.id]
    assert store.get(project.id, Artifact.DOCUMENT) is not None
    assert notifier.calls == []


def test_soft_delete_of_missing_project_is_not_found(env):
    from app.core.errors import NotFound

    db, _, _, life = env
    owner = make_user(db)
    with pytest.raises(NotFound):
        life.soft_delete(owner.username, "ghost")


def test_recreate_after_delete_gets_new_id_and_purges_old(env):
    from app.models.tables import Comment, Project
    from app.projects.catalog import find_tombstoned
    from app.storage.blob_store import Artifact
    from app.util.time import now_utc

    db, store, _, life = env
    owner = make_user(db)
    old = life.create(owner.username, "demo", save_payload())
    db.add(Comment(project_id=old.id, username=owner.username, content="nice", created_at=now_utc()))
    db.commit()
    old_id = old.id

    life.soft_delete(owner.username, "demo")
    result = life.save(owner.username, "demo", save_payload(DOC_BARE))

    assert result.created is True
    assert result.project.id != old_id
    assert db.get(Project, old_id) is None
    assert db.query(Comment).filter(Comment.project_id == old_id).count() == 0
    assert find_tombstoned(db, username=owner.username, projectname="demo") == []
    assert store.get(old_id, Artifact.DOCUMENT) is None
    assert store.get(result.project.id, Artifact.DOCUMENT) == DOC_BARE.encode()
    assert "project.purge" in _events(db, old_id)


def test_purge_requires_a_tombstone(env):
    from app.core.errors import NotFound

    db, _, _, life = env
    owner = make_user(db)
    life.create(owner.username, "demo", save_payload())

    with pytest.raises(NotFound):
        life.purge(owner.username, "demo")


def test_purge_removes_tombstone_and_blobs(env):
    from app.models.tables import Project
    from app.storage.blob_store import Artifact

    db, store, _, life = env
    owner = make_user(db)
    project = life.create(owner.username, "demo", save_payload())
    life.soft_delete(owner.username, "demo")

    assert life.purge(owner.username, "demo") == 1
    assert db.get(Project, project.id) is None
    for artifact in Artifact:
        assert store.get(project.id, artifact) is None


def test_concurrent_create_is_an_integrity_violation(env, monkeypatch):
    from app.core.errors import IntegrityViolation
    from app.projects.catalog import active_projects

    db, _, _, life = env
    owner = make_user(db)
    life.create(owner.username, "demo", save_payload())

    # Both requests passed the existence check before either inserted.
    monkeypatch.setattr("app.projects.lifecycle.find_active", lambda db, **kw: None)

    with pytest.raises(IntegrityViolation):
        life.create(owner.username, "demo", save_payload())

    rows = active_projects(db).filter_by(username=owner.username, projectname="demo").all()
    assert len(rows) == 1


def test_unreadable_blob_fails_the_save_but_keeps_the_row(env, tmp_path: Path):
    from app.core.errors import InconsistentSave
    from app.projects.catalog import find_active
    from app.projects.lifecycle import ProjectLifecycle
    from app.storage.backends import LocalBlobBackend
    from app.storage.blob_store import VersionedBlobStore

    class DroppingBackend(LocalBlobBackend):
        def write(self, key: str, data: bytes, *, written_at: datetime) -> None:
            if key.endswith("/thumbnail"):
                return
            super().write(key, data, written_at=written_at)

    db, _, notifier, _ = env
    owner = make_user(db)
    store = VersionedBlobStore(DroppingBackend(tmp_path / "dropping"), clock=FakeClock(), day_tz="UTC")
    life = ProjectLifecycle(db, store, notifier=notifier)

    with pytest.raises(InconsistentSave) as exc:
        life.create(owner.username, "demo", save_payload())
    assert exc.value.context["missing"] == ["thumbnail"]

    project = find_active(db, username=owner.username, projectname="demo")
    assert project is not None
    assert "project.save_failed" in _events(db, project.id)


def test_storage_failure_is_audited_and_raised(env, monkeypatch):
    from app.core.errors import StorageFailure
    from app.projects.catalog import find_active

    db, _, _, life = env
    owner = make_user(db)

    def boom(src, dst):
        raise OSError("disk full")

    with monkeypatch.context() as m:
        m.setattr("app.storage.backends.os.replace", boom)
        with pytest.raises(StorageFailure):
            life.create(owner.username, "demo", save_payload())

    project = find_active(db, username=owner.username, projectname="demo")
    assert "project.save_failed" in _events(db, project.id)


def test_missing_payload_field_is_a_validation_failure():
    from app.core.errors import ValidationFailure
    from app.projects.schemas import parse_save_payload

    with pytest.raises(ValidationFailure) as exc:
        parse_save_payload({"xml": DOC_BARE, "media": MEDIA})
    assert exc.value.context["fields"] == ["thumbnail"]


def test_moderator_unpublish_with_reason_notifies_owner(env):
    from app.projects.schemas import MetadataUpdate

    db, _, notifier, life = env
    owner = make_user(db, email="owner@example.com")
    life.create(owner.username, "demo", save_payload(ispublic=True, ispublished=True))

    life.update_metadata(
        owner.username, "demo", MetadataUpdate(is_published=False, reason="spam"), actor_role="moderator"
    )
    assert notifier.calls == [
        (
            "project_unpublished",
            {"email": "owner@example.com", "projectname": "demo", "actor_role": "moderator", "reason": "spam"},
        )
    ]


def test_delete_with_reason_notifies_owner(env):
    db, _, notifier, life = env
    owner = make_user(db, email="owner@example.com")
    life.create(owner.username, "demo", save_payload())

    life.soft_delete(owner.username, "demo", actor_role="admin", reason="copyright")
    assert notifier.calls == [
        (
            "project_deleted",
            {"email": "owner@example.com", "projectname": "demo", "actor_role": "admin", "reason": "copyright"},
        )
    ]


def test_failed_commit_sends_no_notification(env, monkeypatch):
    from sqlalchemy.exc import OperationalError

    from app.projects.catalog import find_active
    from app.projects.schemas import MetadataUpdate

    db, _, notifier, life = env
    owner = make_user(db, email="owner@example.com")
    life.create(owner.username, "demo", save_payload(ispublic=True, ispublished=True))

    def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    with monkeypatch.context() as m:
        m.setattr(db, "commit", failing_commit)
        with pytest.raises(OperationalError):
            life.update_metadata(
                owner.username, "demo", MetadataUpdate(is_published=False, reason="spam"), actor_role="moderator"
            )
        db.rollback()
        with pytest.raises(OperationalError):
            life.soft_delete(owner.username, "demo", actor_role="admin", reason="copyright")
        db.rollback()

    assert notifier.calls == []
    project = find_active(db, username=owner.username, projectname="demo")
    assert project is not None and project.is_published is True
