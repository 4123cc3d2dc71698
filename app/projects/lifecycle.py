"""Project lifecycle: Active -> Tombstoned -> Purged.

Catalog rows and blobs live in different stores and are written in two
phases (catalog first, then blobs). After every save the blobs are read back;
a save that cannot be read back fails loudly without rolling back the row, so
the client retries and the next save repairs it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.accounts.service import require_user, mark_verified
from app.core.errors import Conflict, InconsistentSave, IntegrityViolation, NotFound, StorageFailure
from app.models.tables import Comment, Project
from app.notify.service import CeleryNotifier, Notifier
from app.projects.catalog import audit, find_active, find_by_id, find_tombstoned
from app.projects.lineage import LineageGraph
from app.projects.schemas import MetadataUpdate, SavePayload
from app.storage.blob_store import Artifact, VersionedBlobStore
from app.util.time import now_utc

log = logging.getLogger("app")


@dataclass
class SaveResult:
    project: Project
    created: bool


class ProjectLifecycle:
    def __init__(
        self,
        db: Session,
        blobs: VersionedBlobStore,
        *,
        lineage: LineageGraph | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.db = db
        self.blobs = blobs
        self.lineage = lineage or LineageGraph(db)
        self.notifier = notifier or CeleryNotifier()

    # -- transitions ---------------------------------------------------------

    def save(self, owner: str, name: str, payload: SavePayload) -> SaveResult:
        if find_active(self.db, username=owner, projectname=name):
            return SaveResult(project=self.update(owner, name, payload), created=False)
        return SaveResult(project=self.create(owner, name, payload), created=True)

    def create(self, owner: str, name: str, payload: SavePayload) -> Project:
        user = require_user(self.db, owner)
        if find_active(self.db, username=owner, projectname=name):
            raise Conflict(f"Project {name} already exists", username=owner, projectname=name)

        # A tombstone holding this name is retired for good before reuse.
        retired = self._retire(find_tombstoned(self.db, username=owner, projectname=name), actor=owner)

        mark_verified(self.db, user)

        now = now_utc()
        project = Project(
            username=owner,
            projectname=name,
            is_public=False,
            is_published=False,
            notes=payload.notes,
            created=now,
            last_updated=now,
        )
        _apply_visibility(project, is_public=payload.is_public, is_published=payload.is_published, now=now)
        self.db.add(project)

        try:
            self.db.flush()
            if payload.remix_id is not None:
                self._record_remix(payload.remix_id, project.id)
            audit(
                self.db,
                username=owner,
                event_type="project.create",
                severity="INFO",
                message="Project created",
                context={"project_id": project.id, "projectname": name, "remix_of": payload.remix_id},
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            log.error("Concurrent create rejected: username=%s projectname=%s: %s", owner, name, str(e))
            raise IntegrityViolation(
                f"Project {name} already exists", username=owner, projectname=name
            ) from e

        self._purge_blobs(retired)
        self._write_blobs(project, payload)
        log.info("Project created: id=%s username=%s projectname=%s", project.id, owner, name)
        return project

    def update(self, owner: str, name: str, payload: SavePayload) -> Project:
        project = self._require_active(owner, name)

        self.blobs.backup(project.id)

        now = now_utc()
        _apply_visibility(project, is_public=payload.is_public, is_published=payload.is_published, now=now)
        project.last_updated = now
        project.notes = payload.notes
        audit(
            self.db,
            username=owner,
            event_type="project.update",
            severity="INFO",
            message="Project saved",
            context={"project_id": project.id, "projectname": name},
        )
        self.db.commit()

        self._write_blobs(project, payload)
        return project

    def update_metadata(self, owner: str, name: str, changes: MetadataUpdate, *, actor_role: str = "owner") -> Project:
        project = self._require_active(owner, name)

        now = now_utc()
        _apply_visibility(project, is_public=changes.is_public, is_published=changes.is_published, now=now)
        project.last_updated = now
        audit(
            self.db,
            username=owner,
            event_type="project.metadata",
            severity="INFO",
            message="Project metadata updated",
            context={
                "project_id": project.id,
                "ispublic": project.is_public,
                "ispublished": project.is_published,
                "actor_role": actor_role,
            },
        )
        self.db.commit()

        if changes.is_published is False and changes.reason:
            user = require_user(self.db, owner)
            self.notifier.project_unpublished(
                email=user.email, projectname=name, actor_role=actor_role, reason=changes.reason
            )
        return project

    def soft_delete(self, owner: str, name: str, *, actor_role: str = "owner", reason: str | None = None) -> Project:
        project = self._require_active(owner, name)

        project.deleted = now_utc()
        audit(
            self.db,
            username=owner,
            event_type="project.delete",
            severity="INFO",
            message="Project moved to tombstone",
            context={"project_id": project.id, "projectname": name, "actor_role": actor_role},
        )
        self.db.commit()

        if reason:
            user = require_user(self.db, owner)
            self.notifier.project_deleted(email=user.email, projectname=name, actor_role=actor_role, reason=reason)
        log.info("Project tombstoned: id=%s username=%s projectname=%s", project.id, owner, name)
        return project

    def purge(self, owner: str, name: str) -> int:
        rows = find_tombstoned(self.db, username=owner, projectname=name)
        if not rows:
            raise NotFound(f"No deleted project {name} to purge", username=owner, projectname=name)
        retired = self._retire(rows, actor=owner)
        self.db.commit()
        self._purge_blobs(retired)
        return len(retired)

    # -- helpers -------------------------------------------------------------

    def _require_active(self, owner: str, name: str) -> Project:
        project = find_active(self.db, username=owner, projectname=name)
        if not project:
            raise NotFound(f"Project {name} does not exist", username=owner, projectname=name)
        return project

    def _record_remix(self, original_id: int, remixed_id: int) -> None:
        if find_by_id(self.db, original_id, include_deleted=True) is None:
            log.warning("Ignoring remix of unknown project %s for project %s", original_id, remixed_id)
            return
        self.lineage.record_remix(original_id, remixed_id)

    def _retire(self, rows: list[Project], *, actor: str | None) -> list[int]:
        """Remove tombstoned rows from the catalog. Blobs go after commit."""

        ids: list[int] = []
        for row in rows:
            self.lineage.orphan(row.id)
            self.db.query(Comment).filter(Comment.project_id == row.id).delete(synchronize_session=False)
            audit(
                self.db,
                username=actor,
                event_type="project.purge",
                severity="INFO",
                message="Tombstoned project purged",
                context={"project_id": row.id, "username": row.username, "projectname": row.projectname},
            )
            ids.append(row.id)
            self.db.delete(row)
        self.db.flush()
        return ids

    def _purge_blobs(self, project_ids: list[int]) -> None:
        for pid in project_ids:
            self.blobs.purge(pid)

    def _write_blobs(self, project: Project, payload: SavePayload) -> None:
        try:
            self.blobs.put(project.id, Artifact.DOCUMENT, payload.xml.encode("utf-8"))
            self.blobs.put(project.id, Artifact.THUMBNAIL, payload.thumbnail.encode("utf-8"))
            self.blobs.put(project.id, Artifact.ASSETS, payload.media.encode("utf-8"))
            missing = [a.value for a in Artifact if self.blobs.get(project.id, a) is None]
        except StorageFailure as e:
            self._save_failed(project, reason=e.message)
            raise

        if missing:
            log.error("Save of project %s is inconsistent, missing %s", project.id, ",".join(missing))
            self._save_failed(project, reason=f"missing {','.join(missing)}")
            raise InconsistentSave(
                f"Could not save project {project.projectname}", project_id=project.id, missing=missing
            )

    def _save_failed(self, project: Project, *, reason: str) -> None:
        audit(
            self.db,
            username=project.username,
            event_type="project.save_failed",
            severity="ERROR",
            message="Project blobs could not be written",
            context={"project_id": project.id, "projectname": project.projectname, "reason": reason},
        )
        self.db.commit()


def _apply_visibility(project: Project, *, is_public: bool | None, is_published: bool | None, now: datetime) -> None:
    """Apply visibility flags. first_published is set once and never moves;
    last_shared moves only when the project becomes shared."""

    new_public = project.is_public if is_public is None else is_public
    new_published = project.is_published if is_published is None else is_published

    first_publication = bool(new_published) and project.first_published is None
    became_public = bool(new_public) and not project.is_public
    never_shared = bool(new_public) and project.last_shared is None

    if became_public or never_shared or first_publication:
        project.last_shared = now
    if first_publication:
        project.first_published = now

    project.is_public = bool(new_public)
    project.is_published = bool(new_published)
