"""Versioned per-project blob storage.

Each project id owns three artifacts, each kept in up to three slots:

- slot 0: current content
- slot -1: content before the most recent save
- slot -2: the last save recorded before the current calendar day

The store knows nothing about owners, visibility or lineage; it is keyed
purely by project id and artifact name.

``backup`` followed by ``put`` is not one transaction. A crash between the two
leaves slots -1/-2 rotated while slot 0 still holds the old content; the next
successful save overwrites slot 0 and the history is consistent again.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

from minio.error import S3Error

from app.core.config import settings
from app.core.errors import StorageFailure, ValidationFailure
from app.storage.backends import BlobBackend, build_backend
from app.util.time import as_utc, now_utc

log = logging.getLogger("app")

SLOTS = (0, -1, -2)


class Artifact(str, enum.Enum):
    DOCUMENT = "document"
    ASSETS = "assets"
    THUMBNAIL = "thumbnail"

    @property
    def filename(self) -> str:
        return _FILENAMES[self]


_FILENAMES = {
    Artifact.DOCUMENT: "project.xml",
    Artifact.ASSETS: "media.xml",
    Artifact.THUMBNAIL: "thumbnail",
}


def normalize_delta(delta: int | str | None) -> int:
    """Accepts 0, -1, -2 (or their string forms, or None for 0)."""

    if delta is None or delta == "":
        return 0
    try:
        value = int(delta)
    except (TypeError, ValueError):
        raise ValidationFailure(f"Invalid version delta: {delta!r}", delta=delta)
    if value not in SLOTS:
        raise ValidationFailure(f"Invalid version delta: {delta!r}", delta=delta)
    return value


def project_prefix(project_id: int) -> str:
    return f"{project_id // 1000}/{project_id}/"


def blob_key(project_id: int, artifact: Artifact, delta: int = 0) -> str:
    slot_dir = "" if delta == 0 else f"d{delta}/"
    return f"{project_prefix(project_id)}{slot_dir}{Artifact(artifact).filename}"


class VersionedBlobStore:
    def __init__(
        self,
        backend: BlobBackend,
        *,
        clock: Callable[[], datetime] = now_utc,
        day_tz: str | None = None,
    ) -> None:
        self.backend = backend
        self.clock = clock
        self.tz = ZoneInfo(day_tz or settings.BLOB_DAY_TZ)

    def put(self, project_id: int, artifact: Artifact, data: bytes) -> None:
        key = blob_key(project_id, artifact, 0)
        try:
            self.backend.write(key, data, written_at=self.clock())
        except (OSError, S3Error) as e:
            log.exception("Blob write failed: project_id=%s artifact=%s", project_id, artifact.value)
            raise StorageFailure(
                f"Could not write {artifact.value} for project {project_id}",
                project_id=project_id,
                artifact=artifact.value,
            ) from e

    def get(self, project_id: int, artifact: Artifact, delta: int | str | None = 0) -> bytes | None:
        key = blob_key(project_id, artifact, normalize_delta(delta))
        try:
            return self.backend.read(key)
        except (OSError, S3Error) as e:
            log.exception("Blob read failed: project_id=%s key=%s", project_id, key)
            raise StorageFailure(f"Could not read {key}", project_id=project_id, key=key) from e

    def written_at(self, project_id: int, artifact: Artifact, delta: int | str | None = 0) -> datetime | None:
        key = blob_key(project_id, artifact, normalize_delta(delta))
        try:
            return self.backend.written_at(key)
        except (OSError, S3Error) as e:
            raise StorageFailure(f"Could not stat {key}", project_id=project_id, key=key) from e

    def backup(self, project_id: int) -> None:
        """Rotate slots before a save overwrites slot 0.

        If slot -1 was last written on an earlier calendar day than today, it
        becomes slot -2. Slot 0 then becomes slot -1. The document's slot -1
        decides for the whole project, so all artifacts rotate together.
        """

        now = self.clock()
        anchor = self.written_at(project_id, Artifact.DOCUMENT, -1)
        if anchor is not None and self._day(anchor) < self._day(now):
            self._copy_slot(project_id, -1, -2, written_at=anchor)

        self._copy_slot(project_id, 0, -1, written_at=now)

    def purge(self, project_id: int) -> None:
        prefix = project_prefix(project_id)
        try:
            self.backend.delete_prefix(prefix)
        except (OSError, S3Error) as e:
            log.exception("Blob purge failed: project_id=%s", project_id)
            raise StorageFailure(f"Could not purge blobs of project {project_id}", project_id=project_id) from e
        log.info("Purged blobs: project_id=%s", project_id)

    def ready(self) -> bool:
        return self.backend.ready()

    def _copy_slot(self, project_id: int, src: int, dst: int, *, written_at: datetime) -> None:
        for artifact in Artifact:
            data = self.get(project_id, artifact, src)
            key = blob_key(project_id, artifact, dst)
            try:
                # A slot always holds artifacts of one save; drop what the source lacks.
                if data is None:
                    self.backend.delete(key)
                else:
                    self.backend.write(key, data, written_at=written_at)
            except (OSError, S3Error) as e:
                log.exception("Blob backup failed: project_id=%s key=%s", project_id, key)
                raise StorageFailure(f"Could not back up {key}", project_id=project_id, key=key) from e

    def _day(self, value: datetime):
        return as_utc(value).astimezone(self.tz).date()


def get_blob_store() -> VersionedBlobStore:
    return VersionedBlobStore(build_backend())
