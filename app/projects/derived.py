from __future__ import annotations

import logging
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from app.core.errors import DocumentParseError
from app.models.tables import Project
from app.projects.document import ParsedDocument, parse_document
from app.storage.blob_store import Artifact, VersionedBlobStore, normalize_delta
from app.util.time import seconds_since

log = logging.getLogger("app")

# Stored in the thumbnail slot when the document has no thumbnail to extract.
NO_THUMBNAIL = b""


class DerivedArtifactCache:
    """Thumbnail and notes computed from the project document on first miss,
    then written back so later reads never reparse.

    Two concurrent misses may both compute and write; the result is the same
    either way, so the last write simply wins.
    """

    def __init__(
        self,
        db: Session,
        blobs: VersionedBlobStore,
        *,
        parser: Callable[[bytes], ParsedDocument] = parse_document,
    ) -> None:
        self.db = db
        self.blobs = blobs
        self.parser = parser

    def get_or_generate_thumbnail(self, project_id: int) -> bytes | None:
        cached = self.blobs.get(project_id, Artifact.THUMBNAIL)
        if cached is not None:
            return cached or None

        parsed = self._parse_current(project_id)
        if parsed is None:
            return None

        self.blobs.put(project_id, Artifact.THUMBNAIL, parsed.thumbnail or NO_THUMBNAIL)
        return parsed.thumbnail

    def get_or_generate_notes(self, project: Project) -> str | None:
        if project.notes is not None:
            return project.notes

        parsed = self._parse_current(project.id)
        if parsed is None:
            return None

        project.notes = parsed.notes or ""
        self.db.commit()
        return project.notes

    def fill_thumbnails(self, rows: Iterable[dict]) -> list[dict]:
        out = []
        for row in rows:
            thumb = self.get_or_generate_thumbnail(row["id"])
            out.append({**row, "thumbnail": thumb.decode("utf-8", "replace") if thumb else None})
        return out

    def fill_notes(self, projects: Iterable[Project]) -> None:
        for p in projects:
            self.get_or_generate_notes(p)

    def version_metadata(self, project: Project, delta: int | str | None) -> dict | None:
        delta = normalize_delta(delta)
        if delta == 0:
            thumb = self.get_or_generate_thumbnail(project.id)
            return {
                "delta": 0,
                "lastupdated": seconds_since(project.last_updated),
                "thumbnail": thumb.decode("utf-8", "replace") if thumb else None,
                "notes": self.get_or_generate_notes(project),
            }

        document = self.blobs.get(project.id, Artifact.DOCUMENT, delta)
        if document is None:
            return None
        try:
            parsed = self.parser(document)
        except DocumentParseError as e:
            log.warning("Unparseable backup document: project_id=%s delta=%s: %s", project.id, delta, e.message)
            parsed = ParsedDocument()
        return {
            "delta": delta,
            "lastupdated": seconds_since(self.blobs.written_at(project.id, Artifact.DOCUMENT, delta)),
            "thumbnail": parsed.thumbnail.decode("utf-8", "replace") if parsed.thumbnail else None,
            "notes": parsed.notes,
        }

    def _parse_current(self, project_id: int) -> ParsedDocument | None:
        document = self.blobs.get(project_id, Artifact.DOCUMENT)
        if document is None:
            log.info("No document to derive artifacts from: project_id=%s", project_id)
            return None
        try:
            return self.parser(document)
        except DocumentParseError as e:
            log.warning("Cannot derive artifacts: project_id=%s: %s", project_id, e.message)
            return None
