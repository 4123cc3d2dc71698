from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import Conflict, IntegrityViolation, NotFound
from app.models.tables import Project, Remix
from app.projects.catalog import Page, paginate
from app.util.time import now_utc

log = logging.getLogger("app")


@dataclass(frozen=True)
class AncestorRef:
    username: str | None
    projectname: str | None
    # False once the original has been purged and the edge orphaned.
    available: bool

    def to_dict(self) -> dict:
        return {"username": self.username, "projectname": self.projectname}


class LineageGraph:
    """Remix edges between projects. Methods flush; the caller commits."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def record_remix(self, original_id: int, remixed_id: int) -> Remix:
        if self.db.get(Project, original_id) is None:
            raise NotFound(f"Original project {original_id} does not exist", original_id=original_id)
        if self.find_ancestor(remixed_id) is not None:
            raise Conflict(f"Project {remixed_id} is already a remix", remixed_id=remixed_id)

        edge = Remix(original_project_id=original_id, remixed_project_id=remixed_id, created=now_utc())
        self.db.add(edge)
        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            log.error("Remix edge race: original_id=%s remixed_id=%s: %s", original_id, remixed_id, str(e))
            raise IntegrityViolation(
                f"Project {remixed_id} is already a remix", original_id=original_id, remixed_id=remixed_id
            ) from e
        return edge

    def find_ancestor(self, remixed_id: int) -> Remix | None:
        return self.db.query(Remix).filter(Remix.remixed_project_id == remixed_id).one_or_none()

    def describe_ancestor(self, remixed_id: int) -> AncestorRef | None:
        edge = self.find_ancestor(remixed_id)
        if edge is None:
            return None
        if edge.original_project_id is None:
            return AncestorRef(username=None, projectname=None, available=False)
        # Tombstoned originals are still traceable until purged.
        original = self.db.get(Project, edge.original_project_id)
        if original is None:
            return AncestorRef(username=None, projectname=None, available=False)
        return AncestorRef(username=original.username, projectname=original.projectname, available=True)

    def list_descendants(self, original_id: int, *, page: int | None = None, page_size: int | None = None) -> Page[Remix]:
        q = (
            self.db.query(Remix)
            .filter(Remix.original_project_id == original_id)
            .order_by(Remix.created.asc(), Remix.id.asc())
        )
        return paginate(q, page=page, page_size=page_size)

    def orphan(self, original_id: int) -> int:
        count = (
            self.db.query(Remix)
            .filter(Remix.original_project_id == original_id)
            .update({Remix.original_project_id: None}, synchronize_session="fetch")
        )
        self.db.flush()
        if count:
            log.info("Orphaned %s remix edges of project %s", count, original_id)
        return count
