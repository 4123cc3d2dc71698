from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from app.core.config import settings
from app.models.tables import AuditLog, Project
from app.util.ids import new_uuid
from app.util.time import now_utc

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    # None when the caller asked for everything instead of a page.
    pages: int | None = None


def paginate(q: Query, *, page: int | None, page_size: int | None) -> Page:
    if not page:
        return Page(items=q.all(), pages=None)
    size = max(1, page_size or settings.DEFAULT_PAGE_SIZE)
    total = q.order_by(None).count()
    items = q.offset((max(1, page) - 1) * size).limit(size).all()
    return Page(items=items, pages=max(1, math.ceil(total / size)) if total else 0)


def active_projects(db: Session) -> Query:
    return db.query(Project).filter(Project.deleted.is_(None))


def tombstoned_projects(db: Session) -> Query:
    return db.query(Project).filter(Project.deleted.is_not(None))


def find_active(db: Session, *, username: str, projectname: str) -> Project | None:
    return (
        active_projects(db)
        .filter(Project.username == username, Project.projectname == projectname)
        .one_or_none()
    )


def find_tombstoned(db: Session, *, username: str, projectname: str) -> list[Project]:
    return (
        tombstoned_projects(db)
        .filter(Project.username == username, Project.projectname == projectname)
        .order_by(Project.deleted.asc())
        .all()
    )


def find_by_id(db: Session, project_id: int, *, include_deleted: bool = False) -> Project | None:
    q = db.query(Project) if include_deleted else active_projects(db)
    return q.filter(Project.id == project_id).one_or_none()


def _match(q: Query, matchtext: str | None) -> Query:
    if not matchtext:
        return q
    pattern = f"%{matchtext}%"
    return q.filter(or_(Project.projectname.ilike(pattern), Project.notes.ilike(pattern)))


def list_published(
    db: Session, *, matchtext: str | None = None, page: int | None = None, page_size: int | None = None
) -> Page[Project]:
    q = _match(active_projects(db).filter(Project.is_published.is_(True)), matchtext)
    q = q.order_by(Project.first_published.desc(), Project.id.desc())
    return paginate(q, page=page, page_size=page_size)


def list_user_projects(
    db: Session,
    *,
    username: str,
    published: bool | None = None,
    matchtext: str | None = None,
    page: int | None = None,
    page_size: int | None = None,
) -> Page[Project]:
    q = active_projects(db).filter(Project.username == username)
    if published is not None:
        q = q.filter(Project.is_published.is_(published))
    q = _match(q, matchtext)
    # Published listings follow publication order, the rest most recently shared first.
    order = Project.first_published if published else Project.last_shared
    q = q.order_by(order.desc().nulls_last(), Project.last_updated.desc(), Project.id.desc())
    return paginate(q, page=page, page_size=page_size)


def audit(
    db: Session,
    *,
    username: str | None,
    event_type: str,
    severity: str,
    message: str,
    context: dict,
) -> None:
    db.add(
        AuditLog(
            id=new_uuid(),
            username=username,
            event_type=event_type,
            severity=severity,
            message=message,
            context=context or {},
            created_at=now_utc(),
        )
    )
