from __future__ import annotations

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

# Use JSONB on Postgres, fallback to JSON for SQLite/test environments.
JSONType = JSON().with_variant(JSONB, "postgresql")

from app.models.base import Base

ROLES = ("standard", "reviewer", "moderator", "admin", "banned")


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="standard")
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)

    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_banned(self) -> bool:
        return self.role == "banned"


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        # Natural key is unique among active rows only; tombstones may share it.
        Index(
            "ux_projects_active_owner_name",
            "username",
            "projectname",
            unique=True,
            postgresql_where=text("deleted IS NULL"),
            sqlite_where=text("deleted IS NULL"),
        ),
        Index("ix_projects_published_first_published", "is_published", "first_published"),
        # Ids are never reused, even after the highest row is purged.
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(200), ForeignKey("users.username"), nullable=False)
    projectname: Mapped[str] = mapped_column(String(500), nullable=False)

    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    last_shared: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    first_published: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "projectname": self.projectname,
            "ispublic": self.is_public,
            "ispublished": self.is_published,
            "notes": self.notes,
            "created": self.created,
            "lastupdated": self.last_updated,
            "lastshared": self.last_shared,
            "firstpublished": self.first_published,
        }


class Remix(Base):
    __tablename__ = "remixes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # NULL means the original was purged; the edge itself is never removed.
    original_project_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True
    )
    remixed_project_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    created: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class Comment(Base):
    __tablename__ = "comments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    username: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str | None] = mapped_column(String(200), nullable=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    context: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
