from __future__ import annotations

from fastapi import HTTPException

from app.api.deps import CurrentUser
from app.models.tables import Project

STAFF_ROLES = ("admin", "moderator")


def users_match(ctx: CurrentUser, username: str) -> bool:
    return ctx.authenticated and ctx.username == username


def require_owner_or_roles(ctx: CurrentUser, username: str, *, roles: tuple[str, ...] = STAFF_ROLES) -> None:
    if users_match(ctx, username):
        return
    if ctx.role in roles:
        return
    raise HTTPException(status_code=403, detail="You do not have permission to perform this action")


def require_owner(ctx: CurrentUser, username: str) -> None:
    if not users_match(ctx, username):
        raise HTTPException(status_code=403, detail="You do not have permission to perform this action")


def require_visible(ctx: CurrentUser, project: Project) -> None:
    """Private projects look nonexistent to everyone but their owner and admins."""

    if project.is_public or users_match(ctx, project.username) or ctx.role == "admin":
        return
    raise HTTPException(status_code=404, detail=f"Project {project.projectname} does not exist")


def forbid_banned_publish(ctx: CurrentUser, is_published: bool | None) -> None:
    if is_published and ctx.role == "banned":
        raise HTTPException(status_code=403, detail="Banned users cannot publish projects")
