from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import Conflict, NotFound, ValidationFailure
from app.models.tables import ROLES, User
from app.util.time import now_utc

log = logging.getLogger("app")


def get_user(db: Session, username: str) -> User | None:
    return db.query(User).filter(User.username == username).one_or_none()


def require_user(db: Session, username: str) -> User:
    user = get_user(db, username)
    if not user:
        raise NotFound(f"User {username} does not exist", username=username)
    return user


def create_user(db: Session, *, username: str, email: str | None = None, role: str = "standard") -> User:
    if not username:
        raise ValidationFailure("Missing username")
    if role not in ROLES:
        raise ValidationFailure(f"Unknown role {role}", role=role)
    if get_user(db, username):
        raise Conflict(f"User {username} already exists", username=username)

    user = User(username=username, email=email, role=role, verified=False, created=now_utc())
    db.add(user)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise Conflict(f"User {username} already exists", username=username) from e
    return user


def mark_verified(db: Session, user: User) -> bool:
    """Accounts are verified by their first project save. Returns True if the
    flag changed. The caller commits."""

    if user.verified:
        return False
    user.verified = True
    log.info("User %s verified by first project save", user.username)
    return True
