from __future__ import annotations

import sys
import uuid

from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.models.tables import AuditLog, User
from app.util.time import now_utc


def new_uuid() -> str:
    return str(uuid.uuid4())


def seed(username: str = "admin") -> None:
    """Create an admin account so a fresh deployment can be operated."""

    db: Session = SessionLocal()
    try:
        user = db.query(User).filter(User.username == username).one_or_none()
        if not user:
            user = User(username=username, email=None, role="admin", verified=True, created=now_utc())
            db.add(user)
            db.commit()

        db.add(
            AuditLog(
                id=new_uuid(),
                username=user.username,
                event_type="SEED_DONE",
                severity="INFO",
                message="Seed completed",
                context={},
                created_at=now_utc(),
            )
        )
        db.commit()
        print(user.id)
    finally:
        db.close()


if __name__ == "__main__":
    seed(*sys.argv[1:2])
