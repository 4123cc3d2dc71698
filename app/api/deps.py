from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.accounts.service import get_user
from app.core.db import get_db
from app.storage.blob_store import VersionedBlobStore, get_blob_store


@dataclass(frozen=True)
class CurrentUser:
    username: str | None
    role: str = "anonymous"

    @property
    def authenticated(self) -> bool:
        return self.username is not None


def get_ctx(
    x_username: str | None = Header(default=None, alias="X-Username"),
    db: Session = Depends(get_db),
) -> CurrentUser:
    # Session handling lives in the auth layer in front of this service; it
    # forwards the authenticated username.
    if not x_username:
        return CurrentUser(username=None)
    user = get_user(db, x_username)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    return CurrentUser(username=user.username, role=user.role)


def get_blobs() -> VersionedBlobStore:
    return get_blob_store()
