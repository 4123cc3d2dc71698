from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.accounts.service import create_user
from app.api.deps import get_blobs
from app.core.db import get_db
from app.core.security import require_admin_token
from app.projects.lifecycle import ProjectLifecycle
from app.storage.blob_store import VersionedBlobStore

router = APIRouter()


@router.post("/users", dependencies=[Depends(require_admin_token)])
def create_user_endpoint(payload: dict, db: Session = Depends(get_db)) -> dict:
    user = create_user(
        db,
        username=(payload or {}).get("username") or "",
        email=(payload or {}).get("email"),
        role=(payload or {}).get("role") or "standard",
    )
    return {"id": user.id, "username": user.username, "role": user.role, "verified": user.verified}


@router.post("/projects/{username}/{projectname}/purge", dependencies=[Depends(require_admin_token)])
def purge_project(
    username: str,
    projectname: str,
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> dict:
    # Only tombstoned projects can be purged; delete them first.
    purged = ProjectLifecycle(db, blobs).purge(username, projectname)
    return {"message": f"Project {projectname} purged", "purged": purged}
