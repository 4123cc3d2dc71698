from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.orm import Session

from app.accounts.service import require_user
from app.api.deps import CurrentUser, get_blobs, get_ctx
from app.api.guards import forbid_banned_publish, require_owner, require_owner_or_roles, require_visible, users_match
from app.core.db import get_db
from app.core.errors import NotFound
from app.projects.catalog import find_active, find_by_id, list_published, list_user_projects
from app.projects.derived import DerivedArtifactCache
from app.projects.document import render_snapdata
from app.projects.lifecycle import ProjectLifecycle
from app.projects.lineage import LineageGraph
from app.projects.schemas import parse_metadata_update, parse_save_payload
from app.storage.blob_store import Artifact, VersionedBlobStore, normalize_delta

router = APIRouter()


def _project_or_404(db: Session, username: str, projectname: str):
    project = find_active(db, username=username, projectname=projectname)
    if not project:
        raise NotFound(f"Project {projectname} does not exist", username=username, projectname=projectname)
    return project


def _listing(page_obj, *, cache: DerivedArtifactCache, with_thumbnail: bool, key: str = "projects") -> dict:
    rows = [p.to_dict() for p in page_obj.items]
    if with_thumbnail:
        rows = cache.fill_thumbnails(rows)
    return {"pages": page_obj.pages, key: rows}


@router.get("")
def list_published_projects(
    page: int | None = None,
    pagesize: int | None = None,
    matchtext: str | None = None,
    withthumbnail: bool = False,
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> dict:
    result = list_published(db, matchtext=matchtext, page=page, page_size=pagesize)
    return _listing(result, cache=DerivedArtifactCache(db, blobs), with_thumbnail=withthumbnail)


@router.get("/{username}")
def list_user_projects_endpoint(
    username: str,
    page: int | None = None,
    pagesize: int | None = None,
    matchtext: str | None = None,
    ispublished: bool | None = None,
    withthumbnail: bool = False,
    updatingnotes: bool = False,
    ctx: CurrentUser = Depends(get_ctx),
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> dict:
    require_user(db, username)
    # Owners and admins may filter either way; everyone else sees published work only.
    published = ispublished
    if not users_match(ctx, username) and ctx.role != "admin":
        published = True

    result = list_user_projects(
        db, username=username, published=published, matchtext=matchtext, page=page, page_size=pagesize
    )
    cache = DerivedArtifactCache(db, blobs)
    if updatingnotes:
        cache.fill_notes(result.items)
    return _listing(result, cache=cache, with_thumbnail=withthumbnail)


@router.get("/{username}/{projectname}")
def get_project(
    username: str,
    projectname: str,
    delta: str | None = None,
    ctx: CurrentUser = Depends(get_ctx),
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> Response:
    project = _project_or_404(db, username, projectname)
    require_visible(ctx, project)
    slot = normalize_delta(delta)

    # Anyone but the owner opening the project may save it as a remix.
    remix_id = None if users_match(ctx, username) else project.id
    xml = render_snapdata(
        blobs.get(project.id, Artifact.DOCUMENT, slot),
        blobs.get(project.id, Artifact.ASSETS, slot),
        remix_id=remix_id,
    )
    return Response(content=xml, media_type="text/xml; charset=utf-8")


@router.get("/{username}/{projectname}/metadata")
def get_project_metadata(
    username: str,
    projectname: str,
    ctx: CurrentUser = Depends(get_ctx),
    db: Session = Depends(get_db),
) -> dict:
    project = _project_or_404(db, username, projectname)
    require_visible(ctx, project)

    out = project.to_dict()
    ancestor = LineageGraph(db).describe_ancestor(project.id)
    if ancestor is not None:
        out["remixedfrom"] = ancestor.to_dict()
    return out


@router.get("/{username}/{projectname}/versions")
def get_project_versions(
    username: str,
    projectname: str,
    ctx: CurrentUser = Depends(get_ctx),
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> list:
    project = _project_or_404(db, username, projectname)
    require_visible(ctx, project)

    cache = DerivedArtifactCache(db, blobs)
    return [cache.version_metadata(project, delta) for delta in (0, -1, -2)]


@router.get("/{username}/{projectname}/remixes")
def get_project_remixes(
    username: str,
    projectname: str,
    page: int | None = None,
    pagesize: int | None = None,
    ctx: CurrentUser = Depends(get_ctx),
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> dict:
    project = _project_or_404(db, username, projectname)
    require_visible(ctx, project)

    edges = LineageGraph(db).list_descendants(project.id, page=page, page_size=pagesize)
    cache = DerivedArtifactCache(db, blobs)
    remixes = []
    for edge in edges.items:
        remixed = find_by_id(db, edge.remixed_project_id)
        if remixed is None or not remixed.is_published:
            continue
        row = remixed.to_dict()
        thumb = cache.get_or_generate_thumbnail(remixed.id)
        row["thumbnail"] = thumb.decode("utf-8", "replace") if thumb else None
        remixes.append(row)
    return {"pages": edges.pages, "projects": remixes}


@router.get("/{username}/{projectname}/thumbnail")
def get_project_thumbnail(
    username: str,
    projectname: str,
    ctx: CurrentUser = Depends(get_ctx),
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> Response:
    project = _project_or_404(db, username, projectname)
    require_visible(ctx, project)

    thumb = DerivedArtifactCache(db, blobs).get_or_generate_thumbnail(project.id)
    if thumb is None:
        raise NotFound(f"Project {projectname} has no thumbnail", project_id=project.id)
    return PlainTextResponse(thumb.decode("utf-8", "replace"))


@router.post("/{username}/{projectname}")
def save_project(
    username: str,
    projectname: str,
    body: dict | None = Body(default=None),
    ispublic: bool | None = Query(default=None),
    ispublished: bool | None = Query(default=None),
    ctx: CurrentUser = Depends(get_ctx),
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> dict:
    require_user(db, username)
    require_owner(ctx, username)
    forbid_banned_publish(ctx, ispublished)

    data = dict(body or {})
    if ispublic is not None:
        data["ispublic"] = ispublic
    if ispublished is not None:
        data["ispublished"] = ispublished
    payload = parse_save_payload(data)

    result = ProjectLifecycle(db, blobs).save(username, projectname, payload)
    return {"message": f"project {projectname} saved", "id": result.project.id, "created": result.created}


@router.post("/{username}/{projectname}/metadata")
def update_project_metadata(
    username: str,
    projectname: str,
    ispublic: bool | None = Query(default=None),
    ispublished: bool | None = Query(default=None),
    reason: str | None = Query(default=None),
    ctx: CurrentUser = Depends(get_ctx),
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> dict:
    require_owner_or_roles(ctx, username)
    forbid_banned_publish(ctx, ispublished)

    changes = parse_metadata_update({"ispublic": ispublic, "ispublished": ispublished, "reason": reason})
    actor_role = "owner" if users_match(ctx, username) else ctx.role
    ProjectLifecycle(db, blobs).update_metadata(username, projectname, changes, actor_role=actor_role)
    return {"message": f"project {projectname} updated"}


@router.delete("/{username}/{projectname}")
def delete_project(
    username: str,
    projectname: str,
    reason: str | None = None,
    ctx: CurrentUser = Depends(get_ctx),
    db: Session = Depends(get_db),
    blobs: VersionedBlobStore = Depends(get_blobs),
) -> dict:
    require_user(db, username)
    require_owner_or_roles(ctx, username)

    actor_role = "owner" if users_match(ctx, username) else ctx.role
    ProjectLifecycle(db, blobs).soft_delete(username, projectname, actor_role=actor_role, reason=reason)
    return {"message": f"Project {projectname} has been removed."}
