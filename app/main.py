from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis import Redis
from sqlalchemy import text

from app.api.routers.admin import router as admin_router
from app.api.routers.projects import router as projects_router
from app.core.config import settings
from app.core.db import engine
from app.core.errors import ProjectStoreError, StorageFailure
from app.core.logging import configure_logging
from app.storage.backends import MinioBlobBackend, build_backend

configure_logging(settings.LOG_LEVEL)
log = logging.getLogger("app")

app = FastAPI(title=settings.APP_NAME)

if settings.allowed_origins():
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Username"],
    )


@app.exception_handler(ProjectStoreError)
def _project_store_error(request: Request, exc: ProjectStoreError) -> JSONResponse:
    if isinstance(exc, StorageFailure):
        log.error("Storage failure on %s %s: %s context=%s", request.method, request.url.path, exc.message, exc.context)
        name = exc.context.get("projectname") or request.path_params.get("projectname") or ""
        return JSONResponse(status_code=500, content={"detail": f"Could not save project {name}".strip()})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def _retry_backoff(fn, *, attempts: int = 30, base_sleep_s: float = 1.0, max_sleep_s: float = 2.0, what: str) -> bool:
    sleep_s = base_sleep_s
    for i in range(1, attempts + 1):
        try:
            fn()
            return True
        except Exception as e:
            if i == attempts:
                log.error("Startup: %s still not ready after %s attempts: %s", what, attempts, str(e))
                return False
            log.warning("Startup: %s not ready (attempt %s/%s): %s", what, i, attempts, str(e))
            time.sleep(sleep_s)
            sleep_s = min(max_sleep_s, sleep_s * 2.0)
    return False


def _check_db() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def _check_redis() -> bool:
    try:
        r = Redis.from_url(settings.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
        return bool(r.ping())
    except Exception:
        return False


@app.on_event("startup")
def _startup() -> None:
    # Do not crash API if deps are temporarily unavailable.
    # In CI/unit tests we skip these to avoid slow retries/hangs.
    if not settings.ENSURE_EXTERNAL_DEPS_ON_STARTUP:
        log.info("Startup: ENSURE_EXTERNAL_DEPS_ON_STARTUP=false; skipping blob store ensure")
        return

    backend = build_backend()
    if isinstance(backend, MinioBlobBackend):
        _retry_backoff(backend.ensure_bucket, what="minio")
    elif not backend.ready():
        log.error("Startup: blob store directory %s is not writable", settings.BLOB_STORE_DIR)


@app.get("/health")
def health() -> dict[str, Any]:
    deps = {
        "database": _check_db(),
        "redis": _check_redis(),
        "blobs": build_backend().ready(),
    }
    return {"ok": all(deps.values()), "deps": deps, "app": settings.APP_NAME}


app.include_router(admin_router, prefix="/admin", tags=["admin"])
app.include_router(projects_router, prefix="/projects", tags=["projects"])
