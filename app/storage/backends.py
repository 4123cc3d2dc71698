from __future__ import annotations

import io
import logging
import os
import shutil
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol, TypeVar

from minio import Minio
from minio.deleteobjects import DeleteObject
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from app.core.config import settings
from app.util.ids import new_uuid
from app.util.time import as_utc

log = logging.getLogger("app")

_WRITTEN_AT_META = "written-at"


class BlobBackend(Protocol):
    """Flat key/value byte storage with per-key write times.

    Every write must be atomic with respect to concurrent readers.
    """

    def read(self, key: str) -> bytes | None: ...

    def write(self, key: str, data: bytes, *, written_at: datetime) -> None: ...

    def written_at(self, key: str) -> datetime | None: ...

    def delete(self, key: str) -> None: ...

    def delete_prefix(self, prefix: str) -> None: ...

    def ready(self) -> bool: ...


class LocalBlobBackend:
    """Filesystem storage. Writes go to a temp file in the target directory and
    are renamed into place, so readers see the old or the new file, never half."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / key

    def read(self, key: str) -> bytes | None:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None

    def write(self, key: str, data: bytes, *, written_at: datetime) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            ts = as_utc(written_at).timestamp()
            os.utime(tmp_path, (ts, ts))
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def written_at(self, key: str) -> datetime | None:
        try:
            mtime = self._path(key).stat().st_mtime
        except FileNotFoundError:
            return None
        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def delete(self, key: str) -> None:
        try:
            os.unlink(self._path(key))
        except FileNotFoundError:
            pass

    def delete_prefix(self, prefix: str) -> None:
        path = self._path(prefix.rstrip("/"))
        if not path.exists():
            return
        # Move out of sight in one rename, then remove at leisure.
        trash = path.parent / f".{path.name}.purging-{new_uuid()}"
        os.replace(path, trash)
        shutil.rmtree(trash)

    def ready(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            return os.access(self.root, os.W_OK)
        except OSError:
            return False


class MinioBlobBackend:
    """MinIO / S3 storage. A single put_object is atomic per object."""

    def __init__(self, *, bucket: str | None = None, client: Minio | None = None) -> None:
        self.bucket = bucket or settings.MINIO_BUCKET
        self._client = client

    def client(self) -> Minio:
        if self._client is None:
            self._client = _client()
        return self._client

    def _call(self, what: str, op: Callable[[], T], *, attempts: int = 2) -> T:
        # Connection and protocol errors surface from urllib3, not as S3Error.
        try:
            return _with_retry(op, attempts=attempts)
        except S3Error as e:
            raise OSError(f"MinIO {what} failed: {e.code}") from e
        except HTTPError as e:
            raise OSError(f"MinIO {what} failed: {e}") from e

    def read(self, key: str) -> bytes | None:
        def _op() -> bytes | None:
            try:
                res = self.client().get_object(self.bucket, key)
            except S3Error as e:
                if e.code == "NoSuchKey":
                    return None
                raise
            try:
                return res.read()
            finally:
                res.close()
                res.release_conn()

        return self._call(f"read {key}", _op)

    def write(self, key: str, data: bytes, *, written_at: datetime) -> None:
        def _op() -> None:
            self.client().put_object(
                self.bucket,
                key,
                io.BytesIO(data),
                length=len(data),
                content_type="application/octet-stream",
                metadata={_WRITTEN_AT_META: as_utc(written_at).isoformat()},
            )

        self._call(f"write {key}", _op)

    def written_at(self, key: str) -> datetime | None:
        def _op() -> datetime | None:
            try:
                st = self.client().stat_object(self.bucket, key)
            except S3Error as e:
                if e.code == "NoSuchKey":
                    return None
                raise
            raw = (st.metadata or {}).get(f"x-amz-meta-{_WRITTEN_AT_META}")
            if raw:
                return as_utc(datetime.fromisoformat(raw))
            return as_utc(st.last_modified) if st.last_modified else None

        return self._call(f"stat {key}", _op)

    def delete(self, key: str) -> None:
        # Removing a missing object is not an error in S3.
        self._call(f"delete {key}", lambda: self.client().remove_object(self.bucket, key))

    def delete_prefix(self, prefix: str) -> None:
        def _op() -> list:
            c = self.client()
            names = [o.object_name for o in c.list_objects(self.bucket, prefix=prefix, recursive=True)]
            if not names:
                return []
            return list(c.remove_objects(self.bucket, [DeleteObject(n) for n in names]))

        errors = self._call(f"delete {prefix}", _op, attempts=1)
        if errors:
            raise OSError(f"Failed to delete {len(errors)} objects under {prefix}: {errors[0]}")

    def ready(self) -> bool:
        try:
            _with_retry(lambda: self.client().bucket_exists(self.bucket), attempts=1)
            return True
        except Exception:
            return False

    def ensure_bucket(self) -> None:
        def _op() -> None:
            c = self.client()
            if not c.bucket_exists(self.bucket):
                c.make_bucket(self.bucket)

        _with_retry(_op, attempts=3)


def build_backend() -> BlobBackend:
    kind = (settings.BLOB_BACKEND or "local").lower()
    if kind == "local":
        return LocalBlobBackend(settings.BLOB_STORE_DIR)
    if kind == "minio":
        return MinioBlobBackend()
    raise ValueError(f"Unknown BLOB_BACKEND: {settings.BLOB_BACKEND}")


T = TypeVar("T")


def _client() -> Minio:
    return Minio(
        endpoint=settings.MINIO_ENDPOINT,
        access_key=settings.MINIO_ACCESS_KEY,
        secret_key=settings.MINIO_SECRET_KEY,
        secure=settings.MINIO_SECURE,
    )


def _with_retry(fn: Callable[[], T], *, attempts: int = 3, sleep_s: float = 0.3) -> T:
    last_exc: Exception | None = None
    for i in range(attempts):
        try:
            return fn()
        except Exception as e:
            last_exc = e
            if i == attempts - 1:
                raise
            log.warning("Blob backend call failed (attempt %s/%s): %s", i + 1, attempts, str(e))
            time.sleep(sleep_s * (2**i))
    raise last_exc or RuntimeError("minio error")
