from __future__ import annotations

import hmac

from fastapi import Header, HTTPException

from app.core.config import settings


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def require_admin_token(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
    authorization: str | None = Header(default=None),
) -> None:
    """Admin routes take the token from X-Admin-Token or an Authorization bearer."""

    if settings.AUTH_DISABLED:
        return
    token = x_admin_token or _bearer(authorization)
    if not token or not hmac.compare_digest(token.encode("utf-8"), settings.ADMIN_TOKEN.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid admin token")
