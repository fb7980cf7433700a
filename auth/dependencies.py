"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token transports are checked in priority order:
  1. JWT cookie ("access_token") -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients and scripts.

Both converge on the caller's UserRecord, loaded fresh from the users
collection so role and approval changes apply to existing tokens.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.
The configured bootstrap admin uid always passes require_admin().

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. No imports from api/ or identity/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.tokens import COOKIE_NAME, decode_access_token
from core.config import get_settings
from core.documents import user_from_doc
from core.models import ROLE_ADMIN, Collection, UserRecord


async def try_get_current_user(request: Request) -> UserRecord | None:
    """Authenticate the request via cookie or Bearer token.

    Returns the caller's UserRecord on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    token: str | None = request.cookies.get(COOKIE_NAME)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None

    payload = decode_access_token(token)
    if payload is None:
        return None
    doc = await request.app.state.records.get_or_none(Collection.USERS, payload["uid"])
    if doc is None:
        return None
    return user_from_doc(doc)


async def get_current_user(request: Request) -> UserRecord:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: UserRecord = Depends(get_current_user)): ...
    """
    user = await try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def is_admin(user: UserRecord) -> bool:
    return user.role == ROLE_ADMIN or user.id == get_settings().bootstrap_admin_uid


async def require_admin(request: Request) -> UserRecord:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = await get_current_user(request)
    if not is_admin(user):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
