"""
credentials/dependencies.py -- FastAPI Depends() helpers for bearer credentials.

Reads `Authorization: Bearer <token>.<id>` and validates it against the
CredentialStore stored on `request.app.state.credential_store` by the host
application's lifespan.

try_get_session() is the soft variant (returns None on failure).
get_session() wraps it and raises HTTP 401 if unauthenticated.
require_privileged() validates the bearer as a PrivilegedToken instead.

Every failure produces the same 401 body, whatever the rejection reason.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from credentials.errors import Unauthorized
from credentials.models import CredentialType, PublicCredential
from credentials.store import CredentialStore

_BEARER_PREFIX = "Bearer "


def _bearer(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith(_BEARER_PREFIX):
        return auth_header[len(_BEARER_PREFIX) :].strip() or None
    return None


def _store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=Unauthorized.status_code,
        detail={"code": "unauthorized", "message": "Authentication required."},
        headers={"WWW-Authenticate": "Bearer"},
    )


def try_get_session(request: Request) -> PublicCredential | None:
    """Validate the bearer as a SessionToken. Returns None on any failure."""
    bearer = _bearer(request)
    if bearer is None:
        return None
    return _store(request).validate_token(bearer, CredentialType.SESSION_TOKEN)


def get_session(request: Request) -> PublicCredential:
    """Require a valid session token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/me")
        async def me(cred: PublicCredential = Depends(get_session)): ...
    """
    cred = try_get_session(request)
    if cred is None:
        raise _unauthorized()
    return cred


def require_privileged(request: Request) -> PublicCredential:
    """Require a valid privileged token. Raises HTTP 401 otherwise."""
    bearer = _bearer(request)
    if bearer is None:
        raise _unauthorized()
    try:
        return _store(request).validate_token_or_raise(bearer, CredentialType.PRIVILEGED_TOKEN)
    except Unauthorized as exc:
        raise _unauthorized() from exc
