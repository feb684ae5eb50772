"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Callers authenticate with an access token in the Authorization header:

    Authorization: Bearer <access token>

get_current_principal() validates the token through app.state.tokens and
re-reads the identity so a deactivated or suspended account loses access
immediately, not when its token expires. It raises HTTP 401 with the token
failure kind as the error code (token_expired, token_invalid_signature,
token_malformed).

require_permission(*names) builds a dependency that additionally requires
the principal to hold at least one of the named permissions (HTTP 403).

request_origin() packages client address, user agent and session id for
audit records.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import IdentityStatus, Principal, RequestOrigin
from auth.store import IdentityStore
from auth.tokens import TokenService

_BEARER_PREFIX = "Bearer "


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_principal(request: Request) -> Principal:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    header = request.headers.get("Authorization", "")
    if not header.startswith(_BEARER_PREFIX):
        raise _unauthorized("unauthorized", "Authentication required.")
    token = header[len(_BEARER_PREFIX):].strip()

    tokens: TokenService = request.app.state.tokens
    result = tokens.validate(token)
    if not result.ok:
        raise _unauthorized(result.error.kind.value, result.error.message)

    store: IdentityStore = request.app.state.store
    identity = store.get_by_id(result.value.subject)
    if identity is None or identity.status is not IdentityStatus.ACTIVE:
        raise _unauthorized("unauthorized", "Authentication required.")

    principal = result.value.to_principal()
    request.state.principal = principal
    return principal


def require_permission(*permissions: str) -> Callable[..., Principal]:
    """Dependency factory: the principal must hold any one of the given permissions.

    Use as a FastAPI dependency:
        @router.get("/admin/audit")
        def route(principal: Principal = Depends(require_permission("AUDIT_ACCESS", "AUDIT_READ"))): ...
    """

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not any(principal.has_permission(p) for p in permissions):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient permissions."},
            )
        return principal

    return dependency


def request_origin(request: Request, session_id: str | None = None) -> RequestOrigin:
    """Audit metadata for the current request."""
    if session_id is None:
        principal = getattr(request.state, "principal", None)
        session_id = principal.session_id if principal is not None else None
    return RequestOrigin(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        session_id=session_id,
    )
