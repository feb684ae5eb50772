"""
api/routes/admin.py -- Account administration and audit-trail read endpoints.

Routes:
  POST  /admin/users/{identity_id}/unlock  -- clear lock + failure counter (USER_MANAGEMENT)
  PATCH /admin/users/{identity_id}/status  -- activate / deactivate / suspend (USER_MANAGEMENT)
  GET   /admin/audit                       -- read the audit trail (AUDIT_ACCESS or AUDIT_READ)

Security:
  [M4] PATCH .../status blocks an administrator from deactivating or
       suspending their own account.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.errors import unwrap
from api.models import AuditRecordResponse, StatusUpdateRequest, UserResponse
from auth.accounts import AccountService
from auth.authenticator import Authenticator
from auth.dependencies import request_origin, require_permission
from auth.models import AuditAction, IdentityStatus, Principal
from auth.roles import AUDIT_ACCESS, AUDIT_READ, USER_MANAGEMENT
from auth.store import IdentityStore

router = APIRouter()

require_user_management = require_permission(USER_MANAGEMENT)
require_audit_read = require_permission(AUDIT_ACCESS, AUDIT_READ)


@router.post("/admin/users/{identity_id}/unlock", response_model=UserResponse)
def unlock_user(
    request: Request,
    identity_id: str,
    principal: Principal = Depends(require_user_management),
) -> UserResponse:
    authenticator: Authenticator = request.app.state.authenticator
    identity = unwrap(authenticator.unlock(identity_id, principal.identity_id, origin=request_origin(request)))
    return UserResponse.from_identity(identity)


@router.patch("/admin/users/{identity_id}/status", response_model=UserResponse)
def update_status(
    request: Request,
    identity_id: str,
    body: StatusUpdateRequest,
    principal: Principal = Depends(require_user_management),
) -> UserResponse:
    # [M4] Block self-deactivation
    if identity_id == principal.identity_id and body.status is not IdentityStatus.ACTIVE:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    accounts: AccountService = request.app.state.accounts
    identity = unwrap(
        accounts.set_status(identity_id, body.status, principal.identity_id, origin=request_origin(request))
    )
    return UserResponse.from_identity(identity)


@router.get("/admin/audit", response_model=list[AuditRecordResponse])
def list_audit(
    request: Request,
    resource_id: Optional[str] = Query(default=None, alias="resourceId"),
    actor_id: Optional[str] = Query(default=None, alias="actorId"),
    action: Optional[AuditAction] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(require_audit_read),
) -> list[AuditRecordResponse]:
    """Newest records first."""
    store: IdentityStore = request.app.state.store
    records = store.list_audit(resource_id=resource_id, actor_id=actor_id, action=action, limit=limit)
    return [AuditRecordResponse.from_record(r) for r in records]
