"""
API request and response models for the BTHL authentication endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field names are snake_case in Python and camelCase on the wire
(alias_generator=to_camel). populate_by_name lets tests and internal callers
use either form.

Password fields are never whitespace-stripped: a leading or trailing space is
part of the secret.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from auth.models import AuditRecord, Identity, IdentityStatus, UserType


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(CamelModel):
    """Request body for POST /auth/register."""

    username: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(min_length=1, max_length=255)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    user_type: UserType


class LoginRequest(CamelModel):
    """Request body for POST /auth/login. mfaCode is required once MFA is enabled."""

    username_or_email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    mfa_code: Optional[str] = Field(default=None, max_length=32)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class ForgotPasswordRequest(CamelModel):
    email: EmailStr


class ResetPasswordRequest(CamelModel):
    token: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class VerifyEmailRequest(CamelModel):
    token: str = Field(min_length=1, max_length=255)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class UpdateProfileRequest(CamelModel):
    """Request body for PATCH /auth/me. Omitted fields keep their current value."""

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class EnableMfaRequest(CamelModel):
    totp_secret: str = Field(min_length=16, max_length=128)


class StatusUpdateRequest(CamelModel):
    """Request body for PATCH /admin/users/{id}/status."""

    status: IdentityStatus


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(CamelResponse):
    """Safe view of an identity. No hashes, secrets or token digests."""

    id: str
    username: str
    email: str
    first_name: str
    last_name: str
    user_type: UserType
    role: str
    status: IdentityStatus
    email_verified: bool
    mfa_enabled: bool
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserResponse":
        return cls(
            id=identity.id,
            username=identity.username,
            email=identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
            user_type=identity.user_type,
            role=identity.role,
            status=identity.status,
            email_verified=identity.email_verified,
            mfa_enabled=identity.mfa_enabled,
            locked_until=identity.locked_until,
            last_login=identity.last_login,
            created_at=identity.created_at,
        )


class RegisterResponse(CamelResponse):
    user_id: str
    status: IdentityStatus


class LoginResponse(CamelResponse):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class RefreshResponse(CamelResponse):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class BackupCodesResponse(CamelResponse):
    backup_codes: list[str]


class MfaSetupResponse(CamelResponse):
    secret: str
    otpauth_url: str


class MessageResponse(CamelResponse):
    message: str


class AuditRecordResponse(CamelResponse):
    id: Optional[int] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    details: str = ""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditRecordResponse":
        return cls(
            id=record.id,
            action=record.action.value,
            resource_type=record.resource_type,
            resource_id=record.resource_id,
            actor_id=record.actor_id,
            before=record.before,
            after=record.after,
            details=record.details,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            session_id=record.session_id,
            timestamp=record.timestamp,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
