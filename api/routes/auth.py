"""
api/routes/auth.py -- Authentication, session and account self-service endpoints.

Routes:
  POST /auth/register          -- self-registration; 201 {userId, status}
  POST /auth/verify-email      -- PENDING -> ACTIVE with the emailed token
  POST /auth/login             -- password (+ second factor) login; token pair
  POST /auth/refresh           -- new access token from a refresh token
  POST /auth/logout            -- audit only; the client discards its tokens
  POST /auth/forgot-password   -- always 200, whether or not the email exists
  POST /auth/reset-password    -- consume a reset token, set a new password
  POST /auth/change-password   -- authenticated password change
  GET  /auth/me                -- current identity
  PATCH /auth/me               -- update first / last name
  POST /auth/mfa/setup         -- fresh TOTP secret + otpauth URI (not stored)
  POST /auth/enable-mfa        -- store the secret, return backup codes once
  POST /auth/disable-mfa       -- clear secret and backup codes

Security:
  [H2] /login, /change-password and /forgot-password are rate-limited per IP
       (LOGIN_RATE_LIMIT).
  [C1] Authenticator.verify() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries a token or code.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.errors import unwrap
from api.limiter import limiter, login_rate_limit
from api.models import (
    BackupCodesResponse,
    ChangePasswordRequest,
    EnableMfaRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MfaSetupResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    UpdateProfileRequest,
    UserResponse,
    VerifyEmailRequest,
)
from auth.accounts import AccountService
from auth.audit import RESOURCE_SESSION, AuditEmitter
from auth.authenticator import Authenticator
from auth.dependencies import get_current_principal, request_origin
from auth.mfa import MfaManager
from auth.models import AuditAction, Principal
from auth.reset import PasswordResetWorkflow
from auth.roles import permissions_for
from auth.tokens import TokenService

# Auth policy:
# - register, verify-email, login, refresh, forgot-password, reset-password: public
# - everything else: requires a valid access token (get_current_principal)
router = APIRouter()

_FORGOT_PASSWORD_MESSAGE = "If that address is registered, a reset link has been sent."


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a PENDING account. A verification token goes to the notifier."""
    accounts: AccountService = request.app.state.accounts
    identity = unwrap(
        accounts.register(
            username=body.username,
            email=body.email,
            password=body.password,
            user_type=body.user_type,
            first_name=body.first_name,
            last_name=body.last_name,
            origin=request_origin(request),
        )
    )
    return RegisterResponse(user_id=identity.id, status=identity.status)


@router.post("/auth/verify-email", response_model=RegisterResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> RegisterResponse:
    accounts: AccountService = request.app.state.accounts
    identity = unwrap(accounts.verify_email(body.token, origin=request_origin(request)))
    return RegisterResponse(user_id=identity.id, status=identity.status)


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest, response: Response) -> LoginResponse:
    """Authenticate with username-or-email and password.

    Unknown identifier and wrong password produce the same 401 body. When
    the account has MFA enabled, mfaCode must carry a current TOTP code or
    an unused backup code; without it the answer is 401 mfa_required.
    """
    _no_store(response)
    origin = request_origin(request)
    authenticator: Authenticator = request.app.state.authenticator
    identity = unwrap(
        authenticator.verify(body.username_or_email, body.password, origin=origin, mfa_code=body.mfa_code)
    )

    tokens: TokenService = request.app.state.tokens
    pair = tokens.issue(identity, permissions_for(request.app.state.store, identity.role))
    return LoginResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        user=UserResponse.from_identity(identity),
    )


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest, response: Response) -> RefreshResponse:
    """Exchange a refresh token for a new access token. The refresh token is not rotated."""
    _no_store(response)
    tokens: TokenService = request.app.state.tokens
    pair = unwrap(tokens.refresh(body.refresh_token))
    return RefreshResponse(access_token=pair.access_token, token_type=pair.token_type, expires_in=pair.expires_in)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Start a password reset. The response never reveals whether the email is registered."""
    reset: PasswordResetWorkflow = request.app.state.reset
    reset.request(body.email, origin=request_origin(request))
    return MessageResponse(message=_FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    reset: PasswordResetWorkflow = request.app.state.reset
    unwrap(reset.complete(body.token, body.new_password, origin=request_origin(request)))
    return MessageResponse(message="Password has been reset.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> MessageResponse:
    """Record the logout. Tokens stay valid until they expire; the client discards them."""
    audit: AuditEmitter = request.app.state.audit
    audit.emit(
        audit.record(
            AuditAction.LOGOUT,
            resource_type=RESOURCE_SESSION,
            resource_id=principal.session_id,
            actor_id=principal.identity_id,
            details="logout",
            origin=request_origin(request),
        )
    )
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> UserResponse:
    accounts: AccountService = request.app.state.accounts
    return UserResponse.from_identity(unwrap(accounts.get(principal.identity_id)))


@router.patch("/auth/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: UpdateProfileRequest,
    principal: Principal = Depends(get_current_principal),
) -> UserResponse:
    """Update the caller's first and/or last name. Omitted fields are left alone."""
    accounts: AccountService = request.app.state.accounts
    identity = unwrap(
        accounts.update_profile(
            principal.identity_id,
            first_name=body.first_name,
            last_name=body.last_name,
            origin=request_origin(request),
        )
    )
    return UserResponse.from_identity(identity)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    accounts: AccountService = request.app.state.accounts
    unwrap(
        accounts.change_password(
            principal.identity_id, body.current_password, body.new_password, origin=request_origin(request)
        )
    )
    return MessageResponse(message="Password changed.")


@router.post("/auth/mfa/setup", response_model=MfaSetupResponse)
def mfa_setup(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
) -> MfaSetupResponse:
    """Generate a secret for the authenticator app. Nothing changes until /auth/enable-mfa."""
    _no_store(response)
    accounts: AccountService = request.app.state.accounts
    identity = unwrap(accounts.get(principal.identity_id))
    mfa: MfaManager = request.app.state.mfa
    setup = mfa.generate_secret(identity)
    return MfaSetupResponse(secret=setup.secret, otpauth_url=setup.otpauth_url)


@router.post("/auth/enable-mfa", response_model=BackupCodesResponse)
def enable_mfa(
    request: Request,
    body: EnableMfaRequest,
    response: Response,
    principal: Principal = Depends(get_current_principal),
) -> BackupCodesResponse:
    """Enable MFA. The backup codes in this response are shown once and never again."""
    _no_store(response)
    mfa: MfaManager = request.app.state.mfa
    codes = unwrap(mfa.enroll(principal.identity_id, body.totp_secret, origin=request_origin(request)))
    return BackupCodesResponse(backup_codes=codes)


@router.post("/auth/disable-mfa", response_model=MessageResponse)
def disable_mfa(request: Request, principal: Principal = Depends(get_current_principal)) -> MessageResponse:
    mfa: MfaManager = request.app.state.mfa
    unwrap(mfa.disable(principal.identity_id, origin=request_origin(request)))
    return MessageResponse(message="MFA disabled.")
