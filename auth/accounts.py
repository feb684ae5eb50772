"""
auth/accounts.py -- Account lifecycle: registration, email verification, profile,
password change and administrative status changes.

Status rules:
  - Registration always creates PENDING, unverified identities.
  - verify_email() is the only PENDING -> ACTIVE path for self-registered users.
  - set_status(ACTIVE) refuses an identity whose email is not verified, so
    ACTIVE always implies email_verified.
  - Nothing moves an identity back to PENDING.

Lock state is not a status. Admin unlock lives on the Authenticator next to
the rest of the lockout state machine.
"""

from __future__ import annotations

import logging
import re
import secrets
import uuid
from dataclasses import replace

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError

from auth.audit import AuditEmitter
from auth.authenticator import Authenticator
from auth.models import AuditAction, Identity, IdentityStatus, RequestOrigin, UserType
from auth.notify import LoggingNotifier, Notifier, dispatch
from auth.passwords import check_password_policy, digest_token, hash_password
from auth.results import ErrorKind, Outcome
from auth.roles import SELF_REGISTRATION_TYPES, role_for_user_type
from auth.store import IdentityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("bthl.auth")

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
# Letters of any script, with single spaces, apostrophes or hyphens between them.
_NAME_PATTERN = re.compile(r"^[^\W\d_]+(?:[ '-][^\W\d_]+)*$")
_NAME_MAX_LENGTH = 100

_CONFLICT_MESSAGE = "Username or email is already registered."


class AccountService:
    def __init__(
        self,
        store: IdentityStore,
        audit: AuditEmitter,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
        authenticator: Authenticator | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._authenticator = authenticator or Authenticator(store, audit, notifier=self._notifier, clock=clock)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        user_type: UserType,
        first_name: str = "",
        last_name: str = "",
        origin: RequestOrigin | None = None,
    ) -> Outcome[Identity]:
        """Self-registration. Creates a PENDING identity and sends a verification token."""
        if user_type not in SELF_REGISTRATION_TYPES:
            return Outcome.failure(ErrorKind.VALIDATION, f"User type {user_type.value} cannot self-register.")

        token = secrets.token_urlsafe(32)
        result = self._create(
            username=username,
            email=email,
            password=password,
            role=role_for_user_type(user_type),
            user_type=user_type,
            first_name=first_name,
            last_name=last_name,
            status=IdentityStatus.PENDING,
            email_verified=False,
            verification_token_hash=digest_token(token),
            actor_id=None,
            details="registered",
            origin=origin,
        )
        if result.ok:
            dispatch(self._notifier.send_email_verification, result.value.email, token)
        return result

    def create_verified(
        self,
        username: str,
        email: str,
        password: str,
        role: str,
        user_type: UserType = UserType.ADMIN,
        actor_id: str | None = None,
        origin: RequestOrigin | None = None,
    ) -> Outcome[Identity]:
        """Operator path: create an ACTIVE, verified identity with an explicit role."""
        if self._store.get_role(role) is None:
            return Outcome.failure(ErrorKind.VALIDATION, f"Unknown role: {role}")
        return self._create(
            username=username,
            email=email,
            password=password,
            role=role,
            user_type=user_type,
            first_name="",
            last_name="",
            status=IdentityStatus.ACTIVE,
            email_verified=True,
            verification_token_hash=None,
            actor_id=actor_id,
            details="created by operator",
            origin=origin,
        )

    def _create(
        self,
        *,
        username: str,
        email: str,
        password: str,
        role: str,
        user_type: UserType,
        first_name: str,
        last_name: str,
        status: IdentityStatus,
        email_verified: bool,
        verification_token_hash: str | None,
        actor_id: str | None,
        details: str,
        origin: RequestOrigin | None,
    ) -> Outcome[Identity]:
        violations = []
        if not _USERNAME_PATTERN.match(username):
            violations.append("Username must be 3-50 characters: letters, digits, '.', '_' or '-'.")
        try:
            validate_email(email, check_deliverability=False)
        except EmailNotValidError as exc:
            violations.append(f"Email address is not valid: {exc}")
        violations.extend(check_password_policy(password))
        if violations:
            return Outcome.failure(ErrorKind.VALIDATION, "Registration data is invalid.", violations=tuple(violations))

        if self._store.username_taken(username) or self._store.email_taken(email):
            return Outcome.failure(ErrorKind.CONFLICT, _CONFLICT_MESSAGE)

        identity = Identity(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=hash_password(password),
            role=role,
            first_name=first_name,
            last_name=last_name,
            user_type=user_type,
            status=status,
            email_verified=email_verified,
            verification_token_hash=verification_token_hash,
            created_at=self._clock(),
        )
        record = self._audit.change(
            AuditAction.CREATE, None, identity, actor_id=actor_id or identity.id, details=details, origin=origin
        )
        try:
            stored = self._store.create_identity(identity, audit=[record])
        except IntegrityError:
            # Lost a race with a concurrent registration for the same name.
            return Outcome.failure(ErrorKind.CONFLICT, _CONFLICT_MESSAGE)
        self._audit.published([record])
        logger.info("Created identity %s (%s, %s)", stored.username, stored.role, stored.status.value)
        return Outcome.success(stored)

    # ------------------------------------------------------------------
    # Verification and credentials
    # ------------------------------------------------------------------

    def verify_email(self, token: str, origin: RequestOrigin | None = None) -> Outcome[Identity]:
        token_hash = digest_token(token)
        identity = self._store.get_by_verification_token_hash(token_hash)
        if identity is None:
            return Outcome.failure(ErrorKind.VALIDATION, "Verification token is invalid.")

        def derive(current: Identity):
            if current.verification_token_hash != token_hash:
                return None
            status = IdentityStatus.ACTIVE if current.status is IdentityStatus.PENDING else current.status
            updated = replace(current, email_verified=True, verification_token_hash=None, status=status)
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE, current, updated, actor_id=current.id, details="email verified", origin=origin
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return Outcome.failure(ErrorKind.VALIDATION, "Verification token is invalid.")
        self._audit.published(commit.records)
        logger.info("Email verified for %s", commit.after.username)
        return Outcome.success(commit.after)

    def change_password(
        self,
        identity_id: str,
        current_password: str,
        new_password: str,
        origin: RequestOrigin | None = None,
    ) -> Outcome[Identity]:
        """Replace the password of an authenticated identity. Clears any outstanding reset token.

        The current password goes through the same lockout gate as login: a
        locked account is refused and every wrong guess counts toward the lock.
        """
        confirmed = self._authenticator.confirm_password(identity_id, current_password, origin)
        if not confirmed.ok:
            if confirmed.error.kind is ErrorKind.INVALID_CREDENTIALS:
                return Outcome.failure(ErrorKind.INVALID_CREDENTIALS, "Current password is incorrect.")
            return confirmed
        identity = confirmed.value

        violations = check_password_policy(new_password)
        if violations:
            return Outcome.failure(
                ErrorKind.VALIDATION, "Password does not meet requirements.", violations=tuple(violations)
            )
        new_hash = hash_password(new_password)

        def derive(current: Identity):
            updated = replace(
                current,
                password_hash=new_hash,
                reset_token_hash=None,
                reset_token_expires=None,
                failed_login_attempts=0,
            )
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE, current, updated, actor_id=current.id, details="password changed", origin=origin
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        self._audit.published(commit.records)
        dispatch(self._notifier.send_password_changed, commit.after.email)
        logger.info("Password changed for %s", commit.after.username)
        return Outcome.success(commit.after)

    def update_profile(
        self,
        identity_id: str,
        first_name: str | None = None,
        last_name: str | None = None,
        origin: RequestOrigin | None = None,
    ) -> Outcome[Identity]:
        """Update first and/or last name. None leaves a field unchanged."""
        changes = {}
        violations = []
        for field, label, value in (("first_name", "First name", first_name), ("last_name", "Last name", last_name)):
            if value is None:
                continue
            value = value.strip()
            if not 1 <= len(value) <= _NAME_MAX_LENGTH or not _NAME_PATTERN.match(value):
                violations.append(f"{label} must be 1-{_NAME_MAX_LENGTH} letters, spaces, apostrophes or hyphens.")
            changes[field] = value
        if violations:
            return Outcome.failure(ErrorKind.VALIDATION, "Profile data is invalid.", violations=tuple(violations))

        identity = self._store.get_by_id(identity_id)
        if identity is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        if not changes:
            return Outcome.success(identity)

        def derive(current: Identity):
            updated = replace(current, **changes)
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE, current, updated, actor_id=current.id, details="profile updated", origin=origin
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        self._audit.published(commit.records)
        logger.info("Profile updated for %s", commit.after.username)
        return Outcome.success(commit.after)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_status(
        self,
        identity_id: str,
        status: IdentityStatus,
        actor_id: str | None,
        origin: RequestOrigin | None = None,
    ) -> Outcome[Identity]:
        """Activate, deactivate or suspend an identity."""
        if status is IdentityStatus.PENDING:
            return Outcome.failure(ErrorKind.VALIDATION, "An identity cannot be returned to PENDING.")
        identity = self._store.get_by_id(identity_id)
        if identity is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        if status is IdentityStatus.ACTIVE and not identity.email_verified:
            return Outcome.failure(ErrorKind.VALIDATION, "Email must be verified before the account is activated.")

        def derive(current: Identity):
            updated = replace(current, status=status)
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE,
                    current,
                    updated,
                    actor_id=actor_id,
                    details=f"status {current.status.value} -> {status.value}",
                    origin=origin,
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        self._audit.published(commit.records)
        logger.info("Status of %s set to %s by %s", commit.after.username, status.value, actor_id or "system")
        return Outcome.success(commit.after)

    def get(self, identity_id: str) -> Outcome[Identity]:
        identity = self._store.get_by_id(identity_id)
        if identity is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        return Outcome.success(identity)
