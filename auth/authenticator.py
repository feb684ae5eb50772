"""
auth/authenticator.py -- Credential verification and the lockout state machine.

verify() is the only way to turn a username/email + password (+ second
factor) into an Identity. It always performs exactly one bcrypt comparison
unless the identity is locked:

  - Unknown identifier: bcrypt against the dummy hash, then INVALID_CREDENTIALS [C1].
  - Locked identity:    ACCOUNT_LOCKED with the remaining seconds; the password
                        is never checked.
  - Wrong password:     failure counted through a versioned compare-and-swap
                        (lockout.after_failure), then INVALID_CREDENTIALS.
  - Right password but not ACTIVE/verified: ACCOUNT_DISABLED, no state change.
  - MFA enabled, no code: MFA_REQUIRED, no state change.
  - MFA enabled, wrong code: counted exactly like a wrong password, then
                        INVALID_MFA_CODE.
  - Everything passed:  counter reset, last_login stamped, Identity returned.

The login is only committed once every factor has passed. Wrong-password,
wrong-code and success records are written in the same transaction as the
lockout-state change.

confirm_password() is the same password gate for callers that already hold
a session (password change). Its failures feed the same counter.

Do NOT inline get_by_identifier() + verify_password() in route code -- that
re-introduces the timing side channel this class exists to close.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime

from auth.audit import AuditEmitter
from auth.lockout import LockoutPolicy, after_failure, after_success, cleared, is_locked, just_locked, lock_remaining
from auth.mfa import INVALID_MFA_CODE_MESSAGE, MfaManager, is_one_time_code
from auth.models import AuditAction, Identity, IdentityStatus, RequestOrigin
from auth.notify import LoggingNotifier, Notifier, dispatch, redact_email
from auth.passwords import verify_against_dummy, verify_password
from auth.results import ErrorKind, Outcome
from auth.store import IdentityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("bthl.auth")

# One message for unknown identifier and wrong password.
INVALID_CREDENTIALS_MESSAGE = "Invalid username/email or password."
ACCOUNT_DISABLED_MESSAGE = "Account is not enabled."
ACCOUNT_LOCKED_MESSAGE = "Account is temporarily locked. Try again later."
MFA_REQUIRED_MESSAGE = "A second authentication factor is required."

class Authenticator:
    def __init__(
        self,
        store: IdentityStore,
        audit: AuditEmitter,
        policy: LockoutPolicy | None = None,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
        reveal_lock_on_trigger: bool = False,
        mfa: MfaManager | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._policy = policy or LockoutPolicy()
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._reveal_lock_on_trigger = reveal_lock_on_trigger
        self._mfa = mfa or MfaManager(store, audit, clock=clock)

    def verify(
        self,
        identifier: str,
        password: str,
        origin: RequestOrigin | None = None,
        mfa_code: str | None = None,
    ) -> Outcome[Identity]:
        """Authenticate a username-or-email / password pair and, when enabled, the second factor."""
        identity = self._store.get_by_identifier(identifier)
        if identity is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_against_dummy(password)
            self._audit.emit(
                self._audit.record(AuditAction.FAILED_LOGIN, details="unknown identifier", origin=origin)
            )
            logger.info("Login failed: unknown identifier")
            return Outcome.failure(ErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        now = self._clock()
        if is_locked(identity, now):
            return self._reject_locked(identity, now, origin)

        if not verify_password(password, identity.password_hash):
            return self._count_failure(identity, origin)

        if identity.status is not IdentityStatus.ACTIVE or not identity.email_verified:
            self._audit.emit(
                self._audit.record(
                    AuditAction.FAILED_LOGIN,
                    resource_id=identity.id,
                    actor_id=identity.id,
                    details=f"account disabled (status={identity.status.value}, verified={identity.email_verified})",
                    origin=origin,
                )
            )
            logger.info("Login refused for disabled account %s", identity.username)
            return Outcome.failure(ErrorKind.ACCOUNT_DISABLED, ACCOUNT_DISABLED_MESSAGE)

        if identity.mfa_enabled:
            if not mfa_code:
                logger.info("Second factor required for %s", identity.username)
                return Outcome.failure(ErrorKind.MFA_REQUIRED, MFA_REQUIRED_MESSAGE)
            second = self._mfa.verify_second_factor(identity, mfa_code, origin)
            if not second.ok:
                factor = "one-time code" if is_one_time_code(mfa_code) else "backup code"
                return self._count_failure(
                    identity,
                    origin,
                    details=f"invalid {factor}",
                    kind=ErrorKind.INVALID_MFA_CODE,
                    message=INVALID_MFA_CODE_MESSAGE,
                )
            identity = second.value

        return self._record_success(identity, origin)

    def confirm_password(
        self, identity_id: str, password: str, origin: RequestOrigin | None = None
    ) -> Outcome[Identity]:
        """Re-check the password of a signed-in identity without recording a login.

        Refused while the account is locked; a wrong password counts toward the lock.
        """
        identity = self._store.get_by_id(identity_id)
        if identity is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        now = self._clock()
        if is_locked(identity, now):
            return self._reject_locked(identity, now, origin)
        if not verify_password(password, identity.password_hash):
            return self._count_failure(identity, origin, details="invalid current password (password change)")
        return Outcome.success(identity)

    def unlock(self, identity_id: str, actor_id: str | None, origin: RequestOrigin | None = None) -> Outcome[Identity]:
        """Administrative unlock: clear the lock and the failure counter now."""
        identity = self._store.get_by_id(identity_id)
        if identity is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")

        def derive(current: Identity):
            updated = cleared(current)
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE, current, updated, actor_id=actor_id, details="account unlocked", origin=origin
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        self._audit.published(commit.records)
        logger.info("Account %s unlocked by %s", commit.after.username, actor_id or "system")
        return Outcome.success(commit.after)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _reject_locked(self, identity: Identity, now: datetime, origin: RequestOrigin | None) -> Outcome[Identity]:
        remaining = lock_remaining(identity, now)
        retry_after = math.ceil(remaining.total_seconds()) if remaining is not None else None
        self._audit.emit(
            self._audit.record(
                AuditAction.FAILED_LOGIN,
                resource_id=identity.id,
                actor_id=identity.id,
                details="account locked",
                origin=origin,
            )
        )
        logger.info("Login refused for locked account %s (%ss remaining)", identity.username, retry_after)
        return Outcome.failure(ErrorKind.ACCOUNT_LOCKED, ACCOUNT_LOCKED_MESSAGE, retry_after=retry_after)

    def _count_failure(
        self,
        identity: Identity,
        origin: RequestOrigin | None,
        details: str = "invalid password",
        kind: ErrorKind = ErrorKind.INVALID_CREDENTIALS,
        message: str = INVALID_CREDENTIALS_MESSAGE,
    ) -> Outcome[Identity]:
        def derive(current: Identity):
            now = self._clock()
            if is_locked(current, now):
                # A concurrent attempt set the lock after our read.
                return None
            updated = after_failure(current, now, self._policy)
            note = details
            if just_locked(current, updated, now):
                note += "; lockout triggered"
            return updated, [
                self._audit.change(
                    AuditAction.FAILED_LOGIN, current, updated, actor_id=current.id, details=note, origin=origin
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            current = self._store.get_by_id(identity.id) or identity
            if self._reveal_lock_on_trigger:
                return self._reject_locked(current, self._clock(), origin)
            return self._failed_after_lock(current, origin, details, kind, message)
        self._audit.published(commit.records)

        now = self._clock()
        if just_locked(commit.before, commit.after, now):
            logger.warning(
                "Locked account %s for %s after %d failed attempts",
                commit.after.username,
                self._policy.duration,
                self._policy.threshold,
            )
            dispatch(
                self._notifier.send_account_locked,
                commit.after.email,
                int(self._policy.duration.total_seconds() // 60),
            )
            if self._reveal_lock_on_trigger:
                remaining = lock_remaining(commit.after, now)
                return Outcome.failure(
                    ErrorKind.ACCOUNT_LOCKED,
                    ACCOUNT_LOCKED_MESSAGE,
                    retry_after=math.ceil(remaining.total_seconds()) if remaining is not None else None,
                )
        else:
            logger.info(
                "Login failed for %s: %s (%d/%d)",
                redact_email(commit.after.email),
                details,
                commit.after.failed_login_attempts,
                self._policy.threshold,
            )
        return Outcome.failure(kind, message)

    def _failed_after_lock(
        self,
        identity: Identity,
        origin: RequestOrigin | None,
        details: str,
        kind: ErrorKind,
        message: str,
    ) -> Outcome[Identity]:
        self._audit.emit(
            self._audit.record(
                AuditAction.FAILED_LOGIN,
                resource_id=identity.id,
                actor_id=identity.id,
                details=f"{details}; account locked concurrently",
                origin=origin,
            )
        )
        return Outcome.failure(kind, message)

    def _record_success(self, identity: Identity, origin: RequestOrigin | None) -> Outcome[Identity]:
        def derive(current: Identity):
            now = self._clock()
            if is_locked(current, now):
                return None
            updated = after_success(current, now)
            return updated, [
                self._audit.change(
                    AuditAction.LOGIN, current, updated, actor_id=current.id, details="login succeeded", origin=origin
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            current = self._store.get_by_id(identity.id) or identity
            return self._reject_locked(current, self._clock(), origin)
        self._audit.published(commit.records)
        logger.info("Authenticated %s", commit.after.username)
        return Outcome.success(commit.after)
