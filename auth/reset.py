"""
auth/reset.py -- Password-reset token lifecycle.

    NoTokenOutstanding --request--> TokenIssued(expires)
    TokenIssued --request--> TokenIssued(new token, new expiry)   previous token dead
    TokenIssued --complete before expiry--> NoTokenOutstanding    password replaced
    TokenIssued --complete at/after expiry--> NoTokenOutstanding  INVALID_RESET_TOKEN

Expiry is detected lazily when the token is presented; nothing sweeps.

request() never reveals whether the email belongs to an account: it returns
None either way. The plaintext token only ever reaches the notifier; the
identity row holds its keyed digest.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from datetime import timedelta

from auth.audit import AuditEmitter
from auth.lockout import cleared
from auth.models import AuditAction, Identity, RequestOrigin
from auth.notify import LoggingNotifier, Notifier, dispatch, redact_email
from auth.passwords import check_password_policy, digest_token, hash_password
from auth.results import ErrorKind, Outcome
from auth.store import IdentityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("bthl.auth")

INVALID_RESET_TOKEN_MESSAGE = "Reset token is invalid or has expired."


class PasswordResetWorkflow:
    def __init__(
        self,
        store: IdentityStore,
        audit: AuditEmitter,
        notifier: Notifier | None = None,
        token_ttl: timedelta = timedelta(hours=24),
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._notifier = notifier or LoggingNotifier()
        self._token_ttl = token_ttl
        self._clock = clock

    def request(self, email: str, origin: RequestOrigin | None = None) -> None:
        """Issue a reset token for email if it belongs to an identity."""
        identity = self._store.get_by_email(email)
        if identity is None:
            logger.info("Password reset requested for unknown address %s", redact_email(email))
            return None

        token = secrets.token_urlsafe(32)
        token_hash = digest_token(token)

        def derive(current: Identity):
            updated = replace(
                current,
                reset_token_hash=token_hash,
                reset_token_expires=self._clock() + self._token_ttl,
            )
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE,
                    current,
                    updated,
                    actor_id=None,
                    details="password reset requested",
                    origin=origin,
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return None
        self._audit.published(commit.records)
        dispatch(self._notifier.send_password_reset, commit.after.email, token)
        return None

    def complete(self, token: str, new_password: str, origin: RequestOrigin | None = None) -> Outcome[Identity]:
        """Consume a reset token and set a new password.

        On success the lockout state is cleared as well: proving control of
        the mailbox is enough to get back into a locked account.
        """
        token_hash = digest_token(token)
        identity = self._store.get_by_reset_token_hash(token_hash)
        if identity is None:
            return Outcome.failure(ErrorKind.INVALID_RESET_TOKEN, INVALID_RESET_TOKEN_MESSAGE)

        if self._expired(identity):
            self._discard_expired(identity, token_hash, origin)
            return Outcome.failure(ErrorKind.INVALID_RESET_TOKEN, INVALID_RESET_TOKEN_MESSAGE)

        violations = check_password_policy(new_password)
        if violations:
            return Outcome.failure(
                ErrorKind.VALIDATION, "Password does not meet requirements.", violations=tuple(violations)
            )
        new_hash = hash_password(new_password)

        def derive(current: Identity):
            # A concurrent completion or a newer request() replaced the token.
            if current.reset_token_hash != token_hash or self._expired(current):
                return None
            updated = replace(
                cleared(current),
                password_hash=new_hash,
                reset_token_hash=None,
                reset_token_expires=None,
            )
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE,
                    current,
                    updated,
                    actor_id=current.id,
                    details="password reset completed",
                    origin=origin,
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return Outcome.failure(ErrorKind.INVALID_RESET_TOKEN, INVALID_RESET_TOKEN_MESSAGE)
        self._audit.published(commit.records)
        logger.info("Password reset completed for %s", commit.after.username)
        dispatch(self._notifier.send_password_changed, commit.after.email)
        return Outcome.success(commit.after)

    def _expired(self, identity: Identity) -> bool:
        expires = identity.reset_token_expires
        return expires is None or self._clock() >= expires

    def _discard_expired(self, identity: Identity, token_hash: str, origin: RequestOrigin | None) -> None:
        def derive(current: Identity):
            if current.reset_token_hash != token_hash:
                return None
            updated = replace(current, reset_token_hash=None, reset_token_expires=None)
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE,
                    current,
                    updated,
                    actor_id=None,
                    details="expired reset token cleared",
                    origin=origin,
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is not None:
            self._audit.published(commit.records)
