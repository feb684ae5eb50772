"""
auth/mfa.py -- TOTP second factor and single-use backup codes.

One-time codes: pyotp TOTP (RFC 6238, 30 s step, 6 digits). verify() accepts
the current step and one step on either side to absorb clock drift.

Backup codes: backup_code_count random codes of the form "xxxxx-xxxxx"
(40 bits each, from secrets). Only their keyed digests are stored
(auth/passwords.digest_token). The plaintext list is returned by enroll()
and never again. Consuming a code removes its digest through the store's
compare-and-swap, so two requests racing on the same code cannot both win.

A rejected code changes nothing here. The login path (auth/authenticator.py)
counts it against the lockout and writes the failed_login record.
"""

from __future__ import annotations

import binascii
import logging
import re
import secrets
from dataclasses import dataclass, replace

import pyotp

from auth.audit import AuditEmitter
from auth.models import AuditAction, Identity, RequestOrigin
from auth.passwords import digest_token
from auth.results import ErrorKind, Outcome
from auth.store import IdentityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("bthl.auth")

_TOTP_PATTERN = re.compile(r"^\d{6}$")
# Shortest secret pyotp will generate by default is 32 chars; 16 (80 bits) is the RFC 4226 floor.
_MIN_SECRET_LENGTH = 16

INVALID_MFA_CODE_MESSAGE = "Invalid authentication code."


@dataclass(frozen=True)
class MfaSetup:
    """A fresh secret and the URI an authenticator app scans."""

    secret: str
    otpauth_url: str


def is_one_time_code(code: str) -> bool:
    """Six digits are read as a TOTP code; anything else as a backup code."""
    return bool(_TOTP_PATTERN.match(code.strip()))


def _normalize_code(code: str) -> str:
    return code.strip().lower()


def _new_backup_code() -> str:
    raw = secrets.token_hex(5)
    return f"{raw[:5]}-{raw[5:]}"


def _valid_secret(secret: str) -> bool:
    if len(secret) < _MIN_SECRET_LENGTH:
        return False
    try:
        pyotp.TOTP(secret).byte_secret()
    except (binascii.Error, ValueError):
        return False
    return True


class MfaManager:
    def __init__(
        self,
        store: IdentityStore,
        audit: AuditEmitter,
        issuer: str = "BTHL HealthCare",
        backup_code_count: int = 10,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._issuer = issuer
        self._backup_code_count = backup_code_count
        self._clock = clock

    def generate_secret(self, identity: Identity) -> MfaSetup:
        """Return a new random base32 secret and its provisioning URI. Nothing is stored."""
        secret = pyotp.random_base32()
        url = pyotp.TOTP(secret).provisioning_uri(name=identity.email, issuer_name=self._issuer)
        return MfaSetup(secret=secret, otpauth_url=url)

    def enroll(self, identity_id: str, secret: str, origin: RequestOrigin | None = None) -> Outcome[list[str]]:
        """Enable MFA with the given secret and return freshly generated backup codes.

        Re-enrolling replaces the secret and every previous backup code.
        """
        secret = secret.strip().upper()
        if not _valid_secret(secret):
            return Outcome.failure(ErrorKind.VALIDATION, "TOTP secret must be a base32 string of at least 16 characters.")
        identity = self._store.get_by_id(identity_id)
        if identity is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")

        codes: set[str] = set()
        while len(codes) < self._backup_code_count:
            codes.add(_new_backup_code())
        digests = frozenset(digest_token(c) for c in codes)

        def derive(current: Identity):
            updated = replace(current, mfa_enabled=True, mfa_secret=secret, backup_code_hashes=digests)
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE, current, updated, actor_id=current.id, details="mfa enabled", origin=origin
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        self._audit.published(commit.records)
        logger.info("MFA enabled for %s with %d backup codes", commit.after.username, len(codes))
        return Outcome.success(sorted(codes))

    def disable(self, identity_id: str, origin: RequestOrigin | None = None) -> Outcome[Identity]:
        identity = self._store.get_by_id(identity_id)
        if identity is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")

        def derive(current: Identity):
            updated = replace(current, mfa_enabled=False, mfa_secret=None, backup_code_hashes=frozenset())
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE, current, updated, actor_id=current.id, details="mfa disabled", origin=origin
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        self._audit.published(commit.records)
        logger.info("MFA disabled for %s", commit.after.username)
        return Outcome.success(commit.after)

    def validate_one_time_code(self, identity: Identity, code: str) -> bool:
        """True if code is the TOTP for now or one adjacent 30 s window."""
        if not identity.mfa_enabled or not identity.mfa_secret:
            return False
        code = code.strip()
        if not _TOTP_PATTERN.match(code):
            return False
        totp = pyotp.TOTP(identity.mfa_secret)
        return totp.verify(code, for_time=int(self._clock().timestamp()), valid_window=1)

    def consume_backup_code(self, identity_id: str, code: str, origin: RequestOrigin | None = None) -> Outcome[Identity]:
        """Remove one backup code. Unknown or already-used codes fail and change nothing."""
        identity = self._store.get_by_id(identity_id)
        if identity is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found.")
        digest = digest_token(_normalize_code(code))

        def derive(current: Identity):
            if digest not in current.backup_code_hashes:
                return None
            updated = replace(current, backup_code_hashes=current.backup_code_hashes - {digest})
            return updated, [
                self._audit.change(
                    AuditAction.UPDATE,
                    current,
                    updated,
                    actor_id=current.id,
                    details="backup code consumed",
                    origin=origin,
                )
            ]

        commit = self._store.update_with_retry(identity, derive)
        if commit is None:
            return Outcome.failure(ErrorKind.INVALID_MFA_CODE, INVALID_MFA_CODE_MESSAGE)
        self._audit.published(commit.records)
        remaining = len(commit.after.backup_code_hashes)
        if remaining <= 2:
            logger.warning("%s has %d backup code(s) left", commit.after.username, remaining)
        return Outcome.success(commit.after)

    def verify_second_factor(self, identity: Identity, code: str, origin: RequestOrigin | None = None) -> Outcome[Identity]:
        """Check a login's second factor: six digits are a TOTP, anything else a backup code."""
        if is_one_time_code(code):
            if self.validate_one_time_code(identity, code):
                return Outcome.success(identity)
            return Outcome.failure(ErrorKind.INVALID_MFA_CODE, INVALID_MFA_CODE_MESSAGE)
        return self.consume_backup_code(identity.id, code, origin)
