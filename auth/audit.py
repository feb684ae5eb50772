"""
auth/audit.py -- Audit record construction and emission.

Two paths, one record shape:

  State changes: the service builds the record with change() and hands it to
      IdentityStore.compare_and_swap() / create_identity(), which insert it in
      the same transaction as the change. After the commit the service calls
      published() so the record also reaches the log stream.

  No state change (unknown identifier, locked attempt, logout, rejected MFA
  code): emit() appends the record on its own.

Snapshots only carry fields that are safe to read back: no password hash,
no MFA secret, no token digests. Backup codes are reported as a count.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Optional

from auth.models import AuditAction, AuditRecord, Identity, RequestOrigin
from auth.store import IdentityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("bthl.audit")

RESOURCE_IDENTITY = "identity"
RESOURCE_SESSION = "session"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def identity_snapshot(identity: Identity) -> dict[str, Any]:
    """Return the audit-safe view of an identity."""
    return {
        "username": identity.username,
        "email": identity.email,
        "first_name": identity.first_name,
        "last_name": identity.last_name,
        "role": identity.role,
        "status": identity.status.value,
        "email_verified": identity.email_verified,
        "failed_login_attempts": identity.failed_login_attempts,
        "locked_until": _iso(identity.locked_until),
        "mfa_enabled": identity.mfa_enabled,
        "backup_codes_remaining": len(identity.backup_code_hashes),
        "reset_token_outstanding": identity.reset_token_hash is not None,
        "last_login": _iso(identity.last_login),
    }


class AuditEmitter:
    """Builds AuditRecords and writes the ones that accompany no state change."""

    def __init__(self, store: IdentityStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    def record(
        self,
        action: AuditAction,
        *,
        resource_type: str = RESOURCE_IDENTITY,
        resource_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        before: Optional[dict[str, Any]] = None,
        after: Optional[dict[str, Any]] = None,
        details: str = "",
        origin: Optional[RequestOrigin] = None,
    ) -> AuditRecord:
        origin = origin or RequestOrigin()
        return AuditRecord(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            before=before,
            after=after,
            details=details,
            timestamp=self._clock(),
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            session_id=origin.session_id,
        )

    def change(
        self,
        action: AuditAction,
        before: Optional[Identity],
        after: Identity,
        *,
        actor_id: Optional[str],
        details: str,
        origin: Optional[RequestOrigin] = None,
    ) -> AuditRecord:
        """Record for an identity mutation, with before/after snapshots."""
        return self.record(
            action,
            resource_id=after.id,
            actor_id=actor_id,
            before=identity_snapshot(before) if before is not None else None,
            after=identity_snapshot(after),
            details=details,
            origin=origin,
        )

    def emit(self, record: AuditRecord) -> None:
        """Persist a standalone record and log it."""
        self._store.append_audit([record])
        self.published([record])

    def published(self, records: Iterable[AuditRecord]) -> None:
        """Log records that have been committed."""
        for record in records:
            logger.info(
                "audit action=%s resource=%s/%s actor=%s ip=%s details=%s",
                record.action.value,
                record.resource_type,
                record.resource_id or "-",
                record.actor_id or "-",
                record.ip_address or "-",
                record.details,
            )
