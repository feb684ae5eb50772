"""
auth/store.py -- SQLAlchemy Core persistence layer for identities, roles and the audit log.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_identity / _row_to_role / _row_to_audit are the mappers. Services and
routes never touch SQL directly.

Concurrency:
  Identity rows carry a version column. compare_and_swap() issues
  UPDATE ... WHERE id = :id AND version = :seen and reports whether exactly
  one row matched. A caller holding a stale snapshot gets False and must
  re-read; two concurrent failed logins can therefore never both write a
  counter derived from the same old value.

Audit atomicity:
  create_identity() and compare_and_swap() take the audit records describing
  the change and insert them inside the same transaction (engine.begin()).
  Either both the state change and its audit trail are committed or neither is.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Reset tokens, verification tokens and backup codes are stored as keyed
  digests (auth/passwords.digest_token), never in plaintext.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, exists, func, select
from sqlalchemy.engine import Connection, Engine

from auth.models import AuditAction, AuditRecord, Identity, IdentityStatus, Role, UserType
from auth.results import ConcurrentUpdateError
from auth.roles import BUILTIN_ROLES

logger = logging.getLogger("bthl.auth.store")

_CAS_ATTEMPTS = 10

Derive = Callable[[Identity], Optional[tuple[Identity, Sequence[AuditRecord]]]]


@dataclass(frozen=True)
class Commit:
    """A landed identity write: the snapshot it replaced, the stored result, its audit records."""

    before: Identity
    after: Identity
    records: tuple[AuditRecord, ...]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_roles = Table(
    "roles",
    _metadata,
    Column("name", String(50), primary_key=True),
    Column("description", Text),
    Column("permissions", Text, nullable=False),  # JSON array, sorted
    Column("system_protected", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_identities = Table(
    "identities",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255), nullable=False),
    Column("email_key", String(255), nullable=False, unique=True),  # lower(email)
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("user_type", String(30), nullable=False),
    Column("role", String(50), nullable=False),
    Column("status", String(20), nullable=False, server_default="PENDING"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", Text),
    Column("backup_codes", Text, nullable=False, server_default="[]"),  # JSON array of digests
    Column("reset_token_hash", String(64), unique=True),
    Column("reset_token_expires", String(32)),
    Column("verification_token_hash", String(64), unique=True),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, server_default="1"),
)

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(20), nullable=False),
    Column("resource_type", String(50), nullable=False),
    Column("resource_id", String(36)),
    Column("actor_id", String(36)),
    Column("before_state", Text),  # JSON object
    Column("after_state", Text),  # JSON object
    Column("details", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("session_id", String(36)),
    Column("timestamp", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on a login write.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        # Naive timestamps are written by nothing in this package; treat as UTC.
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _identity_values(identity: Identity) -> dict:
    """Column values for an identity, excluding id and version."""
    return {
        "username": identity.username,
        "email": identity.email,
        "email_key": identity.email.lower(),
        "password_hash": identity.password_hash,
        "first_name": identity.first_name,
        "last_name": identity.last_name,
        "user_type": identity.user_type.value,
        "role": identity.role,
        "status": identity.status.value,
        "email_verified": 1 if identity.email_verified else 0,
        "failed_login_attempts": identity.failed_login_attempts,
        "locked_until": _to_iso(identity.locked_until),
        "mfa_enabled": 1 if identity.mfa_enabled else 0,
        "mfa_secret": identity.mfa_secret,
        "backup_codes": json.dumps(sorted(identity.backup_code_hashes)),
        "reset_token_hash": identity.reset_token_hash,
        "reset_token_expires": _to_iso(identity.reset_token_expires),
        "verification_token_hash": identity.verification_token_hash,
        "last_login": _to_iso(identity.last_login),
    }


def _insert_audit(conn: Connection, records: Sequence[AuditRecord]) -> None:
    for record in records:
        conn.execute(
            _audit_log.insert().values(
                action=record.action.value,
                resource_type=record.resource_type,
                resource_id=record.resource_id,
                actor_id=record.actor_id,
                before_state=json.dumps(record.before) if record.before is not None else None,
                after_state=json.dumps(record.after) if record.after is not None else None,
                details=record.details,
                ip_address=record.ip_address,
                user_agent=record.user_agent,
                session_id=record.session_id,
                timestamp=_to_iso(record.timestamp),
            )
        )


def _role_is_mutable(name: str):
    """WHERE clause: the named role exists, is not system-protected and no identity holds it."""
    in_use = exists().where(_identities.c.role == name)
    return (_roles.c.name == name) & (_roles.c.system_protected == 0) & ~in_use


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity, Role and AuditRecord entities.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        store.create_identity(identity, audit=[record])
        current = store.get_by_identifier("alice")
        store.compare_and_swap(current, replace(current, status=...), audit=[...])
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_builtin_roles()

    def _ensure_builtin_roles(self) -> None:
        """Seed the built-in roles if they are not present. Idempotent."""
        existing = {r.name for r in self.list_roles()}
        missing = [r for r in BUILTIN_ROLES if r.name not in existing]
        if missing:
            with self.engine.begin() as conn:
                for role in missing:
                    conn.execute(_roles.insert().values(**_role_values(role), created_at=_now_iso()))
            logger.info("Seeded %d built-in role(s)", len(missing))

    # ------------------------------------------------------------------
    # Identity writes
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity, audit: Sequence[AuditRecord] = ()) -> Identity:
        """Insert a new identity together with its audit records and return the stored snapshot.

        Raises sqlalchemy.exc.IntegrityError if the username or email (case-
        insensitive) already exists. Callers treat that as a conflict: a
        concurrent registration won the race after the pre-check passed.
        """
        created_at = identity.created_at or datetime.now(timezone.utc)
        with self.engine.begin() as conn:
            conn.execute(
                _identities.insert().values(
                    id=identity.id,
                    created_at=_to_iso(created_at),
                    version=1,
                    **_identity_values(identity),
                )
            )
            _insert_audit(conn, audit)
        stored = self.get_by_id(identity.id)
        if stored is None:
            raise RuntimeError(f"Identity {identity.id} missing after insert")
        return stored

    def compare_and_swap(self, current: Identity, updated: Identity, audit: Sequence[AuditRecord] = ()) -> bool:
        """Persist updated only if the row still has current.version.

        Returns True and commits the audit records when the write landed.
        Returns False (nothing written, no audit) when another writer got
        there first; the caller must re-read and re-derive its change.
        """
        if updated.id != current.id:
            raise ValueError("compare_and_swap cannot change an identity's id")
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == current.id) & (_identities.c.version == current.version))
                .values(version=current.version + 1, **_identity_values(updated))
            )
            if result.rowcount != 1:
                return False
            _insert_audit(conn, audit)
        return True

    def update_with_retry(self, identity: Identity, derive: Derive, attempts: int = _CAS_ATTEMPTS) -> Commit | None:
        """Apply derive() to the freshest snapshot until the compare-and-swap lands.

        derive(current) returns (updated, audit_records), or None to abandon
        the update because the current state no longer permits it. On a
        version conflict the row is re-read and derive() runs again against
        the new snapshot: the change is always computed from what is actually
        stored, never from a stale in-memory copy.

        Returns the Commit (before/after snapshots, records) or None if derive
        abandoned or the identity disappeared. Raises ConcurrentUpdateError if
        every attempt lost the race.
        """
        current = identity
        for _ in range(attempts):
            change = derive(current)
            if change is None:
                return None
            updated, records = change
            if self.compare_and_swap(current, updated, records):
                return Commit(
                    before=current,
                    after=replace(updated, version=current.version + 1),
                    records=tuple(records),
                )
            fresh = self.get_by_id(current.id)
            if fresh is None:
                return None
            current = fresh
        raise ConcurrentUpdateError(f"Identity {identity.id} kept changing; gave up after {attempts} attempts")

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def get_by_id(self, identity_id: str) -> Identity | None:
        return self._fetch_one(_identities.c.id == identity_id)

    def get_by_username(self, username: str) -> Identity | None:
        """Exact, case-sensitive username match."""
        return self._fetch_one(_identities.c.username == username)

    def get_by_email(self, email: str) -> Identity | None:
        """Case-insensitive email match."""
        return self._fetch_one(_identities.c.email_key == email.lower())

    def get_by_identifier(self, identifier: str) -> Identity | None:
        """Resolve a login identifier: username first, then email."""
        identity = self.get_by_username(identifier)
        if identity is None:
            identity = self.get_by_email(identifier)
        return identity

    def get_by_reset_token_hash(self, token_hash: str) -> Identity | None:
        return self._fetch_one(_identities.c.reset_token_hash == token_hash)

    def get_by_verification_token_hash(self, token_hash: str) -> Identity | None:
        return self._fetch_one(_identities.c.verification_token_hash == token_hash)

    def username_taken(self, username: str) -> bool:
        return self.get_by_username(username) is not None

    def email_taken(self, email: str) -> bool:
        return self.get_by_email(email) is not None

    def has_identities(self) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(_identities)).scalar()
        return (count or 0) > 0

    def _fetch_one(self, clause) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(clause)).fetchone()
        return _row_to_identity(row) if row is not None else None

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def get_role(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def create_role(self, role: Role) -> None:
        """Insert a custom role. Raises IntegrityError if the name exists."""
        with self.engine.begin() as conn:
            conn.execute(_roles.insert().values(**_role_values(role), created_at=_now_iso()))

    def count_identities_with_role(self, name: str) -> int:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_identities).where(_identities.c.role == name)
            ).scalar()
        return count or 0

    def update_role_permissions(self, name: str, permissions: Iterable[str]) -> bool:
        """Replace a role's permission set.

        Returns False when the role does not exist, is system-protected, or
        already has identities assigned. The guards are part of the UPDATE
        itself, so an assignment committed concurrently cannot slip between
        check and write.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _roles.update().where(_role_is_mutable(name)).values(permissions=json.dumps(sorted(set(permissions))))
            )
        return result.rowcount > 0

    def delete_role(self, name: str) -> bool:
        """Delete a role. Same guards as update_role_permissions()."""
        with self.engine.begin() as conn:
            result = conn.execute(_roles.delete().where(_role_is_mutable(name)))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Audit log (append-only)
    # ------------------------------------------------------------------

    def append_audit(self, records: Sequence[AuditRecord]) -> None:
        """Insert audit records that accompany no state change."""
        with self.engine.begin() as conn:
            _insert_audit(conn, records)

    def list_audit(
        self,
        resource_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """Return audit records newest first, optionally filtered."""
        query = _audit_log.select()
        if resource_id is not None:
            query = query.where(_audit_log.c.resource_id == resource_id)
        if actor_id is not None:
            query = query.where(_audit_log.c.actor_id == actor_id)
        if action is not None:
            query = query.where(_audit_log.c.action == action.value)
        query = query.order_by(_audit_log.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _role_values(role: Role) -> dict:
    return {
        "name": role.name,
        "description": role.description,
        "permissions": json.dumps(sorted(role.permissions)),
        "system_protected": 1 if role.system_protected else 0,
    }


def _row_to_role(row) -> Role:
    return Role(
        name=row.name,
        description=row.description or "",
        permissions=frozenset(json.loads(row.permissions or "[]")),
        system_protected=bool(row.system_protected),
    )


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        user_type=UserType(row.user_type),
        role=row.role,
        status=IdentityStatus(row.status),
        email_verified=bool(row.email_verified),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=_from_iso(row.locked_until),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        backup_code_hashes=frozenset(json.loads(row.backup_codes or "[]")),
        reset_token_hash=row.reset_token_hash,
        reset_token_expires=_from_iso(row.reset_token_expires),
        verification_token_hash=row.verification_token_hash,
        last_login=_from_iso(row.last_login),
        created_at=_from_iso(row.created_at),
        version=row.version,
    )


def _row_to_audit(row) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        action=AuditAction(row.action),
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        actor_id=row.actor_id,
        before=json.loads(row.before_state) if row.before_state else None,
        after=json.loads(row.after_state) if row.after_state else None,
        details=row.details or "",
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        session_id=row.session_id,
        timestamp=_from_iso(row.timestamp),
    )
