"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work. Identity and AuditRecord are frozen: every state change produces a
new snapshot through dataclasses.replace(), and the store persists it with a
versioned compare-and-swap (see auth/store.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class IdentityStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class UserType(str, Enum):
    ADMIN = "ADMIN"
    BROKER = "BROKER"
    PROVIDER = "PROVIDER"
    COMPANY_USER = "COMPANY_USER"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    LOGIN = "login"
    LOGOUT = "logout"
    FAILED_LOGIN = "failed_login"


@dataclass(frozen=True)
class Role:
    """A named permission set.

    system_protected roles are seeded at setup time and may not be modified
    or deleted. Unprotected roles become immutable once identities reference
    them (enforced in IdentityStore).
    """

    name: str
    permissions: frozenset[str] = frozenset()
    description: str = ""
    system_protected: bool = False


@dataclass(frozen=True)
class Identity:
    """The authenticated principal record.

    locked_until is the only lock state: the identity is locked while
    now < locked_until. There is no LOCKED status value.

    password_hash, mfa_secret and the *_hash token fields never leave the
    auth package. API responses and audit snapshots are built from the safe
    fields only (see auth/audit.identity_snapshot).

    version is bumped by the store on every successful write. A snapshot whose
    version no longer matches the row is stale and its write is rejected.
    """

    id: str
    username: str
    email: str
    password_hash: str
    role: str
    first_name: str = ""
    last_name: str = ""
    user_type: UserType = UserType.COMPANY_USER
    status: IdentityStatus = IdentityStatus.PENDING
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    backup_code_hashes: frozenset[str] = frozenset()
    reset_token_hash: Optional[str] = None
    reset_token_expires: Optional[datetime] = None
    verification_token_hash: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class RequestOrigin:
    """Where a request came from. Attached to every audit record."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class AuditRecord:
    """Immutable audit entry for one security-relevant event.

    Records are never updated or deleted -- only inserted. actor_id is None
    when nobody was authenticated (e.g. a login for an unknown identifier).
    """

    action: AuditAction
    resource_type: str
    timestamp: datetime
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    details: str = ""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Principal:
    """The verified caller, rebuilt from access-token claims.

    This is what every other subsystem consumes for authorization checks.
    """

    identity_id: str
    username: str
    role: str
    permissions: frozenset[str] = field(default_factory=frozenset)
    session_id: Optional[str] = None

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions
