"""
tests/helpers.py -- Test doubles and builders shared by the test modules.

Imported by conftest.py after it has set the environment, so the auth
modules below see DEBUG / BCRYPT_ROUNDS from the test configuration.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from auth.accounts import AccountService
from auth.audit import AuditEmitter
from auth.authenticator import Authenticator
from auth.lockout import LockoutPolicy
from auth.mfa import MfaManager
from auth.models import Identity, IdentityStatus, UserType
from auth.passwords import hash_password
from auth.reset import PasswordResetWorkflow
from auth.store import IdentityStore
from auth.tokens import TokenService
from core.config import get_settings

PASSWORD = "Correct-Horse-42"
WRONG_PASSWORD = "Wrong-Horse-42!"
NEW_PASSWORD = "Brand-New-Secret-7"


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@dataclass
class Sent:
    kind: str
    email: str
    token: str | None = None


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Sent] = []

    def send_email_verification(self, email: str, token: str) -> None:
        self.sent.append(Sent("verify", email, token))

    def send_password_reset(self, email: str, token: str) -> None:
        self.sent.append(Sent("reset", email, token))

    def send_password_changed(self, email: str) -> None:
        self.sent.append(Sent("changed", email))

    def send_account_locked(self, email: str, lockout_minutes: int) -> None:
        self.sent.append(Sent("locked", email, str(lockout_minutes)))

    def of_kind(self, kind: str) -> list[Sent]:
        return [s for s in self.sent if s.kind == kind]

    def last_token(self, kind: str) -> str:
        return self.of_kind(kind)[-1].token


def memory_url(label: str = "auth") -> str:
    """Unique named shared-memory SQLite URL, visible to every thread in the process."""
    return f"sqlite:///file:test_{label}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_services(store: IdentityStore, clock: FakeClock, notifier: RecordingNotifier, **overrides) -> SimpleNamespace:
    """Build the service graph around a store, the way api.main.build_services() does for the app."""
    settings = get_settings()
    audit = AuditEmitter(store, clock=clock)
    mfa = MfaManager(store, audit, issuer="BTHL HealthCare", backup_code_count=10, clock=clock)
    authenticator = Authenticator(
        store,
        audit,
        policy=LockoutPolicy(threshold=5, duration=timedelta(minutes=30)),
        notifier=notifier,
        clock=clock,
        reveal_lock_on_trigger=overrides.get("reveal_lock_on_trigger", False),
        mfa=mfa,
    )
    return SimpleNamespace(
        store=store,
        clock=clock,
        notifier=notifier,
        audit=audit,
        authenticator=authenticator,
        tokens=TokenService(
            secret_key=settings.secret_key,
            issuer=settings.token_issuer,
            access_ttl=timedelta(hours=24),
            refresh_ttl=timedelta(days=7),
            clock=clock,
        ),
        mfa=mfa,
        reset=PasswordResetWorkflow(store, audit, notifier=notifier, token_ttl=timedelta(hours=24), clock=clock),
        accounts=AccountService(store, audit, notifier=notifier, clock=clock, authenticator=authenticator),
    )


def make_identity(store: IdentityStore, username: str = "alice", role: str = "COMPANY_USER", **fields) -> Identity:
    """Insert an ACTIVE, verified identity whose password is PASSWORD."""
    identity = Identity(
        id=str(uuid.uuid4()),
        username=username,
        email=fields.pop("email", f"{username}@example.com"),
        password_hash=hash_password(fields.pop("password", PASSWORD)),
        role=role,
        user_type=fields.pop("user_type", UserType.COMPANY_USER),
        status=fields.pop("status", IdentityStatus.ACTIVE),
        email_verified=fields.pop("email_verified", True),
        **fields,
    )
    return store.create_identity(identity)
