"""
tests/test_authenticator.py -- Credential verification and the lockout state machine.

Covers:
  - Identifier resolution: username (case-sensitive) then email (case-insensitive)
  - Unknown identifier: generic failure, dummy bcrypt comparison, actor-less audit record
  - Five consecutive failures lock the account for 30 minutes
  - The lock lifts on its own once the clock passes locked_until
  - Status gate: PENDING / SUSPENDED identities cannot log in
  - Second factor: nothing is committed until it passes; wrong codes count toward the lock
  - Stale snapshots are re-derived, never written over a newer row
  - Ten concurrent wrong-password attempts against a file database
  - Administrative unlock
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pyotp
import pytest

import auth.authenticator as authenticator_module
from auth.audit import AuditEmitter
from auth.authenticator import Authenticator
from auth.lockout import LockoutPolicy, is_locked
from auth.models import AuditAction, IdentityStatus
from auth.results import ErrorKind
from auth.store import IdentityStore
from helpers import PASSWORD, WRONG_PASSWORD, FakeClock, RecordingNotifier, make_identity, make_services


def _fail(services, identifier: str = "alice", times: int = 1):
    outcome = None
    for _ in range(times):
        outcome = services.authenticator.verify(identifier, WRONG_PASSWORD)
    return outcome


class TestResolution:
    def test_username_login_succeeds(self, services) -> None:
        make_identity(services.store)
        outcome = services.authenticator.verify("alice", PASSWORD)
        assert outcome.ok
        assert outcome.value.username == "alice"
        assert outcome.value.last_login == services.clock()

    def test_email_login_is_case_insensitive(self, services) -> None:
        make_identity(services.store, email="Alice@Example.com")
        assert services.authenticator.verify("ALICE@example.COM", PASSWORD).ok

    def test_username_is_case_sensitive(self, services) -> None:
        make_identity(services.store)
        outcome = services.authenticator.verify("Alice", PASSWORD)
        assert outcome.error.kind is ErrorKind.INVALID_CREDENTIALS

    def test_success_records_login_audit(self, services) -> None:
        identity = make_identity(services.store)
        services.authenticator.verify("alice", PASSWORD)
        records = services.store.list_audit(resource_id=identity.id, action=AuditAction.LOGIN)
        assert len(records) == 1
        assert records[0].actor_id == identity.id
        assert "password_hash" not in records[0].after


class TestUnknownIdentifier:
    def test_same_failure_as_wrong_password(self, services) -> None:
        make_identity(services.store)
        unknown = services.authenticator.verify("nobody", PASSWORD)
        wrong = services.authenticator.verify("alice", WRONG_PASSWORD)
        assert unknown.error.kind is wrong.error.kind is ErrorKind.INVALID_CREDENTIALS
        assert unknown.error.message == wrong.error.message

    def test_runs_dummy_comparison(self, services, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list[str] = []
        monkeypatch.setattr(authenticator_module, "verify_against_dummy", lambda plain: calls.append(plain))
        services.authenticator.verify("nobody", "Some-Password-1")
        assert calls == ["Some-Password-1"]

    def test_audit_has_no_actor(self, services) -> None:
        services.authenticator.verify("nobody", PASSWORD)
        records = services.store.list_audit(action=AuditAction.FAILED_LOGIN)
        assert len(records) == 1
        assert records[0].actor_id is None
        assert records[0].resource_id is None


class TestLockout:
    def test_five_failures_lock_the_account(self, services) -> None:
        """Scenario: five consecutive failures lock the account for 30 minutes.

        With the default reveal_lock_on_trigger=False the fifth attempt still answers
        INVALID_CREDENTIALS; the sixth, even with the right password, is ACCOUNT_LOCKED.
        test_reveal_lock_on_trigger covers the variant where the fifth answers ACCOUNT_LOCKED.
        """
        make_identity(services.store)
        fifth = _fail(services, times=5)
        assert fifth.error.kind is ErrorKind.INVALID_CREDENTIALS

        stored = services.store.get_by_username("alice")
        assert stored.failed_login_attempts == 0
        assert stored.locked_until == services.clock() + timedelta(minutes=30)

        sixth = services.authenticator.verify("alice", PASSWORD)
        assert sixth.error.kind is ErrorKind.ACCOUNT_LOCKED
        assert sixth.error.retry_after == 30 * 60

    def test_counter_increments_before_threshold(self, services) -> None:
        make_identity(services.store)
        _fail(services, times=3)
        stored = services.store.get_by_username("alice")
        assert stored.failed_login_attempts == 3
        assert stored.locked_until is None

    def test_success_resets_counter(self, services) -> None:
        make_identity(services.store)
        _fail(services, times=4)
        assert services.authenticator.verify("alice", PASSWORD).ok
        _fail(services, times=4)
        assert not is_locked(services.store.get_by_username("alice"), services.clock())

    def test_reveal_lock_on_trigger(self, store, clock, notifier) -> None:
        """Scenario: with reveal_lock_on_trigger set, the fifth failure itself answers ACCOUNT_LOCKED."""
        services = make_services(store, clock, notifier, reveal_lock_on_trigger=True)
        make_identity(store)
        _fail(services, times=4)
        fifth = _fail(services)
        assert fifth.error.kind is ErrorKind.ACCOUNT_LOCKED
        assert fifth.error.retry_after == 30 * 60

    def test_lock_notifies_once(self, services) -> None:
        make_identity(services.store)
        _fail(services, times=7)
        locked = services.notifier.of_kind("locked")
        assert len(locked) == 1
        assert locked[0].email == "alice@example.com"

    def test_locked_attempt_does_not_touch_counter(self, services) -> None:
        make_identity(services.store)
        _fail(services, times=5)
        version = services.store.get_by_username("alice").version
        _fail(services, times=3)
        assert services.store.get_by_username("alice").version == version

    def test_lock_lifts_when_clock_passes(self, services) -> None:
        """Scenario: the lock expires without any unlock event."""
        make_identity(services.store)
        _fail(services, times=5)

        services.clock.advance(minutes=29, seconds=59)
        still = services.authenticator.verify("alice", PASSWORD)
        assert still.error.kind is ErrorKind.ACCOUNT_LOCKED
        assert still.error.retry_after == 1

        services.clock.advance(seconds=1)
        assert services.authenticator.verify("alice", PASSWORD).ok

    def test_every_attempt_is_audited(self, services) -> None:
        identity = make_identity(services.store)
        _fail(services, times=6)
        records = services.store.list_audit(resource_id=identity.id, action=AuditAction.FAILED_LOGIN)
        assert len(records) == 6
        # Newest first: the sixth attempt hit the lock; the fifth set it.
        assert records[0].details == "account locked"
        assert "lockout triggered" in records[1].details
        assert records[1].after["locked_until"] is not None


class TestSecondFactor:
    SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"

    def _enrolled(self, services) -> tuple:
        identity = make_identity(services.store)
        codes = services.mfa.enroll(identity.id, self.SECRET).value
        return services.store.get_by_id(identity.id), codes

    def _wrong_totp(self, services) -> str:
        now = int(services.clock().timestamp())
        accepted = {pyotp.TOTP(self.SECRET).at(now + offset) for offset in (-30, 0, 30)}
        return next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)

    def test_missing_code_commits_nothing(self, services) -> None:
        identity, _ = self._enrolled(services)
        outcome = services.authenticator.verify("alice", PASSWORD)
        assert outcome.error.kind is ErrorKind.MFA_REQUIRED

        stored = services.store.get_by_id(identity.id)
        assert stored.version == identity.version
        assert stored.last_login is None
        assert services.store.list_audit(resource_id=identity.id, action=AuditAction.LOGIN) == []

    def test_wrong_code_is_a_counted_failure(self, services) -> None:
        identity, _ = self._enrolled(services)
        outcome = services.authenticator.verify("alice", PASSWORD, mfa_code=self._wrong_totp(services))
        assert outcome.error.kind is ErrorKind.INVALID_MFA_CODE

        stored = services.store.get_by_id(identity.id)
        assert stored.last_login is None
        assert stored.failed_login_attempts == 1
        assert services.store.list_audit(resource_id=identity.id, action=AuditAction.LOGIN) == []
        record = services.store.list_audit(resource_id=identity.id, action=AuditAction.FAILED_LOGIN)[0]
        assert record.details == "invalid one-time code"

    def test_wrong_codes_lock_the_account(self, services) -> None:
        identity, codes = self._enrolled(services)
        for code in [self._wrong_totp(services)] * 4 + ["00000-00000"]:
            outcome = services.authenticator.verify("alice", PASSWORD, mfa_code=code)
            assert outcome.error.kind is ErrorKind.INVALID_MFA_CODE

        stored = services.store.get_by_id(identity.id)
        assert stored.locked_until == services.clock() + timedelta(minutes=30)
        assert len(services.notifier.of_kind("locked")) == 1
        records = services.store.list_audit(resource_id=identity.id, action=AuditAction.FAILED_LOGIN)
        assert records[0].details == "invalid backup code; lockout triggered"

        # Even a valid backup code is refused while locked, and stays unused.
        locked = services.authenticator.verify("alice", PASSWORD, mfa_code=codes[0])
        assert locked.error.kind is ErrorKind.ACCOUNT_LOCKED
        assert len(services.store.get_by_id(identity.id).backup_code_hashes) == 10

    def test_wrong_password_and_wrong_code_share_the_counter(self, services) -> None:
        self._enrolled(services)
        _fail(services, times=3)
        services.authenticator.verify("alice", PASSWORD, mfa_code=self._wrong_totp(services))
        assert services.store.get_by_username("alice").failed_login_attempts == 4

    def test_valid_code_completes_the_login(self, services) -> None:
        identity, codes = self._enrolled(services)
        _fail(services, times=2)
        totp = pyotp.TOTP(self.SECRET).at(int(services.clock().timestamp()))
        outcome = services.authenticator.verify("alice", PASSWORD, mfa_code=totp)
        assert outcome.ok
        assert outcome.value.last_login == services.clock()
        assert outcome.value.failed_login_attempts == 0

        backup = services.authenticator.verify("alice", PASSWORD, mfa_code=codes[0])
        assert len(backup.value.backup_code_hashes) == 9
        assert len(services.store.list_audit(resource_id=identity.id, action=AuditAction.LOGIN)) == 2


class TestStatusGate:
    @pytest.mark.parametrize(
        "status,verified",
        [
            (IdentityStatus.PENDING, False),
            (IdentityStatus.SUSPENDED, True),
            (IdentityStatus.INACTIVE, True),
            (IdentityStatus.ACTIVE, False),
        ],
    )
    def test_not_enabled_is_refused(self, services, status, verified) -> None:
        identity = make_identity(services.store, status=status, email_verified=verified)
        outcome = services.authenticator.verify("alice", PASSWORD)
        assert outcome.error.kind is ErrorKind.ACCOUNT_DISABLED
        stored = services.store.get_by_id(identity.id)
        assert stored.version == identity.version
        assert stored.last_login is None

    def test_disabled_refusal_is_audited(self, services) -> None:
        identity = make_identity(services.store, status=IdentityStatus.SUSPENDED)
        services.authenticator.verify("alice", PASSWORD)
        records = services.store.list_audit(resource_id=identity.id, action=AuditAction.FAILED_LOGIN)
        assert len(records) == 1
        assert "disabled" in records[0].details


class TestStaleSnapshots:
    def test_failure_is_derived_from_the_stored_row(self, services) -> None:
        """A stale read must not overwrite failures recorded since."""
        make_identity(services.store)
        stale = services.store.get_by_username("alice")
        _fail(services, times=4)

        services.store.get_by_identifier = lambda identifier: stale
        services.authenticator.verify("alice", WRONG_PASSWORD)

        stored = services.store.get_by_id(stale.id)
        assert is_locked(stored, services.clock())
        assert stored.version == stale.version + 5

    def test_success_does_not_override_concurrent_lock(self, services) -> None:
        make_identity(services.store)
        stale = services.store.get_by_username("alice")
        _fail(services, times=5)

        services.store.get_by_identifier = lambda identifier: stale
        outcome = services.authenticator.verify("alice", PASSWORD)
        assert outcome.error.kind is ErrorKind.ACCOUNT_LOCKED


def test_concurrent_failures_trigger_lockout(tmp_path) -> None:
    """Ten simultaneous wrong passwords: the lock is set and every attempt is audited."""
    store = IdentityStore(f"sqlite:///{tmp_path / 'concurrent.db'}")
    clock = FakeClock()
    authenticator = Authenticator(
        store,
        AuditEmitter(store, clock=clock),
        policy=LockoutPolicy(threshold=5, duration=timedelta(minutes=30)),
        notifier=RecordingNotifier(),
        clock=clock,
    )
    identity = make_identity(store)
    barrier = threading.Barrier(10)
    kinds: list[ErrorKind] = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        outcome = authenticator.verify("alice", WRONG_PASSWORD)
        with lock:
            kinds.append(outcome.error.kind)

    threads = [threading.Thread(target=attempt) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    try:
        stored = store.get_by_id(identity.id)
        assert is_locked(stored, clock())
        assert len(kinds) == 10
        assert set(kinds) <= {ErrorKind.INVALID_CREDENTIALS, ErrorKind.ACCOUNT_LOCKED}
        assert len(store.list_audit(resource_id=identity.id, action=AuditAction.FAILED_LOGIN)) == 10
    finally:
        store.close()


class TestUnlock:
    def test_unlock_clears_lock(self, services) -> None:
        admin = make_identity(services.store, username="root", role="SUPER_ADMIN")
        target = make_identity(services.store)
        _fail(services, times=5)

        outcome = services.authenticator.unlock(target.id, actor_id=admin.id)
        assert outcome.ok
        assert outcome.value.locked_until is None
        assert services.authenticator.verify("alice", PASSWORD).ok

        records = services.store.list_audit(resource_id=target.id, action=AuditAction.UPDATE)
        assert records[0].actor_id == admin.id
        assert records[0].details == "account unlocked"

    def test_unlock_unknown(self, services) -> None:
        outcome = services.authenticator.unlock("missing", actor_id=None)
        assert outcome.error.kind is ErrorKind.NOT_FOUND
