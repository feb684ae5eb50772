"""
tests/test_lockout.py -- Unit tests for the pure lockout transitions in auth/lockout.py.

No database: every test builds an Identity snapshot by hand and checks the
snapshot the transition returns.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from auth.lockout import (
    LockoutPolicy,
    after_failure,
    after_success,
    cleared,
    is_locked,
    just_locked,
    lock_remaining,
)
from auth.models import Identity

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
POLICY = LockoutPolicy(threshold=5, duration=timedelta(minutes=30))


def _identity(**fields) -> Identity:
    return Identity(id="id-1", username="alice", email="alice@example.com", password_hash="x", role="BROKER", **fields)


class TestIsLocked:
    def test_no_lock(self) -> None:
        assert not is_locked(_identity(), NOW)

    def test_future_lock(self) -> None:
        assert is_locked(_identity(locked_until=NOW + timedelta(seconds=1)), NOW)

    def test_lock_ends_exactly_at_locked_until(self) -> None:
        """The identity is locked while now < locked_until, so equality means unlocked."""
        assert not is_locked(_identity(locked_until=NOW), NOW)

    def test_lock_remaining(self) -> None:
        identity = _identity(locked_until=NOW + timedelta(minutes=12))
        assert lock_remaining(identity, NOW) == timedelta(minutes=12)
        assert lock_remaining(_identity(), NOW) is None


class TestAfterFailure:
    def test_increments_below_threshold(self) -> None:
        updated = after_failure(_identity(failed_login_attempts=2), NOW, POLICY)
        assert updated.failed_login_attempts == 3
        assert updated.locked_until is None

    def test_threshold_locks_and_resets_counter(self) -> None:
        """The fifth failure locks for the policy duration and zeroes the counter in one step."""
        before = _identity(failed_login_attempts=4)
        after = after_failure(before, NOW, POLICY)
        assert after.failed_login_attempts == 0
        assert after.locked_until == NOW + timedelta(minutes=30)
        assert just_locked(before, after, NOW)

    def test_expired_lock_is_dropped(self) -> None:
        stale = _identity(failed_login_attempts=0, locked_until=NOW - timedelta(minutes=1))
        updated = after_failure(stale, NOW, POLICY)
        assert updated.failed_login_attempts == 1
        assert updated.locked_until is None

    def test_five_failures_from_clean_state(self) -> None:
        identity = _identity()
        for _ in range(4):
            identity = after_failure(identity, NOW, POLICY)
            assert not is_locked(identity, NOW)
        identity = after_failure(identity, NOW, POLICY)
        assert is_locked(identity, NOW)

    def test_input_snapshot_untouched(self) -> None:
        before = _identity(failed_login_attempts=1)
        after_failure(before, NOW, POLICY)
        assert before.failed_login_attempts == 1


class TestResetTransitions:
    def test_after_success(self) -> None:
        updated = after_success(_identity(failed_login_attempts=3), NOW)
        assert updated.failed_login_attempts == 0
        assert updated.locked_until is None
        assert updated.last_login == NOW

    def test_cleared(self) -> None:
        updated = cleared(_identity(locked_until=NOW + timedelta(minutes=5), failed_login_attempts=2))
        assert not is_locked(updated, NOW)
        assert updated.failed_login_attempts == 0

    def test_just_locked_false_when_already_locked(self) -> None:
        locked = _identity(locked_until=NOW + timedelta(minutes=5))
        assert not just_locked(locked, locked, NOW)
