"""
auth/lockout.py -- Pure state transitions for the failed-login / lockout state machine.

Every function takes an immutable Identity snapshot and returns a new one.
Nothing here reads the clock or touches the database: the Authenticator
supplies `now` and persists the result with IdentityStore.compare_and_swap().

State:
  unlocked(n)  -- failed_login_attempts = n, locked_until None or in the past
  locked(t)    -- locked_until = t > now, failed_login_attempts = 0

Transitions:
  unlocked(n) --fail--> unlocked(n+1)              if n+1 < threshold
  unlocked(n) --fail--> locked(now + duration)     if n+1 >= threshold
  unlocked(n) --ok----> unlocked(0), last_login = now
  locked(t)   --clock passes t--> unlocked(0)      (no write needed)
  any         --admin unlock / password reset--> unlocked(0)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from auth.models import Identity


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    duration: timedelta = timedelta(minutes=30)


def is_locked(identity: Identity, now: datetime) -> bool:
    """True while now is strictly before locked_until."""
    return identity.locked_until is not None and now < identity.locked_until


def lock_remaining(identity: Identity, now: datetime) -> timedelta | None:
    """Time left on the lock, or None if the identity is not locked."""
    if not is_locked(identity, now):
        return None
    return identity.locked_until - now


def after_failure(identity: Identity, now: datetime, policy: LockoutPolicy) -> Identity:
    """Count one failed password attempt; lock when the threshold is reached.

    The counter reset and the lock are one transition, so a single write
    moves the identity from unlocked(threshold - 1) straight to locked(t).
    An expired lock is dropped rather than carried forward.
    """
    attempts = identity.failed_login_attempts + 1
    if attempts >= policy.threshold:
        return replace(identity, failed_login_attempts=0, locked_until=now + policy.duration)
    locked_until = identity.locked_until if is_locked(identity, now) else None
    return replace(identity, failed_login_attempts=attempts, locked_until=locked_until)


def after_success(identity: Identity, now: datetime) -> Identity:
    return replace(identity, failed_login_attempts=0, locked_until=None, last_login=now)


def cleared(identity: Identity) -> Identity:
    """Neutral lockout state: no lock, zero failures."""
    return replace(identity, failed_login_attempts=0, locked_until=None)


def just_locked(before: Identity, after: Identity, now: datetime) -> bool:
    """True if this transition is the one that set the lock."""
    return not is_locked(before, now) and is_locked(after, now)
