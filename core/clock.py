"""
core/clock.py -- Wall-clock source shared by every time-bounded check.

Lock expiry, reset-token expiry and session-token expiry are all evaluated
against `now` at the moment of use. Services receive a Clock callable instead
of calling datetime.now() themselves so tests can move time forward.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)
