"""
auth/results.py -- Tagged result values returned by the auth services.

Expected failures (wrong password, locked account, expired token, ...) are
values, not exceptions. Services return Outcome.success(value) or
Outcome.failure(kind, message); the API layer maps ErrorKind to an HTTP status
in one place (api/errors.py).

Exceptions remain for genuinely unexpected conditions (database down, a
compare-and-swap that never converges). Those reach the app-level handler and
become a generic 500.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DISABLED = "account_disabled"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID_SIGNATURE = "token_invalid_signature"
    TOKEN_MALFORMED = "token_malformed"
    INVALID_RESET_TOKEN = "invalid_reset_token"
    MFA_REQUIRED = "mfa_required"
    INVALID_MFA_CODE = "invalid_mfa_code"


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    # Seconds until an ACCOUNT_LOCKED identity can try again.
    retry_after: Optional[int] = None
    # Individual policy violations for VALIDATION failures.
    violations: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a value or a Failure, never both."""

    value: Optional[T] = None
    error: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        retry_after: Optional[int] = None,
        violations: tuple[str, ...] = (),
    ) -> "Outcome[T]":
        return cls(error=Failure(kind=kind, message=message, retry_after=retry_after, violations=tuple(violations)))


class ConcurrentUpdateError(RuntimeError):
    """Raised when a compare-and-swap loop exhausts its retries.

    Only reachable under pathological contention on a single identity row.
    """
