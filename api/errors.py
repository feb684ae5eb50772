"""
api/errors.py -- Maps service Failures to HTTP errors.

The auth services return Outcome values instead of raising. Route handlers
call unwrap(outcome): the value on success, otherwise an HTTPException whose
detail is the ErrorDetail dict. The app-level HTTPException handler in
api/main.py wraps it in the standard {"error": {...}} envelope.
"""

from __future__ import annotations

from typing import TypeVar

from fastapi import HTTPException

from api.models import ErrorDetail
from auth.results import ErrorKind, Failure, Outcome

T = TypeVar("T")

STATUS_FOR_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.ACCOUNT_LOCKED: 423,
    ErrorKind.ACCOUNT_DISABLED: 403,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_INVALID_SIGNATURE: 401,
    ErrorKind.TOKEN_MALFORMED: 401,
    ErrorKind.INVALID_RESET_TOKEN: 400,
    ErrorKind.MFA_REQUIRED: 401,
    ErrorKind.INVALID_MFA_CODE: 401,
}


def to_http_exception(failure: Failure) -> HTTPException:
    headers: dict[str, str] = {}
    if failure.kind is ErrorKind.ACCOUNT_LOCKED and failure.retry_after is not None:
        headers["Retry-After"] = str(failure.retry_after)
    detail = ErrorDetail(
        code=failure.kind.value,
        message=failure.message,
        detail="; ".join(failure.violations) or None,
    )
    return HTTPException(
        status_code=STATUS_FOR_KIND[failure.kind],
        detail=detail.model_dump(),
        headers=headers or None,
    )


def unwrap(outcome: Outcome[T]) -> T:
    """Return the outcome's value or raise the mapped HTTPException."""
    if outcome.error is not None:
        raise to_http_exception(outcome.error)
    return outcome.value
