"""
auth/notify.py -- Outbound notifications (verification, reset, lockout).

Delivery is someone else's job. The auth services only need a fire-and-forget
sender with the Notifier shape; LoggingNotifier is the default and writes a
redacted line per message instead of sending mail. A deployment plugs in an
SMTP- or queue-backed implementation through app.state.notifier.

A failing notifier must never roll back or fail the auth operation that
triggered it: dispatch() logs and drops sender errors.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger("bthl.notify")


class Notifier(Protocol):
    def send_email_verification(self, email: str, token: str) -> None: ...

    def send_password_reset(self, email: str, token: str) -> None: ...

    def send_password_changed(self, email: str) -> None: ...

    def send_account_locked(self, email: str, lockout_minutes: int) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LoggingNotifier:
    """Development notifier: logs that a message would have been sent.

    Tokens are never written to the log.
    """

    def send_email_verification(self, email: str, token: str) -> None:
        logger.info("email_verification to=%s", redact_email(email))

    def send_password_reset(self, email: str, token: str) -> None:
        logger.info("password_reset to=%s", redact_email(email))

    def send_password_changed(self, email: str) -> None:
        logger.info("password_changed to=%s", redact_email(email))

    def send_account_locked(self, email: str, lockout_minutes: int) -> None:
        logger.info("account_locked to=%s minutes=%d", redact_email(email), lockout_minutes)


def dispatch(send: Callable[..., None], *args) -> None:
    """Call a notifier method, logging instead of raising on failure."""
    try:
        send(*args)
    except Exception:
        logger.exception("Notification %s failed", getattr(send, "__name__", "send"))
