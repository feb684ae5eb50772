"""
api/limiter.py -- The slowapi limiter shared by the app and the auth routes.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter) and
api/routes/auth.py decorates /auth/login and /auth/forgot-password with it.
One module-level instance means one in-memory counter store; a limiter built
per module would count each module's hits separately.

Limits are keyed by client address. The limit string is resolved per request
through login_rate_limit(), so LOGIN_RATE_LIMIT is read from settings rather
than frozen at import.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Per-IP limit for credential-bearing endpoints (LOGIN_RATE_LIMIT)."""
    return get_settings().login_rate_limit
