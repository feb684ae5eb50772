"""
auth/passwords.py -- Password hashing, password policy, and keyed token digests.

Passwords: bcrypt directly (no passlib wrapper). bcrypt's cost factor makes
     brute force expensive, which is what low-entropy secrets need. The
     _DUMMY_HASH constant lets the Authenticator run one full bcrypt comparison
     even when the identifier does not resolve, so response time does not
     reveal whether an account exists [C1].

Token digests: reset tokens, email-verification tokens and MFA backup codes
     are high-entropy random strings. We persist HMAC-SHA256(SECRET_KEY, raw)
     so a leaked database does not leak usable tokens, and the digest is
     deterministic so the store can look tokens up through a UNIQUE index.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import string

import bcrypt

from core.config import get_settings

_settings = get_settings()

# Symbols accepted by the password policy.
PASSWORD_SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?/~`'\"\\"

# bcrypt only reads the first 72 bytes of its input.
_BCRYPT_MAX_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers must run check_password_policy() first; it rejects inputs longer
    than bcrypt's 72-byte limit.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. Any error (malformed hash,
    over-long input) counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first failed lookup is not measurably faster than later ones.
_DUMMY_HASH: str = hash_password("bthl_timing_equalization_dummy")


def verify_against_dummy(plain: str) -> None:
    """Burn one bcrypt comparison for an identifier that did not resolve."""
    verify_password(plain, _DUMMY_HASH)


def check_password_policy(password: str, min_length: int | None = None) -> list[str]:
    """Return the list of policy violations for a candidate password.

    An empty list means the password is acceptable. The rules: minimum
    length (default from settings, 12), at most 72 UTF-8 bytes, and at least
    one uppercase letter, lowercase letter, digit and symbol.
    """
    min_length = min_length if min_length is not None else _settings.password_min_length
    violations: list[str] = []
    if len(password) < min_length:
        violations.append(f"Password must be at least {min_length} characters long.")
    if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        violations.append(f"Password must not exceed {_BCRYPT_MAX_BYTES} bytes.")
    if not any(c.isupper() for c in password):
        violations.append("Password must contain an uppercase letter.")
    if not any(c.islower() for c in password):
        violations.append("Password must contain a lowercase letter.")
    if not any(c in string.digits for c in password):
        violations.append("Password must contain a digit.")
    if not any(c in PASSWORD_SYMBOLS for c in password):
        violations.append("Password must contain a symbol.")
    return violations


def digest_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()
