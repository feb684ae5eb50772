"""
auth/tokens.py -- Session token issue, validation and refresh.

Security design decisions:
  JWT: python-jose with HS512. Tokens are signed with SECRET_KEY and carry
       sub (identity id), username, role, permissions, type, sid, iss, iat
       and exp. No password hash or MFA secret is ever embedded.

  Validation order: structure first (TOKEN_MALFORMED), then the signature
       (TOKEN_INVALID_SIGNATURE), then expiry against the injected clock
       (TOKEN_EXPIRED). jose's own exp check reads the wall clock, so it is
       disabled and expiry is compared here after the signature is trusted.

  Refresh: a refresh token is only accepted where type == "refresh". It is
       not rotated and there is no server-side revocation list -- a stolen
       refresh token stays usable until it expires. Logout is a client-side
       discard. See DESIGN.md.

  SECRET_KEY: sourced from core.config.get_settings() by the caller and
       validated at startup [M6].

TokenService holds no mutable state; one instance serves every request.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import Identity, Principal
from auth.results import ErrorKind, Outcome
from core.clock import Clock, utcnow

logger = logging.getLogger("bthl.auth")

_ALGORITHM = "HS512"

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("sub", "username", "role", "type", "sid", "iat", "exp")


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    # Access-token lifetime in seconds.
    expires_in: int
    session_id: str
    token_type: str = "bearer"


@dataclass(frozen=True)
class Claims:
    """Verified token claims."""

    subject: str
    username: str
    role: str
    token_type: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    permissions: frozenset[str] = field(default_factory=frozenset)

    def to_principal(self) -> Principal:
        return Principal(
            identity_id=self.subject,
            username=self.username,
            role=self.role,
            permissions=self.permissions,
            session_id=self.session_id,
        )


class TokenService:
    def __init__(
        self,
        secret_key: str,
        issuer: str,
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
    ) -> None:
        self._secret_key = secret_key
        self._issuer = issuer
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._clock = clock

    def issue(self, identity: Identity, permissions: Iterable[str]) -> TokenPair:
        """Mint an access/refresh pair for a freshly authenticated identity."""
        session_id = secrets.token_urlsafe(16)
        perms = sorted(set(permissions))
        access = self._encode(identity.id, identity.username, identity.role, perms, ACCESS, session_id, self._access_ttl)
        refresh = self._encode(
            identity.id, identity.username, identity.role, perms, REFRESH, session_id, self._refresh_ttl
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self._access_ttl.total_seconds()),
            session_id=session_id,
        )

    def validate(self, token: str, expected_type: str = ACCESS) -> Outcome[Claims]:
        """Verify a token and return its claims.

        Failure kinds:
            TOKEN_MALFORMED          not a JWT, missing claims, wrong type or issuer
            TOKEN_INVALID_SIGNATURE  signature does not verify under SECRET_KEY
            TOKEN_EXPIRED            exp is at or before now
        """
        try:
            jwt.get_unverified_claims(token)
        except JWTError:
            return Outcome.failure(ErrorKind.TOKEN_MALFORMED, "Token is malformed.")

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "verify_iss": False},
            )
        except JWTError:
            return Outcome.failure(ErrorKind.TOKEN_INVALID_SIGNATURE, "Token signature is invalid.")

        claims = _parse_claims(payload)
        if claims is None or payload.get("iss") != self._issuer:
            return Outcome.failure(ErrorKind.TOKEN_MALFORMED, "Token is malformed.")
        if claims.token_type != expected_type:
            return Outcome.failure(ErrorKind.TOKEN_MALFORMED, f"Expected a {expected_type} token.")

        if claims.expires_at <= self._clock():
            return Outcome.failure(ErrorKind.TOKEN_EXPIRED, "Token has expired.")
        return Outcome.success(claims)

    def refresh(self, refresh_token: str) -> Outcome[TokenPair]:
        """Issue a new access token from a valid refresh token.

        The returned pair carries the same refresh token and session id.
        """
        result = self.validate(refresh_token, expected_type=REFRESH)
        if not result.ok:
            return Outcome(error=result.error)
        claims = result.value
        access = self._encode(
            claims.subject,
            claims.username,
            claims.role,
            sorted(claims.permissions),
            ACCESS,
            claims.session_id,
            self._access_ttl,
        )
        logger.info("Refreshed access token for %s (session %s)", claims.username, claims.session_id)
        return Outcome.success(
            TokenPair(
                access_token=access,
                refresh_token=refresh_token,
                expires_in=int(self._access_ttl.total_seconds()),
                session_id=claims.session_id,
            )
        )

    def _encode(
        self,
        subject: str,
        username: str,
        role: str,
        permissions: list[str],
        token_type: str,
        session_id: str,
        ttl: timedelta,
    ) -> str:
        now = self._clock()
        payload = {
            "sub": subject,
            "username": username,
            "role": role,
            "permissions": permissions,
            "type": token_type,
            "sid": session_id,
            "iss": self._issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)


def _parse_claims(payload: dict) -> Claims | None:
    if any(name not in payload for name in _REQUIRED_CLAIMS):
        return None
    permissions = payload.get("permissions", [])
    if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
        return None
    try:
        issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None
    fields = (payload["sub"], payload["username"], payload["role"], payload["type"], payload["sid"])
    if not all(isinstance(v, str) for v in fields):
        return None
    return Claims(
        subject=payload["sub"],
        username=payload["username"],
        role=payload["role"],
        token_type=payload["type"],
        session_id=payload["sid"],
        issued_at=issued_at,
        expires_at=expires_at,
        permissions=frozenset(permissions),
    )
