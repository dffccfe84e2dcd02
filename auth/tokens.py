"""
auth/tokens.py -- Signed access tokens (JWT).

Security design decisions:
  JWT: python-jose with HS256. The signing key is SECRET_KEY, which
       core.config rejects if shorter than 32 characters [M6]. Tokens carry
       sub (user id), username, email, role, auth_provider, iss, aud, iat and
       exp.

  Validation checks signature, issuer, audience and expiry, all required,
       with zero clock-skew leeway. decode_access_token() returns None on any
       failure -- the dependency layer turns that into a 401. There is no
       "soft" acceptance of a token that fails one of the checks.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from jose import JWTError, jwt

from core.config import Settings

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("passgate.auth.tokens")

_ALGORITHM = "HS256"

_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_exp": True,
    "verify_aud": True,
    "verify_iss": True,
    "require_exp": True,
    "require_aud": True,
    "require_iss": True,
    "require_sub": True,
    "leeway": 0,
}


class TokenIssuer:
    """Mints and validates access tokens for one issuer/audience pair.

    Usage:
        issuer = TokenIssuer.from_settings(get_settings())
        token = issuer.issue_access_token(user, now)
        claims = issuer.decode_access_token(token)   # dict or None
    """

    def __init__(self, secret_key: str, issuer: str, audience: str, ttl_seconds: int) -> None:
        self._secret_key = secret_key
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            secret_key=settings.secret_key,
            issuer=settings.token_issuer,
            audience=settings.token_audience,
            ttl_seconds=settings.access_token_ttl_seconds,
        )

    def issue_access_token(self, user: User, now: datetime) -> str:
        """Encode a signed JWT for user, expiring ttl_seconds after now."""
        payload: dict[str, Any] = {
            "sub": user.id,
            "username": user.username,
            "email": user.email or "",
            "role": user.role.value,
            "auth_provider": user.auth_provider.value,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + timedelta(seconds=self.ttl_seconds),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def decode_access_token(self, token: str) -> dict | None:
        """Decode and verify a JWT. Returns the claims dict or None on any failure."""
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options=_DECODE_OPTIONS,
            )
        except JWTError as exc:
            logger.debug("Access token rejected: %s", exc)
            return None
        if "role" not in claims:
            return None
        return claims
