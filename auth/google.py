"""
auth/google.py -- Google sign-in: id token verification and account linking.

Flow: the browser obtains an id token from Google Identity Services and posts
it to POST /google. We never see the user's Google password or an OAuth code.

Verification (GoogleIdTokenVerifier):
  - Signature: RS256 against Google's published JWKS. The key set is fetched
    with requests (bounded timeout, no retries) and cached for an hour.
  - Claims: aud must equal GOOGLE_CLIENT_ID, iss must be Google, exp must be
    in the future (zero leeway), sub and email must be present.
  [H1] email_verified must be true. An unverified address could belong to
       someone else, and we link accounts by email.

Linking (OAuthIdentityLinker), one compare-and-swap together with the
sign-in fields:
  1. Match by google_id (returning user).
  2. Else match by normalized email (existing local account). The account is
     upgraded to auth_provider=Google, google_id and profile_picture are
     backfilled, password_hash is left untouched so the password still works
     if the user remembers it.
  3. Else create a Google-only account (no password hash).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import requests
from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError

from auth.accounts import create_account
from auth.errors import ErrorKind, Result, unauthorized
from auth.models import AuthProvider, User, normalize_email
from auth.store import CredentialStore
from core.config import Settings

logger = logging.getLogger("passgate.auth.google")

GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ["accounts.google.com", "https://accounts.google.com"]

_JWKS_CACHE_SECONDS = 3600
_MAX_LINK_ATTEMPTS = 3

# Module-level session for connection pooling. Google's certs endpoint does
# not redirect; a small cap protects against redirect chains.
_session = requests.Session()
_session.max_redirects = 3


class IdentityVerificationError(Exception):
    """The assertion is malformed, forged, expired or for another audience."""


class IdentityProviderUnavailable(Exception):
    """Google's key set could not be fetched."""


@dataclass(frozen=True)
class GoogleIdentity:
    subject: str
    email: str
    picture: str | None = None


class IdentityVerifier(Protocol):
    def verify(self, id_token: str, now: datetime) -> GoogleIdentity: ...


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def fetch_google_jwks(timeout: float) -> dict:
    try:
        resp = _session.get(GOOGLE_JWKS_URL, timeout=timeout)
        resp.raise_for_status()
        return resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("Could not fetch Google JWKS: %s", exc)
        raise IdentityProviderUnavailable("Google key set unavailable") from exc


class GoogleIdTokenVerifier:
    """Verifies Google-issued id tokens for one OAuth client id.

    jwks_fetcher is injectable so tests can sign tokens with a local key
    instead of reaching Google.
    """

    def __init__(
        self,
        client_id: str,
        *,
        timeout: float = 5.0,
        jwks_fetcher: Callable[[], dict] | None = None,
    ) -> None:
        self.client_id = client_id
        self._fetch = jwks_fetcher or (lambda: fetch_google_jwks(timeout))
        self._jwt = JsonWebToken(["RS256"])
        self._lock = threading.Lock()
        self._key_set: Any = None
        self._fetched_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleIdTokenVerifier":
        return cls(settings.google_client_id, timeout=settings.google_http_timeout_seconds)

    def _keys(self):
        with self._lock:
            if self._key_set is None or time.monotonic() - self._fetched_at > _JWKS_CACHE_SECONDS:
                self._key_set = JsonWebKey.import_key_set(self._fetch())
                self._fetched_at = time.monotonic()
            return self._key_set

    def verify(self, id_token: str, now: datetime) -> GoogleIdentity:
        if not self.client_id:
            raise IdentityVerificationError("Google sign-in is not configured")
        claims_options = {
            "iss": {"essential": True, "values": GOOGLE_ISSUERS},
            "aud": {"essential": True, "value": self.client_id},
            "sub": {"essential": True},
            "exp": {"essential": True},
        }
        try:
            claims = self._jwt.decode(id_token, self._keys(), claims_options=claims_options)
            claims.validate(now=int(now.timestamp()), leeway=0)
        except (JoseError, ValueError) as exc:
            raise IdentityVerificationError(str(exc)) from exc

        email = normalize_email(claims.get("email"))
        subject = claims.get("sub")
        if not email or not subject:
            raise IdentityVerificationError("Missing email or sub claim")
        if claims.get("email_verified") not in (True, "true"):
            raise IdentityVerificationError("Google account email is not verified")  # [H1]
        return GoogleIdentity(
            subject=str(subject),
            email=email,
            picture=claims.get("picture"),
        )


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------


class OAuthIdentityLinker:
    def __init__(self, store: CredentialStore, verifier: IdentityVerifier) -> None:
        self.store = store
        self.verifier = verifier

    def authenticate(
        self,
        id_token: str,
        now: datetime,
        session_changes: Callable[[User], dict[str, Any]] | None = None,
    ) -> Result[User]:
        """Verify id_token and return the local account it maps to.

        session_changes(user) supplies the sign-in fields (refresh token,
        last_login_at). They are written in the same compare-and-swap as the
        link itself, so an account is never left linked by a failed sign-in.
        """
        try:
            identity = self.verifier.verify(id_token, now)
        except IdentityVerificationError as exc:
            logger.warning("Google assertion rejected: %s", exc)
            return unauthorized("Invalid Google token")
        except IdentityProviderUnavailable:
            return Result.failure(ErrorKind.INTERNAL, "Google sign-in is temporarily unavailable", retryable=True)

        for _ in range(_MAX_LINK_ATTEMPTS):
            user = self.store.get_by_google_id(identity.subject) or self.store.get_by_email(identity.email)
            if user is None:
                user = create_account(
                    self.store,
                    email=identity.email,
                    now=now,
                    auth_provider=AuthProvider.GOOGLE,
                    google_id=identity.subject,
                    profile_picture=identity.picture,
                )
                if user is None:
                    continue  # a concurrent sign-in created it; look it up again
                logger.info("Created Google account %s", user.id)
            elif not user.is_active:
                return unauthorized("Invalid Google token")
            elif user.google_id and user.google_id != identity.subject:
                # Email matches but the account is bound to another Google identity.
                return unauthorized("Invalid Google token")

            changes = _link_changes(user, identity)
            if session_changes is not None:
                changes.update(session_changes(user))
            if not changes:
                return Result.success(user)
            updated = self.store.apply(user.id, user.version, changes)
            if updated is not None:
                if "auth_provider" in changes:
                    logger.info("Linked Google identity to local account %s", user.id)
                return Result.success(updated)
        return Result.failure(ErrorKind.INTERNAL, "Could not complete Google sign-in, try again", retryable=True)


def _link_changes(user: User, identity: GoogleIdentity) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    if not user.google_id:
        changes["google_id"] = identity.subject
    if user.auth_provider is AuthProvider.LOCAL:
        changes["auth_provider"] = AuthProvider.GOOGLE
    if identity.picture and identity.picture != user.profile_picture:
        changes["profile_picture"] = identity.picture
    return changes
