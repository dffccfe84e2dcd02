"""
auth/refresh.py -- Opaque, rotating refresh tokens.

Security design decisions:
  Secret: secrets.token_bytes(32), standard base64 -- 256 bits of entropy.
      Returned to the client once. Only its bcrypt digest is stored, so a
      database leak does not hand out live sessions.

  Single session: a user holds at most one refresh token. issue() overwrites
      the previous hash, so signing in elsewhere ends the older session.

  Single use: rotate() verifies the presented secret and writes the
      replacement in one compare-and-swap on the row version. If two requests
      present the same secret concurrently, only one apply() matches; the
      other sees None and fails Unauthorized. The old secret is dead the
      moment the new hash lands.

  Revocation: revoke() clears the hash, pins the expiry to the minimum
      datetime and stamps revoked_on. A revoked session cannot be rotated
      even if the client still holds the secret.

Reuse of a rotated-out secret is treated like any other bad secret. It is not
escalated into revoking the live session.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from auth.errors import ErrorKind, Result, not_found, unauthorized
from auth.hashing import hash_secret, verify_secret
from auth.models import EPOCH_MIN, User
from auth.store import CredentialStore

logger = logging.getLogger("passgate.auth.refresh")

_SECRET_BYTES = 32

# revoke() re-reads and retries when it loses a version race. Each retry
# observes a newer row, so a handful is plenty.
_MAX_WRITE_ATTEMPTS = 3


def generate_refresh_secret() -> str:
    return base64.b64encode(secrets.token_bytes(_SECRET_BYTES)).decode("ascii")


def revocation_changes(now: datetime) -> dict[str, Any]:
    """Change set that kills the current refresh session."""
    return {
        "refresh_token_hash": None,
        "refresh_token_expiry": EPOCH_MIN,
        "revoked_on": now,
    }


class RefreshTokenManager:
    def __init__(self, store: CredentialStore, ttl_seconds: int) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    def issue(self, user: User, now: datetime) -> tuple[str, dict[str, Any]]:
        """Mint a new secret for user.

        Returns (plaintext_secret, changes). The caller folds changes into the
        same store.apply() as the rest of its write (e.g. last_login_at), so
        the new session lands atomically with the check that authorised it.
        """
        secret = generate_refresh_secret()
        changes = {
            "refresh_token_hash": hash_secret(secret),
            "refresh_token_expiry": now + timedelta(seconds=self.ttl_seconds),
            "revoked_on": None,
        }
        return secret, changes

    def rotate(self, user_id: str, presented_secret: str, now: datetime) -> Result[tuple[User, str]]:
        """Exchange a valid refresh secret for a new one. Single use."""
        user = self.store.get_by_id(user_id)
        if user is None or not user.is_active:
            return unauthorized("Invalid refresh token")
        if not user.refresh_token_hash:
            return unauthorized("Invalid refresh token")
        if not verify_secret(presented_secret, user.refresh_token_hash):
            return unauthorized("Invalid refresh token")
        if user.refresh_token_expiry is None or user.refresh_token_expiry <= now:
            return unauthorized("Refresh token expired")
        if user.revoked_on is not None:
            return unauthorized("Refresh token revoked")

        secret, changes = self.issue(user, now)
        updated = self.store.apply(user.id, user.version, changes)
        if updated is None:
            # Another request rotated (or revoked) this session first.
            logger.warning("Refresh rotation lost a concurrent write for user %s", user.id)
            return unauthorized("Invalid refresh token")
        return Result.success((updated, secret))

    def revoke(self, user_id: str, now: datetime) -> Result[bool]:
        """End the user's refresh session. Idempotent.

        Returns success without writing when there is no live session (never
        issued, already expired or already revoked).
        """
        for _ in range(_MAX_WRITE_ATTEMPTS):
            user = self.store.get_by_id(user_id)
            if user is None:
                return not_found()
            if not user.has_live_refresh_token(now):
                return Result.success(True)
            if self.store.apply(user.id, user.version, revocation_changes(now)) is not None:
                logger.info("Refresh session revoked for user %s", user.id)
                return Result.success(True)
        return Result.failure(ErrorKind.INTERNAL, "Could not revoke session, try again", retryable=True)
