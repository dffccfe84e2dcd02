"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these types only own the shape.

User is frozen. Services never mutate a loaded snapshot: they describe the
change as a plain dict of column -> value and hand it to
CredentialStore.apply() together with the snapshot's version. The store
applies it only if nobody else wrote the row in between.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

# Sentinel expiry written on revocation. Always compares as "in the past".
EPOCH_MIN = datetime.min.replace(tzinfo=timezone.utc)


class Role(str, Enum):
    USER = "User"
    ADMIN = "Admin"


class AuthProvider(str, Enum):
    LOCAL = "Local"
    GOOGLE = "Google"


def normalize_email(email: str | None) -> str:
    """Trim and lowercase an email address. None becomes ""."""
    return (email or "").strip().lower()


@dataclass(frozen=True)
class User:
    """An account snapshot as read from the CredentialStore.

    password_hash is None for Google-only accounts. google_id is None until the
    account signs in with Google for the first time.

    refresh_token_hash / refresh_token_expiry describe the single live refresh
    session. revoked_on is stamped by logout and password reset; a session with
    revoked_on set is dead even if its expiry is in the future.

    password_reset_* fields hold at most one in-flight OTP.

    version is the optimistic concurrency token. Every write bumps it.
    """

    id: str
    username: str
    email: str | None = None
    password_hash: str | None = None
    role: Role = Role.USER
    auth_provider: AuthProvider = AuthProvider.LOCAL
    google_id: str | None = None
    profile_picture: str | None = None
    refresh_token_hash: str | None = None
    refresh_token_expiry: datetime | None = None
    revoked_on: datetime | None = None
    password_reset_otp: str | None = None
    password_reset_otp_expiry: datetime | None = None
    password_reset_attempts: int = 0
    created_at: datetime | None = None
    last_login_at: datetime | None = None
    is_active: bool = True
    version: int = 1

    @property
    def display_name(self) -> str:
        return self.username or normalize_email(self.email)

    def has_live_refresh_token(self, now: datetime) -> bool:
        """True when a non-expired, non-revoked refresh session exists."""
        return (
            bool(self.refresh_token_hash)
            and self.refresh_token_expiry is not None
            and self.refresh_token_expiry > now
            and self.revoked_on is None
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


@dataclass(frozen=True)
class AuthSession:
    """Result of every successful sign-in: fresh tokens plus the account."""

    tokens: TokenPair
    user: User
