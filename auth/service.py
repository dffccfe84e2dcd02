"""
auth/service.py -- Use cases of the credential engine.

AuthService composes hashing, access tokens, refresh rotation, Google linking
and the reset flow into what the HTTP layer calls: register, login, google
sign-in, refresh, logout, profile lookups, admin role/deactivation, change
password and the three reset steps.

Transaction boundaries:
  Each use case reads an immutable User snapshot, checks it, and writes one
  change set with store.apply(user_id, snapshot.version, changes). If another
  request wrote the row in between, apply() returns None and the use case
  starts over from a fresh read -- the check always runs against the state it
  writes over.

All methods return Result. Nothing here raises for an expected failure.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from auth.accounts import create_account
from auth.email import EmailSender, build_email_sender
from auth.errors import ErrorKind, Result, not_found, unauthorized
from auth.google import GoogleIdTokenVerifier, IdentityVerifier, OAuthIdentityLinker
from auth.hashing import burn_verify, hash_secret, verify_secret
from auth.models import AuthProvider, AuthSession, Role, TokenPair, User, normalize_email
from auth.refresh import RefreshTokenManager, revocation_changes
from auth.reset import PasswordResetFlow
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.config import Settings

logger = logging.getLogger("passgate.auth")

_INVALID_CREDENTIALS = "Invalid credentials"
_MAX_WRITE_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _contended() -> Result:
    return Result.failure(ErrorKind.INTERNAL, "Request conflicted with another update, try again", retryable=True)


class AuthService:
    """Single entry point for every credential operation.

    Usage:
        service = AuthService.build(store, get_settings())
        result = service.login("ada@example.com", "correct horse")
        if result.ok:
            session = result.value   # AuthSession(tokens=..., user=...)
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        refresh_tokens: RefreshTokenManager,
        linker: OAuthIdentityLinker,
        reset_flow: PasswordResetFlow,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.refresh_tokens = refresh_tokens
        self.linker = linker
        self.reset_flow = reset_flow
        self._now = clock

    @classmethod
    def build(
        cls,
        store: CredentialStore,
        settings: Settings,
        *,
        verifier: IdentityVerifier | None = None,
        sender: EmailSender | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "AuthService":
        """Wire the default components from settings. Tests pass fakes for verifier/sender/clock."""
        return cls(
            store,
            TokenIssuer.from_settings(settings),
            RefreshTokenManager(store, settings.refresh_token_ttl_seconds),
            OAuthIdentityLinker(store, verifier or GoogleIdTokenVerifier.from_settings(settings)),
            PasswordResetFlow(store, sender or build_email_sender(settings)),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _start_session(self, user: User, now: datetime) -> AuthSession | None:
        """Issue a token pair and stamp last_login_at. None if the row moved."""
        secret, changes = self.refresh_tokens.issue(user, now)
        changes["last_login_at"] = now
        updated = self.store.apply(user.id, user.version, changes)
        if updated is None:
            return None
        access = self.issuer.issue_access_token(updated, now)
        return AuthSession(TokenPair(access, secret, self.issuer.ttl_seconds), updated)

    def register(self, email: str, password: str) -> Result[AuthSession]:
        now = self._now()
        email = normalize_email(email)
        if self.store.get_by_email(email) is not None:
            return Result.failure(ErrorKind.CONFLICT, "Email already exists")
        user = create_account(
            self.store,
            email=email,
            now=now,
            password_hash=hash_secret(password),
            role=Role.USER,
            auth_provider=AuthProvider.LOCAL,
        )
        if user is None:
            return Result.failure(ErrorKind.CONFLICT, "Email already exists")
        logger.info("Registered user %s", user.id)
        session = self._start_session(user, now)
        if session is None:
            return _contended()
        return Result.success(session)

    def login(self, email: str, password: str) -> Result[AuthSession]:
        """Password login. One generic failure message for every reason [C1]."""
        for _ in range(_MAX_WRITE_ATTEMPTS):
            now = self._now()
            user = self.store.get_by_email(normalize_email(email))
            if user is None or user.auth_provider is not AuthProvider.LOCAL or not user.password_hash:
                # Equalize timing -- do NOT return before running bcrypt [C1]
                burn_verify(password)
                return unauthorized(_INVALID_CREDENTIALS)
            if not verify_secret(password, user.password_hash) or not user.is_active:
                return unauthorized(_INVALID_CREDENTIALS)
            session = self._start_session(user, now)
            if session is not None:
                return Result.success(session)
        return _contended()

    def google_sign_in(self, id_token: str) -> Result[AuthSession]:
        """Google sign-in. Linking and the new session land in one write."""
        now = self._now()
        issued: dict[str, str] = {}

        def session_changes(user: User) -> dict[str, Any]:
            secret, changes = self.refresh_tokens.issue(user, now)
            issued["refresh_token"] = secret
            changes["last_login_at"] = now
            return changes

        linked = self.linker.authenticate(id_token, now, session_changes)
        if not linked.ok:
            return Result.from_failure(linked.error)
        user = linked.value
        access = self.issuer.issue_access_token(user, now)
        return Result.success(AuthSession(TokenPair(access, issued["refresh_token"], self.issuer.ttl_seconds), user))

    def refresh(self, user_id: str, refresh_token: str) -> Result[AuthSession]:
        now = self._now()
        rotated = self.refresh_tokens.rotate(user_id, refresh_token, now)
        if not rotated.ok:
            return Result.from_failure(rotated.error)
        user, secret = rotated.value
        access = self.issuer.issue_access_token(user, now)
        return Result.success(AuthSession(TokenPair(access, secret, self.issuer.ttl_seconds), user))

    def logout(self, user_id: str) -> Result[bool]:
        return self.refresh_tokens.revoke(user_id, self._now())

    # ------------------------------------------------------------------
    # Profiles and administration
    # ------------------------------------------------------------------

    def get_profile(self, user_id: str) -> Result[User]:
        user = self.store.get_by_id(user_id)
        if user is None:
            return not_found()
        return Result.success(user)

    def list_users(self) -> Result[list[User]]:
        return Result.success(self.store.list_users())

    def _is_last_admin(self, user: User) -> bool:
        return user.role is Role.ADMIN and user.is_active and self.store.count_active_admins() <= 1

    def _update(self, user_id: str, plan: Callable[[User], Result[dict[str, Any]]]) -> Result[User]:
        """Read, let plan() validate and describe the change, write with CAS, repeat on race."""
        for _ in range(_MAX_WRITE_ATTEMPTS):
            user = self.store.get_by_id(user_id)
            if user is None:
                return not_found()
            planned = plan(user)
            if not planned.ok:
                return Result.from_failure(planned.error)
            if not planned.value:
                return Result.success(user)
            updated = self.store.apply(user.id, user.version, planned.value)
            if updated is not None:
                return Result.success(updated)
        return _contended()

    def update_role(self, user_id: str, role: Role | str) -> Result[User]:
        try:
            new_role = Role(role)
        except ValueError:
            return Result.failure(ErrorKind.INVALID_OPERATION, "Role must be either 'User' or 'Admin'")

        def plan(user: User) -> Result[dict[str, Any]]:
            if user.role is new_role:
                return Result.success({})
            if new_role is Role.USER and self._is_last_admin(user):
                return Result.failure(ErrorKind.INVALID_OPERATION, "Cannot demote the last active admin account.")
            return Result.success({"role": new_role})

        result = self._update(user_id, plan)
        if result.ok:
            logger.info("Role of user %s set to %s", user_id, new_role.value)
        return result

    def deactivate(self, user_id: str, acting_user_id: str | None = None) -> Result[User]:
        """Soft delete. The account keeps its row but can no longer authenticate."""
        now = self._now()

        def plan(user: User) -> Result[dict[str, Any]]:
            if not user.is_active:
                return Result.success({})
            if user.id == acting_user_id:
                return Result.failure(ErrorKind.INVALID_OPERATION, "You cannot deactivate your own account.")
            if self._is_last_admin(user):
                return Result.failure(ErrorKind.INVALID_OPERATION, "Cannot deactivate the last active admin account.")
            changes = {"is_active": False}
            if user.has_live_refresh_token(now):
                changes.update(revocation_changes(now))
            return Result.success(changes)

        result = self._update(user_id, plan)
        if result.ok:
            logger.info("User %s deactivated", user_id)
        return result

    def change_password(self, user_id: str, current_password: str, new_password: str) -> Result[User]:
        """Authenticated password change. Ends the refresh session like a reset does."""
        now = self._now()

        def plan(user: User) -> Result[dict[str, Any]]:
            if user.auth_provider is not AuthProvider.LOCAL or not user.password_hash:
                return Result.failure(ErrorKind.INVALID_OPERATION, "Cannot change password for OAuth users")
            if not verify_secret(current_password, user.password_hash):
                return unauthorized("Current password is incorrect")
            return Result.success({"password_hash": hash_secret(new_password), **revocation_changes(now)})

        return self._update(user_id, plan)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> Result[bool]:
        return self.reset_flow.request_otp(email, self._now())

    def verify_reset_otp(self, email: str, otp: str) -> Result[User]:
        return self.reset_flow.verify_otp(email, otp, self._now())

    def reset_password(self, email: str, otp: str, new_password: str) -> Result[User]:
        return self.reset_flow.reset_password(email, otp, new_password, self._now())
