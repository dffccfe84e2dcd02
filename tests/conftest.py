"""
tests/conftest.py -- Shared test fixtures for PassGate.

This module provides:
  - FakeClock, RecordingEmailSender, FakeIdentityVerifier: deterministic
    stand-ins for the clock, SMTP and Google
  - store / service: an AuthService over an isolated in-memory database,
    for engine-level tests
  - _patch_lifespan(): wires a test store and service into app.state,
    bypassing real startup
  - api_client: TestClient plus an admin access token for API tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import so get_settings() can
# auto-generate SECRET_KEY and TrustedHostMiddleware accepts TestClient's host.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.accounts import create_account
from auth.errors import DeliveryError
from auth.google import GoogleIdentity, IdentityProviderUnavailable, IdentityVerificationError
from auth.hashing import hash_secret
from auth.models import AuthProvider, Role, User
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock. Starts at the real current time so access tokens stay
    valid for python-jose, which checks exp against the wall clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingEmailSender:
    """Keeps every OTP "sent" so tests can read the code back."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send_otp(self, to_address: str, code: str, display_name: str) -> None:
        if self.fail:
            raise DeliveryError("SMTP relay refused the message")
        self.sent.append((to_address, code, display_name))

    def last_code_for(self, email: str) -> str:
        codes = [code for to, code, _ in self.sent if to == email]
        assert codes, f"No OTP was sent to {email}"
        return codes[-1]


class FakeIdentityVerifier:
    """Maps opaque test id tokens to identities.

    Unknown tokens are rejected like a forged assertion; the token
    "provider-down" simulates an unreachable key set.
    """

    def __init__(self) -> None:
        self.identities: dict[str, GoogleIdentity] = {}

    def register(self, token: str, subject: str, email: str, picture: str | None = None) -> str:
        self.identities[token] = GoogleIdentity(subject=subject, email=email, picture=picture)
        return token

    def verify(self, id_token: str, now: datetime) -> GoogleIdentity:
        if id_token == "provider-down":
            raise IdentityProviderUnavailable("Google key set unavailable")
        try:
            return self.identities[id_token]
        except KeyError:
            raise IdentityVerificationError("Unknown test token") from None


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_db_url(db_suffix: str) -> str:
    return f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"


def make_local_user(store: UserStore, email: str, password: str, *, role: Role = Role.USER) -> User:
    user = create_account(
        store,
        email=email,
        now=datetime.now(timezone.utc),
        password_hash=hash_secret(password),
        role=role,
        auth_provider=AuthProvider.LOCAL,
    )
    assert user is not None, f"{email} already exists"
    return user


# ---------------------------------------------------------------------------
# Engine fixtures -- fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> Generator[UserStore, None, None]:
    user_store = UserStore(_memory_db_url(uuid.uuid4().hex))
    yield user_store
    user_store.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture()
def verifier() -> FakeIdentityVerifier:
    return FakeIdentityVerifier()


@pytest.fixture()
def make_user():
    """Factory fixture: make_user(store, email, password, role=Role.USER) -> User."""
    return make_local_user


@pytest.fixture()
def service(store, clock, sender, verifier) -> AuthService:
    return AuthService.build(store, get_settings(), verifier=verifier, sender=sender, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, auth_service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test store and service into app.state so TestClient
    routes see an isolated test DB and fake Google/SMTP collaborators.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.auth_service = auth_service
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    Rate limiting is switched off; the limiter's counters are process-wide
    and would leak between modules.
    """
    user_store = UserStore(_memory_db_url(request.module.__name__.rsplit(".", 1)[-1]))
    auth_service = AuthService.build(
        user_store,
        get_settings(),
        verifier=FakeIdentityVerifier(),
        sender=RecordingEmailSender(),
    )

    admin = make_local_user(user_store, ADMIN_EMAIL, ADMIN_PASSWORD, role=Role.ADMIN)
    token = auth_service.issuer.issue_access_token(admin, datetime.now(timezone.utc))

    app.router.lifespan_context = _patch_lifespan(user_store, auth_service)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    limiter.enabled = True
    user_store.close()


@pytest.fixture(scope="module")
def api_service(api_client) -> AuthService:
    client, _, _ = api_client
    return client.app.state.auth_service


@pytest.fixture(scope="module")
def api_sender(api_service) -> RecordingEmailSender:
    return api_service.reset_flow.sender


@pytest.fixture(scope="module")
def api_verifier(api_service) -> FakeIdentityVerifier:
    return api_service.linker.verifier
