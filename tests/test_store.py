"""
tests/test_store.py -- Unit tests for UserStore (auth/store.py) and account creation.

Covers:
  - create_user round-trips every field, enums and aware timestamps included
  - UNIQUE constraints on email and google_id surface as IntegrityError
  - apply() is a compare-and-swap: a stale version writes nothing
  - apply() bumps the version and rejects unknown columns
  - list_users ordering and count_active_admins
  - create_account derives unique, sanitized usernames
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import QueuePool

from auth.accounts import create_account, username_base
from auth.models import EPOCH_MIN, AuthProvider, Role, User


def _user(**fields) -> User:
    base = {"id": "u-1", "username": "ada", "email": "ada@example.com"}
    base.update(fields)
    return User(**base)


class TestCreateAndRead:
    def test_round_trip(self, store) -> None:
        expiry = datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        created = store.create_user(
            _user(
                role=Role.ADMIN,
                auth_provider=AuthProvider.GOOGLE,
                google_id="g-123",
                refresh_token_hash="$2b$hash",
                refresh_token_expiry=expiry,
            )
        )
        loaded = store.get_by_id("u-1")
        assert loaded == created
        assert loaded.role is Role.ADMIN
        assert loaded.auth_provider is AuthProvider.GOOGLE
        assert loaded.refresh_token_expiry == expiry
        assert loaded.created_at is not None and loaded.created_at.tzinfo is not None
        assert loaded.version == 1
        assert store.get_by_email("ada@example.com").id == "u-1"
        assert store.get_by_google_id("g-123").id == "u-1"
        assert store.get_by_username("ada").id == "u-1"

    def test_epoch_min_survives_storage(self, store) -> None:
        """The revocation sentinel must read back as a datetime in the past."""
        store.create_user(_user(refresh_token_expiry=EPOCH_MIN))
        assert store.get_by_id("u-1").refresh_token_expiry == EPOCH_MIN

    def test_duplicate_email_rejected(self, store) -> None:
        store.create_user(_user())
        with pytest.raises(IntegrityError):
            store.create_user(_user(id="u-2", username="ada2"))

    def test_duplicate_google_id_rejected(self, store) -> None:
        store.create_user(_user(google_id="g-1"))
        with pytest.raises(IntegrityError):
            store.create_user(_user(id="u-2", username="bob", email="bob@example.com", google_id="g-1"))

    def test_missing_lookups_return_none(self, store) -> None:
        assert store.get_by_id("nope") is None
        assert store.get_by_email("nope@example.com") is None
        assert store.get_by_google_id("nope") is None


class TestApply:
    def test_apply_writes_and_bumps_version(self, store) -> None:
        user = store.create_user(_user())
        updated = store.apply(user.id, user.version, {"role": Role.ADMIN, "is_active": False})
        assert updated is not None
        assert updated.role is Role.ADMIN
        assert updated.is_active is False
        assert updated.version == user.version + 1

    def test_stale_version_writes_nothing(self, store) -> None:
        """Two writers from the same snapshot: only the first lands."""
        user = store.create_user(_user())
        assert store.apply(user.id, user.version, {"profile_picture": "first"}) is not None
        assert store.apply(user.id, user.version, {"profile_picture": "second"}) is None
        assert store.get_by_id(user.id).profile_picture == "first"

    def test_missing_row_returns_none(self, store) -> None:
        assert store.apply("ghost", 1, {"role": Role.ADMIN}) is None

    def test_unknown_column_rejected(self, store) -> None:
        user = store.create_user(_user())
        with pytest.raises(ValueError):
            store.apply(user.id, user.version, {"version": 99})
        with pytest.raises(ValueError):
            store.apply(user.id, user.version, {"favourite_colour": "blue"})

    def test_shared_memory_url_uses_queue_pool(self, store) -> None:
        """Named in-memory databases get an explicit pool shared across threads."""
        assert isinstance(store.engine.pool, QueuePool)


class TestQueries:
    def test_list_users_newest_first(self, store) -> None:
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        store.create_user(_user(id="old", username="old", email="old@example.com", created_at=start))
        store.create_user(
            _user(id="new", username="new", email="new@example.com", created_at=start + timedelta(days=1))
        )
        assert [u.id for u in store.list_users()] == ["new", "old"]

    def test_count_active_admins_ignores_inactive(self, store) -> None:
        store.create_user(_user(id="a1", username="a1", email="a1@example.com", role=Role.ADMIN))
        store.create_user(_user(id="a2", username="a2", email="a2@example.com", role=Role.ADMIN, is_active=False))
        store.create_user(_user(id="u1", username="u1", email="u1@example.com"))
        assert store.count_active_admins() == 1


class TestCreateAccount:
    def test_username_suffixes(self, store) -> None:
        now = datetime.now(timezone.utc)
        first = create_account(store, email="ada@example.com", now=now)
        second = create_account(store, email="ada@example.org", now=now)
        third = create_account(store, email="ada@example.net", now=now)
        assert [first.username, second.username, third.username] == ["ada", "ada1", "ada2"]

    def test_duplicate_email_returns_none(self, store) -> None:
        now = datetime.now(timezone.utc)
        assert create_account(store, email="ada@example.com", now=now) is not None
        assert create_account(store, email="ada@example.com", now=now) is None

    @pytest.mark.parametrize(
        ("email", "expected"),
        [
            ("Ada.Lovelace@example.com", "ada.lovelace"),
            ("o'brien+tag@example.com", "obrientag"),
            ("@example.com", "user"),
        ],
    )
    def test_username_base(self, email, expected) -> None:
        assert username_base(email) == expected
