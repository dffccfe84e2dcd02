"""
tests/test_cli.py -- Tests for the administrative commands in main.py.

Covers:
  - create-admin creates a local Admin that can log in
  - create-admin promotes an existing account instead of duplicating it
  - create-admin rejects out-of-range passwords
  - list-users prints every account
"""

from __future__ import annotations

from auth.hashing import verify_secret
from auth.models import AuthProvider, Role
from main import create_admin, list_users


class TestCreateAdmin:
    def test_creates_admin(self, store, capsys) -> None:
        assert create_admin(store, "Root@Example.com", "rootpass1") == 0
        admin = store.get_by_email("root@example.com")
        assert admin.role is Role.ADMIN
        assert admin.auth_provider is AuthProvider.LOCAL
        assert verify_secret("rootpass1", admin.password_hash)
        assert "Created Admin root@example.com" in capsys.readouterr().out

    def test_promotes_existing(self, store, make_user) -> None:
        user = make_user(store, "ada@example.com", "secret1")
        assert create_admin(store, "ada@example.com", "") == 0
        promoted = store.get_by_id(user.id)
        assert promoted.role is Role.ADMIN
        assert promoted.password_hash == user.password_hash, "Promotion must not touch the password"
        assert len(store.list_users()) == 1

    def test_short_password(self, store) -> None:
        assert create_admin(store, "root@example.com", "123") == 1
        assert store.get_by_email("root@example.com") is None


class TestListUsers:
    def test_lists_accounts(self, store, make_user, capsys) -> None:
        make_user(store, "ada@example.com", "secret1")
        make_user(store, "root@example.com", "rootpass1", role=Role.ADMIN)
        assert list_users(store) == 0
        out = capsys.readouterr().out
        assert "ada@example.com" in out
        assert "root@example.com" in out
        assert "2 user(s)." in out

    def test_empty(self, store, capsys) -> None:
        assert list_users(store) == 0
        assert "No users yet" in capsys.readouterr().out
