"""
tests/test_refresh.py -- Unit tests for RefreshTokenManager (auth/refresh.py).

Covers:
  - issue() stores only a hash, never the secret
  - rotate() is single use: the presented secret dies with the rotation
  - expired and revoked sessions cannot rotate
  - a lost compare-and-swap race fails Unauthorized
  - revoke() is idempotent and reports unknown users
"""

from __future__ import annotations

import base64
from datetime import timedelta

from auth.errors import ErrorKind
from auth.models import EPOCH_MIN
from auth.refresh import RefreshTokenManager, generate_refresh_secret

TTL = 7 * 24 * 3600


def _session(store, user, now, manager):
    secret, changes = manager.issue(user, now)
    return secret, store.apply(user.id, user.version, changes)


class TestIssue:
    def test_only_hash_is_stored(self, store, make_user, clock) -> None:
        manager = RefreshTokenManager(store, TTL)
        user = make_user(store, "ada@example.com", "secret1")
        secret, stored = _session(store, user, clock(), manager)
        assert stored.refresh_token_hash and stored.refresh_token_hash != secret
        assert stored.refresh_token_expiry == clock() + timedelta(seconds=TTL)
        assert stored.revoked_on is None
        assert stored.has_live_refresh_token(clock())

    def test_secret_is_32_random_bytes(self) -> None:
        secrets_seen = {generate_refresh_secret() for _ in range(5)}
        assert len(secrets_seen) == 5, "Secrets must not repeat"
        assert all(len(base64.b64decode(s)) == 32 for s in secrets_seen)


class TestRotate:
    def test_rotation_is_single_use(self, store, make_user, clock) -> None:
        """The old secret is rejected after one successful rotation."""
        manager = RefreshTokenManager(store, TTL)
        user = make_user(store, "ada@example.com", "secret1")
        old_secret, _ = _session(store, user, clock(), manager)

        first = manager.rotate(user.id, old_secret, clock())
        assert first.ok, f"First rotation must succeed: {first.error}"
        _, new_secret = first.value
        assert new_secret != old_secret

        replay = manager.rotate(user.id, old_secret, clock())
        assert not replay.ok
        assert replay.error.kind is ErrorKind.UNAUTHORIZED
        assert replay.error.message == "Invalid refresh token"

        assert manager.rotate(user.id, new_secret, clock()).ok, "The replacement secret must still work"

    def test_expired_session(self, store, make_user, clock) -> None:
        manager = RefreshTokenManager(store, 60)
        user = make_user(store, "ada@example.com", "secret1")
        secret, _ = _session(store, user, clock(), manager)
        clock.advance(seconds=60)
        result = manager.rotate(user.id, secret, clock())
        assert result.error.kind is ErrorKind.UNAUTHORIZED
        assert result.error.message == "Refresh token expired"

    def test_revoked_session(self, store, make_user, clock) -> None:
        """revoked_on set with a hash still in place reports revocation."""
        manager = RefreshTokenManager(store, TTL)
        user = make_user(store, "ada@example.com", "secret1")
        secret, stored = _session(store, user, clock(), manager)
        store.apply(stored.id, stored.version, {"revoked_on": clock()})
        result = manager.rotate(user.id, secret, clock())
        assert result.error.message == "Refresh token revoked"

    def test_wrong_secret_and_unknown_user(self, store, make_user, clock) -> None:
        manager = RefreshTokenManager(store, TTL)
        user = make_user(store, "ada@example.com", "secret1")
        _session(store, user, clock(), manager)
        assert manager.rotate(user.id, "bm90IHRoZSBzZWNyZXQ=", clock()).error.kind is ErrorKind.UNAUTHORIZED
        assert manager.rotate("ghost", "anything", clock()).error.kind is ErrorKind.UNAUTHORIZED

    def test_never_issued(self, store, make_user, clock) -> None:
        manager = RefreshTokenManager(store, TTL)
        user = make_user(store, "ada@example.com", "secret1")
        assert manager.rotate(user.id, "anything", clock()).error.message == "Invalid refresh token"

    def test_lost_race_fails(self, store, make_user, clock, monkeypatch) -> None:
        """If another writer bumps the row between read and write, rotation fails."""
        manager = RefreshTokenManager(store, TTL)
        user = make_user(store, "ada@example.com", "secret1")
        secret, _ = _session(store, user, clock(), manager)
        monkeypatch.setattr(store, "apply", lambda *args, **kwargs: None)
        result = manager.rotate(user.id, secret, clock())
        assert result.error.kind is ErrorKind.UNAUTHORIZED


class TestRevoke:
    def test_revoke_kills_session(self, store, make_user, clock) -> None:
        manager = RefreshTokenManager(store, TTL)
        user = make_user(store, "ada@example.com", "secret1")
        secret, _ = _session(store, user, clock(), manager)

        assert manager.revoke(user.id, clock()).ok
        revoked = store.get_by_id(user.id)
        assert revoked.refresh_token_hash is None
        assert revoked.refresh_token_expiry == EPOCH_MIN
        assert revoked.revoked_on == clock()
        assert not manager.rotate(user.id, secret, clock()).ok

    def test_revoke_is_idempotent(self, store, make_user, clock) -> None:
        """A second revoke succeeds without writing."""
        manager = RefreshTokenManager(store, TTL)
        user = make_user(store, "ada@example.com", "secret1")
        _session(store, user, clock(), manager)
        assert manager.revoke(user.id, clock()).ok
        version_after_first = store.get_by_id(user.id).version
        assert manager.revoke(user.id, clock()).ok
        assert store.get_by_id(user.id).version == version_after_first

    def test_revoke_unknown_user(self, store, clock) -> None:
        result = RefreshTokenManager(store, TTL).revoke("ghost", clock())
        assert result.error.kind is ErrorKind.NOT_FOUND
