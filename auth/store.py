"""
auth/store.py -- SQLAlchemy Core persistence layer for user credentials.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Services and routes never touch SQL directly.

Concurrency:
  Every row carries an integer version. apply() issues
      UPDATE users SET ..., version = version + 1
      WHERE id = :id AND version = :expected
  and reports whether a row matched. Two requests that both read version N
  cannot both write: the second UPDATE matches zero rows and apply() returns
  None. This is what makes refresh rotation single-use and OTP attempt
  counting exact under concurrent requests.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(email) and UNIQUE(google_id) are enforced by SQL. NULLs are distinct
  in both SQLite and PostgreSQL UNIQUE indexes, which is the behaviour we want
  for legacy accounts without an email and for local accounts without a
  Google link.

Timestamps are stored as ISO 8601 UTC strings and parsed back into aware
datetimes by the mapper.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from auth.models import AuthProvider, Role, User

# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    """What the credential engine needs from persistence.

    Implementations must make apply() a compare-and-swap on version: the
    change set is written only if the stored version still equals
    expected_version, and the returned snapshot reflects the write.
    """

    def get_by_id(self, user_id: str) -> User | None: ...

    def get_by_email(self, email: str) -> User | None: ...

    def get_by_username(self, username: str) -> User | None: ...

    def get_by_google_id(self, google_id: str) -> User | None: ...

    def username_taken(self, username: str) -> bool: ...

    def list_users(self) -> list[User]: ...

    def create_user(self, user: User) -> User: ...

    def apply(self, user_id: str, expected_version: int, changes: dict[str, Any]) -> User | None: ...

    def count_active_admins(self) -> int: ...

    def close(self) -> None: ...

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255), unique=True),  # NULL for legacy local accounts
    Column("password_hash", Text),  # NULL for Google-only accounts
    Column("role", String(50), nullable=False, server_default=Role.USER.value),
    Column("auth_provider", String(20), nullable=False, server_default=AuthProvider.LOCAL.value),
    Column("google_id", String(255), unique=True),
    Column("profile_picture", String(500)),
    Column("refresh_token_hash", Text),
    Column("refresh_token_expiry", String(40)),
    Column("revoked_on", String(40)),
    Column("password_reset_otp", String(6)),
    Column("password_reset_otp_expiry", String(40)),
    Column("password_reset_attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("last_login_at", String(40)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("version", Integer, nullable=False, server_default="1"),
)

# Columns a change set may touch. id, created_at and version are managed here.
_MUTABLE_COLUMNS = frozenset(c.name for c in _users.columns) - {"id", "created_at", "version"}

_TIMESTAMP_COLUMNS = frozenset(
    {
        "refresh_token_expiry",
        "revoked_on",
        "password_reset_otp_expiry",
        "created_at",
        "last_login_at",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def _to_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _TIMESTAMP_COLUMNS:
        return value.isoformat()
    if column == "is_active":
        return 1 if value else 0
    if isinstance(value, (Role, AuthProvider)):
        return value.value
    return value


def _parse_ts(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """SQLAlchemy Core implementation of CredentialStore.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user = store.create_user(User(id=new_id(), username="ada", email="ada@example.com"))
        updated = store.apply(user.id, user.version, {"role": Role.ADMIN})
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        engine_args: dict[str, Any] = {}
        if db_url.startswith("sqlite"):
            engine_args["connect_args"] = {"check_same_thread": False}
            if "mode=memory" in db_url:
                # Named shared-memory databases are reached from several
                # threads. The database lives as long as one pooled
                # connection stays open.
                engine_args["poolclass"] = QueuePool
        self.engine: Engine = create_engine(db_url, **engine_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get_one(self, clause) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(clause)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        return self._get_one(_users.c.id == user_id)

    def get_by_email(self, email: str) -> User | None:
        """Exact match. Callers pass an already-normalized (lowercased) email."""
        return self._get_one(_users.c.email == email)

    def get_by_username(self, username: str) -> User | None:
        return self._get_one(_users.c.username == username)

    def get_by_google_id(self, google_id: str) -> User | None:
        return self._get_one(_users.c.google_id == google_id)

    def username_taken(self, username: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.username == username)
            ).scalar()
        return (count or 0) > 0

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (count or 0) > 0

    def list_users(self) -> list[User]:
        """Return all users, newest first. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at.desc())).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active_admins(self) -> int:
        """Used by the admin routes to refuse removing the last admin [M4]."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == Role.ADMIN.value) & (_users.c.is_active == 1))
            ).scalar()
        return count or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return the stored snapshot.

        Raises sqlalchemy.exc.IntegrityError if the username, email or
        google_id is already taken. The service layer catches it to retry with
        a different username suffix or to report a duplicate email.
        """
        values = {
            column: _to_db(column, getattr(user, column))
            for column in _MUTABLE_COLUMNS | {"id", "created_at"}
        }
        values["created_at"] = _to_db("created_at", user.created_at or datetime.now(timezone.utc))
        values["version"] = 1
        with self.engine.begin() as conn:
            conn.execute(_users.insert().values(**values))
            row = conn.execute(_users.select().where(_users.c.id == user.id)).fetchone()
        return _row_to_user(row)

    def apply(self, user_id: str, expected_version: int, changes: dict[str, Any]) -> User | None:
        """Write changes iff the row is still at expected_version.

        Returns the new snapshot, or None when the row is missing or another
        writer got there first. Unknown column names raise ValueError rather
        than being silently dropped.
        """
        unknown = set(changes) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown user columns: {sorted(unknown)!r}")
        values = {column: _to_db(column, value) for column, value in changes.items()}
        values["version"] = _users.c.version + 1
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.version == expected_version))
                .values(**values)
            )
            if result.rowcount != 1:
                return None
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row)

    def ping(self) -> None:
        """Round-trip to the database. Raises sqlalchemy.exc.SQLAlchemyError if unreachable."""
        with self.engine.connect() as conn:
            conn.execute(select(1))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        auth_provider=AuthProvider(row.auth_provider),
        google_id=row.google_id,
        profile_picture=row.profile_picture,
        refresh_token_hash=row.refresh_token_hash,
        refresh_token_expiry=_parse_ts(row.refresh_token_expiry),
        revoked_on=_parse_ts(row.revoked_on),
        password_reset_otp=row.password_reset_otp,
        password_reset_otp_expiry=_parse_ts(row.password_reset_otp_expiry),
        password_reset_attempts=row.password_reset_attempts or 0,
        created_at=_parse_ts(row.created_at),
        last_login_at=_parse_ts(row.last_login_at),
        is_active=bool(row.is_active),
        version=row.version,
    )
