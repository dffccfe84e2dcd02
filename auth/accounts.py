"""
auth/accounts.py -- Account creation with unique username derivation.

Usernames are derived from the email local part: "ada@example.com" becomes
"ada", then "ada1", "ada2", ... if taken. The lookup-then-insert is racy by
nature, so the UNIQUE constraint is the real arbiter: an IntegrityError on
insert means either the email/google_id already exists (report it) or another
request grabbed the same username (try the next suffix).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import CredentialStore

logger = logging.getLogger("passgate.auth.accounts")

_MAX_CREATE_ATTEMPTS = 5
_MAX_USERNAME_LENGTH = 90  # leaves room for a numeric suffix under the 100-char column
_USERNAME_STRIP = re.compile(r"[^a-z0-9._-]")


def new_user_id() -> str:
    return str(uuid.uuid4())


def username_base(email: str) -> str:
    local = email.split("@", 1)[0].lower()
    local = _USERNAME_STRIP.sub("", local)[:_MAX_USERNAME_LENGTH]
    return local or "user"


def next_free_username(store: CredentialStore, base: str) -> str:
    username = base
    counter = 1
    while store.username_taken(username):
        username = f"{base}{counter}"
        counter += 1
    return username


def create_account(store: CredentialStore, *, email: str, now: datetime, **fields) -> User | None:
    """Insert a new account keyed by a normalized email.

    Returns the stored User, or None if the email (or google_id, when given)
    already belongs to another account.
    """
    base = username_base(email)
    google_id = fields.get("google_id")
    for _ in range(_MAX_CREATE_ATTEMPTS):
        candidate = User(
            id=new_user_id(),
            username=next_free_username(store, base),
            email=email,
            created_at=now,
            **fields,
        )
        try:
            return store.create_user(candidate)
        except IntegrityError:
            if store.get_by_email(email) is not None:
                return None
            if google_id and store.get_by_google_id(google_id) is not None:
                return None
            logger.info("Username %r taken concurrently, retrying with next suffix", candidate.username)
    raise RuntimeError(f"Could not allocate a unique username for base {base!r}")
