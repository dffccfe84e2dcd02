"""
auth/hashing.py -- One-way hashing for passwords and refresh-token secrets.

bcrypt, used directly (no passlib wrapper):
  - gensalt() draws a fresh random salt per call, so hashing the same input
    twice produces two different digests.
  - checkpw() compares in constant time; its cost factor makes offline
    brute-force of a leaked users table expensive.

The same functions protect refresh-token secrets at rest. A stolen database
therefore yields neither passwords nor usable sessions.

_DUMMY_HASH enables timing equalization [C1]: when a login names an unknown
account the caller still runs checkpw() against this digest, so response time
does not reveal whether the email exists.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import bcrypt

# bcrypt ignores (4.x) or rejects (5.x) input beyond 72 bytes. Reject it
# ourselves so the behaviour is the same on every bcrypt release.
MAX_SECRET_BYTES = 72


def hash_secret(plain: str) -> str:
    """Return a salted bcrypt digest of plain.

    Raises ValueError if plain encodes to more than 72 bytes. The API layer
    validates password length first, so this only fires on programming errors.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_SECRET_BYTES:
        raise ValueError(f"Secret exceeds {MAX_SECRET_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_secret(plain: str, digest: str | None) -> bool:
    """Return True if plain matches digest. Malformed or empty digests are False.

    Input over 72 bytes is False too: nothing that long was ever hashed, and
    bcrypt 4.x would otherwise compare only its first 72 bytes.
    """
    if not digest:
        return False
    encoded = plain.encode("utf-8")
    try:
        matched = bcrypt.checkpw(encoded[:MAX_SECRET_BYTES], digest.encode("utf-8"))
    except ValueError:
        # Invalid salt
        return False
    return matched and len(encoded) <= MAX_SECRET_BYTES


def burn_verify(plain: str) -> None:
    """Spend one bcrypt verification without a real digest [C1]."""
    bcrypt.checkpw(plain.encode("utf-8")[:MAX_SECRET_BYTES], _DUMMY_HASH.encode("utf-8"))


# Computed once at import so the first failed login is not measurably slower
# than later ones.
_DUMMY_HASH: str = hash_secret("passgate_timing_dummy")
