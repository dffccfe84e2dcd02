"""
auth/errors.py -- Typed outcomes for the credential engine.

Expected failures (bad password, expired token, duplicate email, wrong OTP)
are values, not exceptions. Every engine operation returns a Result; callers
check result.ok and branch on result.error.kind. The HTTP layer maps kinds to
status codes in one place (api/errors.py).

Unexpected failures -- the database is down, a bug -- still raise. They reach
the FastAPI catch-all handler and become a generic 500. The one external
failure the engine converts into a value is DeliveryError, because the
forgot-password route must tell the client it may retry.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    # OTP ceiling reached. Distinct from UNAUTHORIZED so clients can back off.
    RATE_LIMITED = "rate_limited"
    INVALID_OPERATION = "invalid_operation"
    INTERNAL = "internal"


class DeliveryError(Exception):
    """Raised by an EmailSender when the message could not be handed off."""


@dataclass(frozen=True)
class AuthFailure:
    kind: ErrorKind
    message: str
    remaining_attempts: int | None = None
    retryable: bool = False


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an AuthFailure. Never both.

    Usage:
        result = service.login(email, password)
        if not result.ok:
            return error_response(result.error)
        session = result.value
    """

    value: T | None = None
    error: AuthFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        remaining_attempts: int | None = None,
        retryable: bool = False,
    ) -> "Result[T]":
        return cls(error=AuthFailure(kind, message, remaining_attempts, retryable))

    @classmethod
    def from_failure(cls, failure: AuthFailure) -> "Result[T]":
        """Re-wrap another result's failure under a different value type."""
        return cls(error=failure)


def unauthorized(message: str, **kwargs) -> Result:
    return Result.failure(ErrorKind.UNAUTHORIZED, message, **kwargs)


def not_found(message: str = "User not found") -> Result:
    return Result.failure(ErrorKind.NOT_FOUND, message)
