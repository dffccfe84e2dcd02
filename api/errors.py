"""
api/errors.py -- Map engine failures to HTTP responses.

The engine returns Result values; routes call raise_for_failure() on a failed
result and the app-level HTTPException handler renders the standard envelope.
Status codes live here and nowhere else.

Default mapping:
  unauthorized      -> 401
  rate_limited      -> 429
  conflict          -> 400   duplicate email on /register
  not_found         -> 404
  invalid_operation -> 400
  internal          -> 500, or 503 when the failure is retryable

The reset routes pass overrides so every OTP failure is a 400, matching the
contract clients already rely on for /verify-otp and /reset-password.
"""

from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException

from auth.errors import AuthFailure, ErrorKind

_STATUS: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.CONFLICT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_OPERATION: 400,
    ErrorKind.INTERNAL: 500,
}

OTP_STATUS_OVERRIDES: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHORIZED: 400,
    ErrorKind.RATE_LIMITED: 400,
    ErrorKind.INVALID_OPERATION: 400,
    ErrorKind.NOT_FOUND: 400,
}


def status_for(failure: AuthFailure, overrides: dict[ErrorKind, int] | None = None) -> int:
    if overrides and failure.kind in overrides:
        return overrides[failure.kind]
    if failure.kind is ErrorKind.INTERNAL and failure.retryable:
        return 503
    return _STATUS[failure.kind]


def raise_for_failure(failure: AuthFailure, overrides: dict[ErrorKind, int] | None = None) -> NoReturn:
    detail: dict = {"code": failure.kind.value, "message": failure.message}
    if failure.remaining_attempts is not None:
        detail["remaining_attempts"] = failure.remaining_attempts
    headers = {"Retry-After": "5"} if failure.retryable else None
    raise HTTPException(status_code=status_for(failure, overrides), detail=detail, headers=headers)
