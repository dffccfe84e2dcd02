"""
auth/reset.py -- OTP-guarded password reset for users without a session.

States (per user row):
    no request --request_otp--> OTP issued --verify ok--> (still issued)
                                     |--expired--------> cleared
                                     |--5 failures-----> cleared on next try
                                     '--reset ok-------> cleared

Security design decisions:
  Enumeration: request_otp() returns the same success for unknown, inactive
      and Google-only addresses as for real local accounts, with no write and
      no email.

  Code: secrets.randbelow(10**6), zero-padded -- uniform over 000000-999999.
      Compared with hmac.compare_digest.

  Attempts: every wrong guess is a compare-and-swap increment. Two parallel
      guesses cannot both read "4 failures" and both get a fifth try; the
      loser re-reads and sees the new count. Once 5 failures are recorded the
      next call clears the OTP and fails RATE_LIMITED, even with the right code.

  Delivery: the OTP is committed before the email is handed to the sender.
      If delivery fails the caller gets a retryable INTERNAL failure and the
      stored code stays valid until it expires.

  Reset side effect: a successful reset also kills the refresh session, so a
      stolen refresh token does not outlive the password change.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from auth.email import EmailSender, redact_email
from auth.errors import DeliveryError, ErrorKind, Result, unauthorized
from auth.hashing import hash_secret
from auth.models import AuthProvider, User, normalize_email
from auth.refresh import revocation_changes
from auth.store import CredentialStore

logger = logging.getLogger("passgate.auth.reset")

OTP_TTL = timedelta(minutes=10)
OTP_MAX_ATTEMPTS = 5
OTP_DIGITS = 6

# Version races are retried by re-reading the row. Each retry sees newer
# state, so a few rounds always settle.
_MAX_WRITE_ATTEMPTS = 5

_CLEAR_OTP: dict[str, Any] = {
    "password_reset_otp": None,
    "password_reset_otp_expiry": None,
    "password_reset_attempts": 0,
}


def generate_otp() -> str:
    return f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"


def _contended(operation: str) -> Result:
    logger.warning("%s gave up after repeated concurrent writes", operation)
    return Result.failure(ErrorKind.INTERNAL, "Request conflicted with another update, try again", retryable=True)


class PasswordResetFlow:
    def __init__(self, store: CredentialStore, sender: EmailSender) -> None:
        self.store = store
        self.sender = sender

    def _eligible(self, email: str) -> User | None:
        user = self.store.get_by_email(normalize_email(email))
        if user is None or not user.is_active:
            return None
        if user.auth_provider is not AuthProvider.LOCAL or not user.password_hash:
            return None
        return user

    def request_otp(self, email: str, now: datetime) -> Result[bool]:
        """Issue a fresh code and email it. Always succeeds for unknown addresses."""
        for _ in range(_MAX_WRITE_ATTEMPTS):
            user = self._eligible(email)
            if user is None:
                logger.info("Password reset requested for unknown or ineligible address")
                return Result.success(True)
            code = generate_otp()
            updated = self.store.apply(
                user.id,
                user.version,
                {
                    "password_reset_otp": code,
                    "password_reset_otp_expiry": now + OTP_TTL,
                    "password_reset_attempts": 0,
                },
            )
            if updated is not None:
                break
        else:
            return _contended("request_otp")

        try:
            self.sender.send_otp(updated.email, code, updated.display_name)
        except DeliveryError:
            logger.error("OTP for %s stored but not delivered", redact_email(updated.email or ""))
            return Result.failure(ErrorKind.INTERNAL, "Failed to send OTP. Please try again.", retryable=True)
        return Result.success(True)

    def verify_otp(self, email: str, candidate: str, now: datetime) -> Result[User]:
        """Check candidate against the pending code.

        A match leaves the code in place, so verify may be called before
        reset_password without consuming it. An account linked to Google
        after the code was issued no longer qualifies and reports no OTP.
        """
        for _ in range(_MAX_WRITE_ATTEMPTS):
            user = self._eligible(email)
            if user is None or not user.password_reset_otp:
                return Result.failure(ErrorKind.INVALID_OPERATION, "No OTP pending")

            if user.password_reset_otp_expiry is None or user.password_reset_otp_expiry <= now:
                if self.store.apply(user.id, user.version, _CLEAR_OTP) is None:
                    continue
                return unauthorized("OTP has expired. Please request a new one.")

            if user.password_reset_attempts >= OTP_MAX_ATTEMPTS:
                if self.store.apply(user.id, user.version, _CLEAR_OTP) is None:
                    continue
                logger.warning("OTP attempts exhausted for user %s", user.id)
                return Result.failure(
                    ErrorKind.RATE_LIMITED, "Too many failed attempts. Please request a new OTP.", remaining_attempts=0
                )

            if not hmac.compare_digest(candidate.encode("utf-8"), user.password_reset_otp.encode("utf-8")):
                attempts = user.password_reset_attempts + 1
                if self.store.apply(user.id, user.version, {"password_reset_attempts": attempts}) is None:
                    continue
                remaining = OTP_MAX_ATTEMPTS - attempts
                return unauthorized(f"Invalid OTP. {remaining} attempts remaining.", remaining_attempts=remaining)

            return Result.success(user)
        return _contended("verify_otp")

    def reset_password(self, email: str, candidate: str, new_password: str, now: datetime) -> Result[User]:
        """Verify the code, then set the new password, clear the OTP and end the session."""
        for _ in range(_MAX_WRITE_ATTEMPTS):
            verified = self.verify_otp(email, candidate, now)
            if not verified.ok:
                return Result.from_failure(verified.error)
            user = verified.value
            changes = {"password_hash": hash_secret(new_password), **_CLEAR_OTP, **revocation_changes(now)}
            updated = self.store.apply(user.id, user.version, changes)
            if updated is not None:
                logger.info("Password reset completed for user %s", user.id)
                return Result.success(updated)
        return _contended("reset_password")
