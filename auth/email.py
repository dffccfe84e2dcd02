"""
auth/email.py -- Outbound delivery of password-reset codes.

Two senders implement the EmailSender protocol:
  SmtpEmailSender    -- STARTTLS (or implicit TLS) SMTP with a bounded timeout.
  LoggingEmailSender -- dev mode when SMTP_HOST is empty. Logs that a code was
                        issued, never the code itself.

Both raise DeliveryError on failure. Retrying is the caller's decision (the
client re-posts /forgot-password); senders never retry on their own.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from auth.errors import DeliveryError
from core.config import Settings

logger = logging.getLogger("passgate.auth.email")

OTP_SUBJECT = "Password Reset OTP"


class EmailSender(Protocol):
    def send_otp(self, to_address: str, code: str, display_name: str) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for log lines."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def render_otp_body(code: str, display_name: str, ttl_minutes: int = 10) -> str:
    return (
        f"Hello {display_name},\n\n"
        "You requested to reset your password. Use the code below to complete the process:\n\n"
        f"    {code}\n\n"
        f"This code is valid for {ttl_minutes} minutes. Do not share it with anyone.\n"
        "If you didn't request this, you can ignore this email.\n"
    )


class SmtpEmailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        from_email: str = "",
        from_name: str = "PassGate",
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email or username
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    def _build_message(self, to_address: str, code: str, display_name: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = OTP_SUBJECT
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_address
        msg.set_content(render_otp_body(code, display_name))
        return msg

    def send_otp(self, to_address: str, code: str, display_name: str) -> None:
        msg = self._build_message(to_address, code, display_name)
        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send OTP email to %s: %s", redact_email(to_address), exc)
            raise DeliveryError("Failed to send OTP email") from exc
        logger.info("OTP email sent to %s", redact_email(to_address))


class LoggingEmailSender:
    """Dev-mode sender: records the delivery, drops the message."""

    def send_otp(self, to_address: str, code: str, display_name: str) -> None:
        logger.info("SMTP not configured; OTP email to %s not sent", redact_email(to_address))


def build_email_sender(settings: Settings) -> EmailSender:
    if not settings.smtp_host:
        return LoggingEmailSender()
    return SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        from_email=settings.smtp_from_email,
        from_name=settings.smtp_from_name,
        use_tls=settings.smtp_use_tls,
        timeout=settings.smtp_timeout_seconds,
    )
