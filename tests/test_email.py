"""
tests/test_email.py -- Unit tests for auth/email.py.

Covers:
  - build_email_sender picks the log-only sender when SMTP_HOST is empty
  - SmtpEmailSender hands a well-formed message to smtplib
  - SMTP and socket errors surface as DeliveryError
  - redact_email never logs the full local part
"""

from __future__ import annotations

import smtplib

import pytest

from auth.email import LoggingEmailSender, SmtpEmailSender, build_email_sender, redact_email
from auth.errors import DeliveryError
from core.config import Settings

SECRET = "s" * 32


class _FakeSMTP:
    """Context-manager stand-in for smtplib.SMTP that records calls."""

    instances: list[_FakeSMTP] = []

    def __init__(self, host, port, timeout=None, **kwargs) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in_as = None
        self.messages = []
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None

    def starttls(self, context=None) -> None:
        self.started_tls = True

    def login(self, username, password) -> None:
        self.logged_in_as = username

    def send_message(self, msg) -> None:
        self.messages.append(msg)


@pytest.fixture()
def fake_smtp(monkeypatch):
    _FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)
    return _FakeSMTP


class TestBuildEmailSender:
    def test_no_host_logs_only(self) -> None:
        settings = Settings(secret_key=SECRET, smtp_host="")
        assert isinstance(build_email_sender(settings), LoggingEmailSender)

    def test_host_configured(self) -> None:
        settings = Settings(secret_key=SECRET, smtp_host="smtp.example.com", smtp_username="bot@example.com")
        sender = build_email_sender(settings)
        assert isinstance(sender, SmtpEmailSender)
        assert sender.from_email == "bot@example.com", "From falls back to the SMTP username"


class TestSmtpEmailSender:
    def test_sends_message(self, fake_smtp) -> None:
        sender = SmtpEmailSender(host="smtp.example.com", username="bot@example.com", password="pw", timeout=3.0)
        sender.send_otp("ada@example.com", "042917", "ada")
        smtp = fake_smtp.instances[0]
        assert smtp.timeout == 3.0
        assert smtp.started_tls
        assert smtp.logged_in_as == "bot@example.com"
        msg = smtp.messages[0]
        assert msg["To"] == "ada@example.com"
        assert msg["Subject"] == "Password Reset OTP"
        assert "042917" in msg.get_content()

    def test_smtp_error_becomes_delivery_error(self, monkeypatch) -> None:
        def refuse(*args, **kwargs):
            raise smtplib.SMTPConnectError(421, "try later")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        sender = SmtpEmailSender(host="smtp.example.com")
        with pytest.raises(DeliveryError):
            sender.send_otp("ada@example.com", "042917", "ada")

    def test_socket_error_becomes_delivery_error(self, monkeypatch) -> None:
        def unreachable(*args, **kwargs):
            raise TimeoutError("timed out")

        monkeypatch.setattr(smtplib, "SMTP", unreachable)
        with pytest.raises(DeliveryError):
            SmtpEmailSender(host="smtp.example.com").send_otp("ada@example.com", "042917", "ada")


class TestRedactEmail:
    def test_redacts_local_part(self) -> None:
        assert redact_email("ada.lovelace@example.com") == "ad***@example.com"

    def test_not_an_address(self) -> None:
        assert redact_email("nobody") == "redacted"
