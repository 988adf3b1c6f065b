import smtplib

import pytest

from accessflow.config import Settings
from accessflow.service import email as email_module
from accessflow.service.email import (
    EmailService,
    dispatch_best_effort,
    invitation_message,
    otp_message,
    password_reset_message,
)
from accessflow.service.errors import DeliveryError


class _BrokenSMTP:
    def __init__(self, *args, **kwargs):
        raise smtplib.SMTPConnectError(421, "service not available")


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    def _fail(*args, **kwargs):
        raise AssertionError("SMTP must not be used in dev mode")

    monkeypatch.setattr(smtplib, "SMTP", _fail)
    service = EmailService()
    assert not service.is_configured
    service.send("a@example.com", "Subject", "Body")


def test_from_settings_copies_smtp_fields():
    settings = Settings(
        jwt_secret="x" * 40,
        smtp_host="smtp.example.com",
        smtp_port=2525,
        email_from_address="noreply@example.com",
        email_from_name="Ops",
    )
    service = EmailService.from_settings(settings)
    assert service.is_configured
    assert service.smtp_port == 2525
    assert service.from_name == "Ops"


def test_smtp_failure_raises_delivery_error(monkeypatch):
    monkeypatch.setattr(smtplib, "SMTP", _BrokenSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    with pytest.raises(DeliveryError) as excinfo:
        service.send("a@example.com", "Subject", "Body")
    assert excinfo.value.recipient == "a@example.com"


def _reject_header(*args, **kwargs):
    raise ValueError("header value contains a linefeed")


def test_malformed_message_raises_delivery_error(monkeypatch):
    def _fail(*args, **kwargs):
        raise AssertionError("SMTP must not be reached for a malformed message")

    monkeypatch.setattr(smtplib, "SMTP", _fail)
    monkeypatch.setattr(email_module, "MIMEText", _reject_header)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    with pytest.raises(DeliveryError) as excinfo:
        service.send("a@example.com\nBcc: b@example.com", "Subject", "Body")
    assert excinfo.value.message == "malformed message"


async def test_best_effort_swallows_malformed_message(monkeypatch):
    monkeypatch.setattr(email_module, "MIMEText", _reject_header)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    delivered = await dispatch_best_effort(
        service, "a@example.com\nBcc: b@example.com", "Subject", "Body", event="test"
    )
    assert delivered is False


async def test_best_effort_swallows_delivery_error(failing_notifier):
    delivered = await dispatch_best_effort(
        failing_notifier, "a@example.com", "Subject", "Body", event="test"
    )
    assert delivered is False
    assert failing_notifier.sent


async def test_best_effort_reports_success(notifier):
    delivered = await dispatch_best_effort(
        notifier, "a@example.com", "Subject", "Body", event="test"
    )
    assert delivered is True
    assert notifier.sent == [{"to": "a@example.com", "subject": "Subject", "body": "Body"}]


async def test_best_effort_does_not_hide_programming_errors():
    class Broken:
        def send(self, to_address, subject, body):
            raise KeyError("bug")

    with pytest.raises(KeyError):
        await dispatch_best_effort(Broken(), "a@example.com", "S", "B", event="test")


def test_message_builders():
    subject, body = invitation_message("client_admin", "Acme", "https://x/accept-invite?token=t")
    assert subject == "AccessFlow Invitation"
    assert "client_admin" in body and "Acme" in body

    subject, body = otp_message("123456", 5)
    assert subject == "AccessFlow Login OTP"
    assert "123456" in body and "5 minutes" in body

    subject, body = password_reset_message("https://x/reset-password?token=t", 15)
    assert subject == "Reset Your Password"
    assert "15 minutes" in body
