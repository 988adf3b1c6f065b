from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.errors import MessageError
from email.mime.text import MIMEText
from typing import Optional, Protocol

from accessflow.config import Settings
from accessflow.logging import get_logger, redact_email
from accessflow.service.errors import DeliveryError

logger = get_logger(__name__)


class Notifier(Protocol):
    def send(self, to_address: str, subject: str, body: str) -> None: ...


class EmailService:
    """SMTP notifier for transactional emails.

    Falls back to logging the message when SMTP is not configured (dev mode).
    Any delivery failure is raised as DeliveryError.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "AccessFlow",
        timeout: float = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, to_address: str, subject: str, body: str) -> str:
        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_address
        return msg.as_string()

    def send(self, to_address: str, subject: str, body: str) -> None:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_address),
                subject=subject,
                body_preview=body[:200],
            )
            return

        try:
            payload = self._build_message(to_address, subject, body)
        except (ValueError, TypeError, MessageError) as exc:
            logger.error("email_build_failed", to=redact_email(to_address), error_type=type(exc).__name__)
            raise DeliveryError("malformed message", recipient=to_address) from exc
        context = ssl.create_default_context()

        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_address),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, payload)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, payload)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                error_code=exc.smtp_code,
            )
            raise DeliveryError("smtp authentication failed", recipient=to_address) from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise DeliveryError("recipient refused", recipient=to_address) from exc
        except (smtplib.SMTPException, ssl.SSLError, OSError, UnicodeEncodeError) as exc:
            logger.error(
                "email_smtp_error",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError(f"smtp delivery failed: {type(exc).__name__}", recipient=to_address) from exc

        logger.info("email_sent", to=redact_email(to_address), subject=subject)


async def dispatch_best_effort(
    notifier: Notifier, to_address: str, subject: str, body: str, *, event: str
) -> bool:
    """Send without letting a delivery failure escape to the caller.

    SMTP is blocking, so it runs in a worker thread. Returns whether the
    notifier accepted the message.
    """
    try:
        await asyncio.to_thread(notifier.send, to_address, subject, body)
    except DeliveryError as exc:
        logger.warning(
            "email_delivery_failed",
            notification=event,
            to=redact_email(to_address),
            error=exc.message,
        )
        return False
    return True


def invitation_message(role: str, organization_name: Optional[str], link: str) -> tuple[str, str]:
    org_line = f"Organization: {organization_name}\n" if organization_name else ""
    body = (
        f"You've been invited to join AccessFlow as a {role}.\n"
        f"{org_line}\n"
        "Click below to accept your invite:\n"
        f"{link}\n"
    )
    return "AccessFlow Invitation", body


def welcome_message(name: str) -> tuple[str, str]:
    return "Welcome to AccessFlow", f"Hi {name}, your account has been successfully created."


def otp_message(code: str, ttl_minutes: int) -> tuple[str, str]:
    return (
        "AccessFlow Login OTP",
        f"Your OTP code is {code}. It expires in {ttl_minutes} minutes.",
    )


def password_reset_message(link: str, ttl_minutes: int) -> tuple[str, str]:
    body = (
        "We received a request to reset your password.\n\n"
        f"Click here to reset: {link}\n\n"
        f"This link will expire in {ttl_minutes} minutes. "
        "If you didn't request this, you can safely ignore this email."
    )
    return "Reset Your Password", body
