from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import os
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import quote, urlencode

import qrcode

from accessflow.config import Settings
from accessflow.logging import get_logger
from accessflow.service.email import Notifier, dispatch_best_effort, otp_message
from accessflow.service.errors import (
    BadRequestError,
    CodeExpiredError,
    InvalidCodeError,
    InvalidMethodError,
    MfaNotConfiguredError,
    NotFoundError,
)
from accessflow.service.tokens import Scope, TokenIssuer
from accessflow.storage.models import MfaMethod, User

if TYPE_CHECKING:
    from accessflow.service.auth import AuthStore

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1


@dataclass
class MfaEnrollment:
    method: MfaMethod
    message: str
    otpauth_uri: Optional[str] = None
    qr_code: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"method": self.method.value, "message": self.message}
        if self.otpauth_uri:
            data["otpauth_uri"] = self.otpauth_uri
            data["qr_code"] = self.qr_code
        return data


@dataclass
class VerifiedSession:
    token: str
    user: dict[str, Any]


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the time step containing ``timestamp``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    if not secret or not code:
        return False
    now = time.time() if at is None else at
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        # Constant-time comparison; bytes so non-ASCII input simply mismatches
        if generated and hmac.compare_digest(generated.encode("utf-8"), code.encode("utf-8")):
            return True
    return False


def generate_totp_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_otp_code() -> str:
    """Uniform 6-digit numeric code in 100000..999999."""
    return str(100000 + secrets.randbelow(900000))


def render_qr_data_url(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class MfaEngine:
    """MFA enrollment and verification.

    Per principal: NONE -> METHOD_CHOSEN{otp|totp}; each login then opens a
    challenge that ``verify_mfa`` closes by issuing a session token.
    """

    def __init__(
        self,
        store: "AuthStore",
        tokens: TokenIssuer,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.notifier = notifier
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _load_subject(self, claims: dict) -> User:
        user = self.store.get_user(claims.get("sub") or "")
        if not user:
            raise NotFoundError("user not found")
        return user

    def provisioning_uri(self, secret: str, email: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{email}")
        query = urlencode({"secret": secret, "issuer": issuer})
        return f"otpauth://totp/{label}?{query}"

    def _roll_otp(self, user: User) -> str:
        code = generate_otp_code()
        user.mfa.otp_code = code
        user.mfa.otp_expires_at = self._now() + timedelta(minutes=self.settings.otp_ttl_minutes)
        return code

    async def _send_otp(self, user: User, code: str) -> None:
        subject, body = otp_message(code, self.settings.otp_ttl_minutes)
        await dispatch_best_effort(self.notifier, user.email, subject, body, event="mfa_otp")

    async def choose_mfa(self, setup_token: str, method: str) -> MfaEnrollment:
        claims = self.tokens.verify(setup_token, Scope.SETUP)
        user = self._load_subject(claims)
        if method not in (MfaMethod.OTP.value, MfaMethod.TOTP.value):
            raise InvalidMethodError("invalid MFA method", detail={"method": method})
        chosen = MfaMethod(method)

        # Method and its secret/code land in a single save
        user.mfa.method = chosen
        if chosen is MfaMethod.TOTP:
            secret = generate_totp_secret()
            user.mfa.secret = secret
            user.mfa.otp_code = None
            user.mfa.otp_expires_at = None
            self.store.save_user(user)
            uri = self.provisioning_uri(secret, user.email)
            logger.info("mfa_method_chosen", user_id=user.id, method=chosen.value)
            return MfaEnrollment(
                method=chosen,
                message="TOTP selected. Scan this QR code in your authenticator app.",
                otpauth_uri=uri,
                qr_code=render_qr_data_url(uri),
            )

        user.mfa.secret = None
        code = self._roll_otp(user)
        self.store.save_user(user)
        logger.info("mfa_method_chosen", user_id=user.id, method=chosen.value)
        await self._send_otp(user, code)
        return MfaEnrollment(method=chosen, message="OTP generated and sent to your email.")

    async def issue_login_challenge(self, user: User) -> User:
        """Re-roll and email a fresh OTP; every login invalidates the previous code."""
        code = self._roll_otp(user)
        saved = self.store.save_user(user)
        logger.info("mfa_otp_issued", user_id=user.id)
        await self._send_otp(saved, code)
        return saved

    async def verify_mfa(self, mfa_token: str, code: str) -> VerifiedSession:
        claims = self.tokens.verify(mfa_token, Scope.MFA_VERIFY)
        if not code:
            raise BadRequestError("MFA code is required")
        user = self._load_subject(claims)
        code = str(code).strip()

        if user.mfa.method is MfaMethod.TOTP:
            if not verify_totp(user.mfa.secret or "", code):
                logger.warning("mfa_invalid_code", user_id=user.id, method="totp")
                raise InvalidCodeError("invalid TOTP code")
        elif user.mfa.method is MfaMethod.OTP:
            pending = user.mfa.otp_code
            expires_at = user.mfa.otp_expires_at
            if not pending:
                raise CodeExpiredError("no OTP code pending")
            if not hmac.compare_digest(pending.encode("utf-8"), code.encode("utf-8")):
                logger.warning("mfa_invalid_code", user_id=user.id, method="otp")
                raise InvalidCodeError("invalid OTP code")
            if not expires_at or expires_at < self._now():
                raise CodeExpiredError("OTP code expired")
            user.mfa.otp_code = None
            user.mfa.otp_expires_at = None
            user = self.store.save_user(user)
        else:
            logger.error("mfa_verify_without_method", user_id=user.id)
            raise MfaNotConfiguredError("MFA method not configured")

        token = self.tokens.issue(
            user.id,
            Scope.SESSION,
            {"role": user.role.value, "org_id": user.organization_id},
        )
        logger.info("mfa_verified", user_id=user.id, method=user.mfa.method.value)
        return VerifiedSession(token=token, user=user.public_profile())
