from __future__ import annotations

import hmac
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from accessflow.config import Settings
from accessflow.logging import get_logger, redact_email
from accessflow.service.email import Notifier, dispatch_best_effort, password_reset_message
from accessflow.service.errors import BadRequestError, NotFoundError, TokenInvalidError
from accessflow.service.passwords import hash_password
from accessflow.service.tokens import Scope, TokenIssuer

if TYPE_CHECKING:
    from accessflow.service.auth import AuthStore

logger = get_logger(__name__)


class PasswordResetService:
    """Forgot-password flow backed by a single outstanding reset token per principal."""

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

    def _reset_link(self, token: str) -> str:
        base = self.settings.frontend_url.rstrip("/")
        return f"{base}/reset-password?{urlencode({'token': token})}"

    async def request_reset(self, email: str) -> str:
        if not email:
            raise BadRequestError("email is required")
        user = self.store.get_user_by_email(email)
        if not user:
            logger.info("password_reset_unknown_email", email=redact_email(email))
            raise NotFoundError("user not found")

        ttl = self.tokens.ttl_for(Scope.RESET)
        token = self.tokens.issue(user.id, Scope.RESET, ttl=ttl)
        # A new request replaces any previous outstanding token
        user.reset_token = token
        user.reset_expires_at = self._now() + ttl
        self.store.save_user(user)
        logger.info("password_reset_requested", user_id=user.id)

        subject, body = password_reset_message(
            self._reset_link(token), int(ttl.total_seconds() // 60)
        )
        await dispatch_best_effort(self.notifier, email, subject, body, event="password_reset")
        return token

    async def reset_credential(self, token: str, new_password: str) -> None:
        if not token or not new_password:
            raise BadRequestError("token and new password are required")
        user = self.store.get_user_by_reset_token(token)
        if (
            not user
            or not user.reset_token
            or not hmac.compare_digest(user.reset_token, token)
            or not user.reset_expires_at
            or user.reset_expires_at <= self._now()
        ):
            logger.warning("password_reset_invalid_token")
            raise TokenInvalidError("invalid or expired reset token")

        claims = self.tokens.verify(token, Scope.RESET)
        if claims.get("sub") != user.id:
            logger.warning("password_reset_subject_mismatch", user_id=user.id)
            raise TokenInvalidError("invalid or expired reset token")

        user.password_hash = hash_password(new_password)
        user.reset_token = None
        user.reset_expires_at = None
        self.store.save_user(user)
        logger.info("password_reset_completed", user_id=user.id)
