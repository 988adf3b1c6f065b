from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Optional

from accessflow.config import Settings
from accessflow.logging import get_logger
from accessflow.service.errors import TokenInvalidError

logger = get_logger(__name__)

_RESERVED_CLAIMS = frozenset({"iss", "aud", "sub", "scope", "iat", "exp", "jti"})


class Scope(str, Enum):
    """Operation category a token authorizes."""

    SETUP = "setup"
    MFA_VERIFY = "mfa-verify"
    SESSION = "session"
    RESET = "reset"
    INVITE = "invite"


def default_ttls(settings: Settings) -> dict[Scope, timedelta]:
    return {
        Scope.SETUP: timedelta(minutes=settings.setup_token_ttl_minutes),
        Scope.MFA_VERIFY: timedelta(minutes=settings.mfa_token_ttl_minutes),
        Scope.SESSION: timedelta(minutes=settings.session_token_ttl_minutes),
        Scope.RESET: timedelta(minutes=settings.reset_token_ttl_minutes),
        Scope.INVITE: timedelta(minutes=settings.invite_token_ttl_minutes),
    }


class TokenIssuer:
    """Mints and verifies HS256-signed, expiring, scoped tokens.

    There is no revocation list; non-session scopes rely on short TTLs.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._ttls = default_ttls(settings)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def ttl_for(self, scope: Scope) -> timedelta:
        return self._ttls[Scope(scope)]

    def issue(
        self,
        subject_id: Optional[str],
        scope: Scope,
        claims: Optional[Mapping[str, Any]] = None,
        ttl: Optional[timedelta] = None,
    ) -> str:
        scope = Scope(scope)
        extra = dict(claims or {})
        clashing = _RESERVED_CLAIMS.intersection(extra)
        if clashing:
            raise ValueError(f"claims may not override reserved keys: {sorted(clashing)}")
        lifetime = ttl if ttl is not None else self.ttl_for(scope)
        now = time.time()
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "scope": scope.value,
            "iat": int(now),
            "exp": int(now + lifetime.total_seconds()),
            "jti": str(uuid.uuid4()),
        }
        if subject_id is not None:
            payload["sub"] = subject_id
        payload.update(extra)
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, expected_scope: Optional[Scope] = None) -> dict[str, Any]:
        """Return the token's claims or raise TokenInvalidError."""
        if not token or not isinstance(token, str):
            raise TokenInvalidError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("malformed token") from None

        # Reject algorithm confusion before checking the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("token_header_decode_failed")
            raise TokenInvalidError("malformed token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm")
            raise TokenInvalidError("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            raise TokenInvalidError("invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("invalid token issuer")
        if payload.get("aud") != self.settings.jwt_audience:
            raise TokenInvalidError("invalid token audience")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("token has no expiry") from None
        if exp_ts <= time.time():
            raise TokenInvalidError("token expired")
        if expected_scope is not None and payload.get("scope") != Scope(expected_scope).value:
            logger.warning(
                "token_scope_mismatch",
                expected=Scope(expected_scope).value,
                actual=payload.get("scope"),
            )
            raise TokenInvalidError("token not valid for this operation")
        return payload
