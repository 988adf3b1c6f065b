from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a default HTTP status_code and a stable error_code so
    the transport layer can map failures without inspecting messages:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)

    Subclasses sharing an error_code set ``reason``, which is copied into
    ``detail`` so clients can tell them apart.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = dict(detail or {})
        if self.reason:
            self.detail.setdefault("reason", self.reason)


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class InvalidMethodError(BadRequestError):
    """Requested MFA method is not one of otp/totp."""
    pass


class MfaNotConfiguredError(BadRequestError):
    """Principal reached MFA verification without a configured method."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable."""
    reason = "invalid_credentials"


class TokenInvalidError(AuthenticationError):
    """Bad signature, wrong scope, or expired token."""
    reason = "token_invalid"


class InvalidCodeError(AuthenticationError):
    """Submitted MFA code does not match."""
    reason = "invalid_code"


class CodeExpiredError(AuthenticationError):
    """No OTP pending, or the pending OTP has expired."""
    reason = "code_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions or inactive account (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class InviteNotFoundError(NotFoundError):
    """No pending invitation for the presented token."""
    reason = "invite_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DeliveryError(Exception):
    """Raised by notifiers when an outbound message could not be sent.

    Never surfaced to callers of the primary flows.
    """

    def __init__(self, message: str, *, recipient: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.recipient = recipient


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidMethodError",
    "MfaNotConfiguredError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "InvalidCodeError",
    "CodeExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "InviteNotFoundError",
    "ConflictError",
    "ServerError",
    "DeliveryError",
]
