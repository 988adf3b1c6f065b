from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from accessflow.api.schemas import (
    AcceptInviteRequest,
    ChooseMfaRequest,
    Envelope,
    ForgotPasswordRequest,
    InviteRequest,
    LoginRequest,
    ResetPasswordRequest,
    VerifyMfaRequest,
)
from accessflow.logging import get_logger
from accessflow.service.auth import AuthContext
from accessflow.service.errors import TokenInvalidError
from accessflow.service.roles import ADMIN_ROLES
from accessflow.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _extract_bearer(header: Optional[str]) -> str:
    if not header:
        raise TokenInvalidError("missing bearer token")
    if not header.lower().startswith("bearer "):
        raise TokenInvalidError("malformed authorization header")
    token = header.split(" ", 1)[1].strip()
    if not token:
        raise TokenInvalidError("missing bearer token")
    return token


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(_extract_bearer(authorization))


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(
        _extract_bearer(authorization), required_roles=ADMIN_ROLES
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Check credentials and hand back the token for the next MFA step.

    Raises:
        400: If email or password is missing
        401: If credentials are invalid
        403: If the account is not active
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/invite", response_model=Envelope, status_code=201, tags=["auth"])
async def create_invite(body: InviteRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    inviter = runtime.auth.get_inviter(principal)
    result = await runtime.invitations.create_invite(
        inviter, body.email, body.role, body.organization_name
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/accept-invite", response_model=Envelope, status_code=201, tags=["auth"])
async def accept_invite(body: AcceptInviteRequest):
    runtime = get_runtime()
    result = await runtime.invitations.accept_invite(body.token, body.name, body.password)
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await runtime.recovery.request_reset(body.email)
    return Envelope(status="ok", data={"message": "Password reset link sent to your email."})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.recovery.reset_credential(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "Password reset successful."})


@router.post("/mfa/choose", response_model=Envelope, tags=["mfa"])
async def choose_mfa(body: ChooseMfaRequest, authorization: Optional[str] = Header(None)):
    """Enroll the principal named by a setup token in OTP or TOTP."""
    runtime = get_runtime()
    enrollment = await runtime.mfa.choose_mfa(_extract_bearer(authorization), body.method)
    return Envelope(status="ok", data=enrollment.as_dict())


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def verify_mfa(body: VerifyMfaRequest, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    verified = await runtime.mfa.verify_mfa(_extract_bearer(authorization), body.code)
    return Envelope(
        status="ok",
        data={
            "message": "MFA verified. Login successful.",
            "token": verified.token,
            "user": verified.user,
        },
    )


@router.get("/users", response_model=Envelope, tags=["admin"])
async def list_users(limit: int = 100, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    users = runtime.auth.list_users(principal, limit=max(1, min(limit, 500)))
    return Envelope(status="ok", data={"users": users, "count": len(users)})
