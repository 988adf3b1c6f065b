from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Protocol, Tuple

from accessflow.config import Settings
from accessflow.logging import get_logger, redact_email
from accessflow.service.errors import (
    BadRequestError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ServerError,
    TokenInvalidError,
)
from accessflow.service.mfa import MfaEngine
from accessflow.service.passwords import verify_password
from accessflow.service.roles import ADMIN_ROLES
from accessflow.service.tokens import Scope, TokenIssuer
from accessflow.storage.models import (
    Invitation,
    MfaMethod,
    Organization,
    Role,
    User,
    UserStatus,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: Role = Role.CLIENT_USER,
        status: UserStatus = UserStatus.ACTIVE,
        organization_id: Optional[str] = None,
        invited_by: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def save_user(self, user: User) -> User: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def get_organization_by_name(self, name: str) -> Optional[Organization]: ...

    def get_organization_by_admin(self, user_id: str) -> Optional[Organization]: ...

    def get_or_create_organization(
        self, name: str, *, created_by: Optional[str] = None
    ) -> Tuple[Organization, bool]: ...

    def save_organization(self, org: Organization) -> Organization: ...

    def create_invite(
        self,
        email: str,
        role: Role,
        invited_by: str,
        token: str,
        expires_at: datetime,
        *,
        organization_id: Optional[str] = None,
    ) -> Invitation: ...

    def find_pending_invite(self, email: str, token: str) -> Optional[Invitation]: ...

    def find_open_invite_for_organization(
        self, organization_id: str, role: Role, now: datetime
    ) -> Optional[Invitation]: ...

    def save_invite(self, invite: Invitation) -> Invitation: ...


@dataclass
class AuthContext:
    user_id: str
    role: Role
    organization_id: Optional[str] = None


@dataclass
class LoginResult:
    stage: str
    token: str
    user: dict[str, Any]
    message: str

    def as_dict(self) -> dict[str, Any]:
        key = "setup_token" if self.stage == "mfa_setup" else "mfa_token"
        return {"stage": self.stage, key: self.token, "user": self.user, "message": self.message}


class AuthService:
    """Password login, session authentication and the admin directory."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenIssuer,
        mfa: MfaEngine,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.mfa = mfa
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def login(self, email: str, password: str) -> LoginResult:
        if not email or not password:
            raise BadRequestError("email and password are required")

        user = self.store.get_user_by_email(email)
        # Unknown accounts still pay for a hash verification
        if not verify_password(user.password_hash if user else None, password) or not user:
            self.logger.warning("login_failed", email=redact_email(email))
            raise InvalidCredentialsError("invalid credentials")

        profile = user.public_profile()
        if user.mfa.method is MfaMethod.NONE:
            token = self.tokens.issue(user.id, Scope.SETUP)
            self.logger.info("login_mfa_setup", user_id=user.id)
            return LoginResult(
                stage="mfa_setup",
                token=token,
                user=profile,
                message="Please choose an MFA method.",
            )

        if user.status is not UserStatus.ACTIVE:
            self.logger.warning("login_inactive", user_id=user.id, status=user.status.value)
            raise ForbiddenError("account is not active", detail={"status": user.status.value})

        if user.mfa.method is MfaMethod.OTP:
            await self.mfa.issue_login_challenge(user)
            token = self.tokens.issue(user.id, Scope.MFA_VERIFY)
            self.logger.info("login_mfa_challenge", user_id=user.id, method="otp")
            return LoginResult(
                stage="mfa_verify",
                token=token,
                user=profile,
                message="OTP sent to your email.",
            )
        if user.mfa.method is MfaMethod.TOTP:
            token = self.tokens.issue(user.id, Scope.MFA_VERIFY)
            self.logger.info("login_mfa_challenge", user_id=user.id, method="totp")
            return LoginResult(
                stage="mfa_verify",
                token=token,
                user=profile,
                message="Enter the code from your authenticator app.",
            )

        self.logger.error("login_unknown_mfa_method", user_id=user.id)
        raise ServerError("unsupported MFA configuration")

    def authenticate(
        self, session_token: str, required_roles: Optional[Iterable[Role | str]] = None
    ) -> AuthContext:
        claims = self.tokens.verify(session_token, Scope.SESSION)
        user = self.store.get_user(claims.get("sub") or "")
        if not user:
            raise TokenInvalidError("principal no longer exists")
        if user.status is UserStatus.DISABLED:
            raise ForbiddenError("account is disabled", detail={"status": user.status.value})
        if required_roles is not None:
            allowed = {Role(role) for role in required_roles}
            if user.role not in allowed:
                self.logger.warning(
                    "role_not_permitted", user_id=user.id, role=user.role.value
                )
                raise ForbiddenError(
                    "role not permitted", detail={"role": user.role.value}
                )
        return AuthContext(
            user_id=user.id, role=user.role, organization_id=user.organization_id
        )

    def get_inviter(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def list_users(self, ctx: AuthContext, limit: int = 100) -> List[dict[str, Any]]:
        if ctx.role not in ADMIN_ROLES:
            raise ForbiddenError("role not permitted", detail={"role": ctx.role.value})
        return [user.public_profile() for user in self.store.list_users(limit=limit)]
