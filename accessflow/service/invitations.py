from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import urlencode

from accessflow.config import Settings
from accessflow.logging import get_logger, redact_email
from accessflow.service.email import (
    Notifier,
    dispatch_best_effort,
    invitation_message,
    welcome_message,
)
from accessflow.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InviteNotFoundError,
)
from accessflow.service.passwords import hash_password
from accessflow.service.roles import can_invite
from accessflow.service.tokens import Scope, TokenIssuer
from accessflow.storage.errors import ConstraintViolation
from accessflow.storage.models import Invitation, Organization, Role, User, UserStatus

if TYPE_CHECKING:
    from accessflow.service.auth import AuthStore

logger = get_logger(__name__)


@dataclass
class InviteResult:
    invitation: Invitation
    invite_link: str
    organization: Optional[Organization] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "invite_id": self.invitation.id,
            "email": self.invitation.email,
            "role": self.invitation.role.value,
            "organization": self.organization.name if self.organization else None,
            "invite_link": self.invite_link,
            "expires_at": self.invitation.expires_at.isoformat(),
        }


@dataclass
class AcceptResult:
    user: User
    setup_token: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "user": self.user.public_profile(),
            "setup_token": self.setup_token,
            "message": "Invite accepted. Please choose an MFA method before logging in.",
        }


class InvitationService:
    """Invitation creation and acceptance, including implicit organization provisioning."""

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

    def _invite_link(self, token: str) -> str:
        base = self.settings.frontend_url.rstrip("/")
        return f"{base}/accept-invite?{urlencode({'token': token})}"

    def _resolve_organization(
        self, inviter: User, role: Role, organization_name: Optional[str]
    ) -> Optional[Organization]:
        if role is Role.CLIENT_ADMIN:
            if not organization_name:
                raise BadRequestError(
                    "organization name is required for client_admin invites",
                    detail={"field": "organization_name"},
                )
            existing = self.store.get_organization_by_name(organization_name)
            if existing and existing.client_admin_id:
                raise ConflictError("organization already has a client admin")
            if existing:
                if self.store.find_open_invite_for_organization(
                    existing.id, Role.CLIENT_ADMIN, self._now()
                ):
                    raise ConflictError("organization already has a pending client admin invite")
                return existing
            org, created = self.store.get_or_create_organization(
                organization_name, created_by=inviter.id
            )
            if created:
                logger.info("organization_created", organization_id=org.id, created_by=inviter.id)
            return org
        if role is Role.CLIENT_USER:
            # Always the inviter's own organization; the requested name is ignored
            org = self.store.get_organization_by_admin(inviter.id)
            if not org:
                raise ConflictError("inviter has no organization")
            return org
        return None

    async def create_invite(
        self,
        inviter: User,
        email: str,
        role: Role | str,
        organization_name: Optional[str] = None,
    ) -> InviteResult:
        if not email or not role:
            raise BadRequestError("email and role are required")
        try:
            target_role = Role(role)
        except ValueError:
            target_role = None
        if target_role is None or not can_invite(inviter.role, target_role):
            logger.warning(
                "invite_forbidden",
                inviter_id=inviter.id,
                inviter_role=inviter.role.value,
                target_role=str(role),
            )
            raise ForbiddenError("not authorized to invite this role")

        if self.store.get_user_by_email(email):
            raise ConflictError("user already exists")

        organization = self._resolve_organization(inviter, target_role, organization_name)
        token = self.tokens.issue(
            None,
            Scope.INVITE,
            {
                "email": email,
                "role": target_role.value,
                "organization_name": organization.name if organization else None,
            },
        )
        invitation = self.store.create_invite(
            email,
            target_role,
            inviter.id,
            token,
            self._now() + timedelta(hours=self.settings.invite_acceptance_window_hours),
            organization_id=organization.id if organization else None,
        )
        link = self._invite_link(token)
        logger.info(
            "invite_created",
            invite_id=invitation.id,
            inviter_id=inviter.id,
            role=target_role.value,
            organization_id=invitation.organization_id,
        )

        subject, body = invitation_message(
            target_role.value, organization.name if organization else None, link
        )
        await dispatch_best_effort(self.notifier, email, subject, body, event="invitation")
        return InviteResult(invitation=invitation, invite_link=link, organization=organization)

    def _link_organization(self, user: User, role: Role, organization_name: str) -> User:
        org, created = self.store.get_or_create_organization(organization_name)
        if created:
            logger.info("organization_created", organization_id=org.id, created_by=None)
        if role is Role.CLIENT_ADMIN:
            if org.client_admin_id and org.client_admin_id != user.id:
                raise ConflictError("organization already has a client admin")
            org.client_admin_id = user.id
        elif role is Role.CLIENT_USER and user.id not in org.user_ids:
            org.user_ids.append(user.id)
        user.organization_id = org.id
        saved = self.store.save_user(user)
        self.store.save_organization(org)
        return saved

    async def accept_invite(self, token: str, name: str, password: str) -> AcceptResult:
        if not name or not password:
            raise BadRequestError("name and password are required")
        claims = self.tokens.verify(token, Scope.INVITE)
        email = claims.get("email")
        organization_name = claims.get("organization_name")
        try:
            role = Role(claims.get("role"))
        except ValueError:
            raise InviteNotFoundError("invalid or expired invite") from None

        invitation = self.store.find_pending_invite(email or "", token)
        # The stored row carries a shorter acceptance window than the token itself
        if not invitation or invitation.is_expired(self._now()):
            logger.warning("invite_not_found", email=redact_email(email or ""))
            raise InviteNotFoundError("invalid or expired invite")

        if self.store.get_user_by_email(email):
            raise ConflictError("user with this email already exists")
        if role is Role.CLIENT_ADMIN and organization_name:
            org = self.store.get_organization_by_name(organization_name)
            if org and org.client_admin_id:
                raise ConflictError("organization already has a client admin")

        try:
            user = self.store.create_user(
                email,
                name,
                hash_password(password),
                role=role,
                status=UserStatus.ACTIVE,
                invited_by=invitation.invited_by,
            )
        except ConstraintViolation as exc:
            raise ConflictError("user with this email already exists") from exc

        if organization_name:
            user = self._link_organization(user, role, organization_name)

        invitation.accepted = True
        self.store.save_invite(invitation)

        setup_token = self.tokens.issue(user.id, Scope.SETUP)
        logger.info(
            "invite_accepted",
            invite_id=invitation.id,
            user_id=user.id,
            role=role.value,
            organization_id=user.organization_id,
        )
        subject, body = welcome_message(name)
        await dispatch_best_effort(self.notifier, email, subject, body, event="welcome")
        return AcceptResult(user=user, setup_token=setup_token)
