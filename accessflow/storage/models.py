from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of principal roles."""

    SUPER_ADMIN = "super_admin"
    SITE_ADMIN = "site_admin"
    OPERATOR = "operator"
    CLIENT_ADMIN = "client_admin"
    CLIENT_USER = "client_user"


class UserStatus(str, Enum):
    INVITED = "invited"
    ACTIVE = "active"
    DISABLED = "disabled"


class MfaMethod(str, Enum):
    NONE = "none"
    OTP = "otp"
    TOTP = "totp"


@dataclass
class MfaState:
    method: MfaMethod = MfaMethod.NONE
    # TOTP shared secret (base32); encrypted at rest by the store
    secret: Optional[str] = None
    # Emailed one-time code and its absolute expiry
    otp_code: Optional[str] = None
    otp_expires_at: Optional[datetime] = None


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str
    role: Role = Role.CLIENT_USER
    status: UserStatus = UserStatus.ACTIVE
    organization_id: Optional[str] = None
    invited_by: Optional[str] = None
    mfa: MfaState = field(default_factory=MfaState)
    reset_token: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def public_profile(self) -> dict:
        """Fields safe to return to clients."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "status": self.status.value,
            "organization_id": self.organization_id,
            "mfa": {"method": self.mfa.method.value},
        }


@dataclass
class Organization:
    id: str
    name: str
    client_admin_id: Optional[str] = None
    user_ids: List[str] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Invitation:
    id: str
    email: str
    role: Role
    invited_by: str
    token: str
    expires_at: datetime
    organization_id: Optional[str] = None
    accepted: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at
