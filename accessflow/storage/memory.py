from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import secrets
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from accessflow.logging import get_logger, redact_email
from accessflow.storage.errors import ConstraintViolation
from accessflow.storage.models import (
    Invitation,
    MfaMethod,
    MfaState,
    Organization,
    Role,
    User,
    UserStatus,
)


class MemoryStore:
    """In-memory document store for principals, organizations and invitations.

    Entities handed out are detached copies; callers persist changes through
    the ``save_*`` methods. When ``fs_root`` is given the whole state is
    mirrored to ``<fs_root>/state/memory_store.json`` after every write.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.organizations: Dict[str, Organization] = {}
        self.invitations: Dict[str, Invitation] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self.persist = bool(persist and self.fs_root is not None)
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if self.persist:
            self._load_state()

    # -- encryption -------------------------------------------------------

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material and self.fs_root is not None:
            key_path = self.fs_root / ".mfa_key"
            if key_path.exists():
                material = key_path.read_text().strip()
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        if not material:
            # Secrets only need to outlive this process
            material = secrets.token_urlsafe(64)
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _detach_user(self, stored: Optional[User]) -> Optional[User]:
        if stored is None:
            return None
        user = copy.deepcopy(stored)
        user.mfa.secret = self._decrypt_secret(stored.mfa.secret)
        return user

    def _attach_user(self, user: User) -> User:
        stored = copy.deepcopy(user)
        stored.mfa.secret = self._encrypt_secret(user.mfa.secret)
        return stored

    # -- principals -------------------------------------------------------

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
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                password_hash=password_hash,
                role=Role(role),
                status=UserStatus(status),
                organization_id=organization_id,
                invited_by=invited_by,
            )
            self.users[user.id] = self._attach_user(user)
            self._persist_state()
            self.logger.debug("user_created", user_id=user.id, email=redact_email(email))
            return self._detach_user(self.users[user.id])

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._detach_user(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            stored = next((u for u in self.users.values() if u.email == email), None)
            return self._detach_user(stored)

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            stored = next(
                (u for u in self.users.values() if u.reset_token == token), None
            )
            return self._detach_user(stored)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [self._detach_user(u) for u in ordered[:limit]]

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            if any(
                other.email == user.email and other.id != user.id
                for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = self._attach_user(user)
            self._persist_state()
            return self._detach_user(self.users[user.id])

    # -- organizations ----------------------------------------------------

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            return copy.deepcopy(org) if org else None

    def get_organization_by_name(self, name: str) -> Optional[Organization]:
        with self._data_lock:
            org = next((o for o in self.organizations.values() if o.name == name), None)
            return copy.deepcopy(org) if org else None

    def get_organization_by_admin(self, user_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = next(
                (o for o in self.organizations.values() if o.client_admin_id == user_id),
                None,
            )
            return copy.deepcopy(org) if org else None

    def get_or_create_organization(
        self, name: str, *, created_by: Optional[str] = None
    ) -> tuple[Organization, bool]:
        """Fetch the organization named ``name`` or create it under one lock.

        Returns the organization and whether it was created by this call.
        """
        if not name:
            raise ConstraintViolation("organization name required", {"field": "name"})
        with self._data_lock:
            existing = next(
                (o for o in self.organizations.values() if o.name == name), None
            )
            if existing:
                return copy.deepcopy(existing), False
            org = Organization(id=str(uuid.uuid4()), name=name, created_by=created_by)
            self.organizations[org.id] = org
            self._persist_state()
            return copy.deepcopy(org), True

    def save_organization(self, org: Organization) -> Organization:
        with self._data_lock:
            if org.id not in self.organizations:
                raise ConstraintViolation("organization not found", {"organization_id": org.id})
            if any(
                other.name == org.name and other.id != org.id
                for other in self.organizations.values()
            ):
                raise ConstraintViolation("organization name already exists", {"field": "name"})
            self.organizations[org.id] = copy.deepcopy(org)
            self._persist_state()
            return copy.deepcopy(org)

    # -- invitations ------------------------------------------------------

    def create_invite(
        self,
        email: str,
        role: Role,
        invited_by: str,
        token: str,
        expires_at: datetime,
        *,
        organization_id: Optional[str] = None,
    ) -> Invitation:
        with self._data_lock:
            invite = Invitation(
                id=str(uuid.uuid4()),
                email=email,
                role=Role(role),
                invited_by=invited_by,
                token=token,
                expires_at=expires_at,
                organization_id=organization_id,
            )
            self.invitations[invite.id] = invite
            self._persist_state()
            return copy.deepcopy(invite)

    def find_pending_invite(self, email: str, token: str) -> Optional[Invitation]:
        """Exact match on email and token among invitations not yet accepted."""
        with self._data_lock:
            invite = next(
                (
                    inv
                    for inv in self.invitations.values()
                    if inv.email == email and inv.token == token and not inv.accepted
                ),
                None,
            )
            return copy.deepcopy(invite) if invite else None

    def find_open_invite_for_organization(
        self, organization_id: str, role: Role, now: datetime
    ) -> Optional[Invitation]:
        """Unaccepted, unexpired invitation for ``role`` into the organization."""
        with self._data_lock:
            invite = next(
                (
                    inv
                    for inv in self.invitations.values()
                    if inv.organization_id == organization_id
                    and inv.role is role
                    and not inv.accepted
                    and not inv.is_expired(now)
                ),
                None,
            )
            return copy.deepcopy(invite) if invite else None

    def save_invite(self, invite: Invitation) -> Invitation:
        with self._data_lock:
            if invite.id not in self.invitations:
                raise ConstraintViolation("invitation not found", {"invite_id": invite.id})
            self.invitations[invite.id] = copy.deepcopy(invite)
            self._persist_state()
            return copy.deepcopy(invite)

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "role": user.role.value,
            "status": user.status.value,
            "organization_id": user.organization_id,
            "invited_by": user.invited_by,
            "mfa": {
                "method": user.mfa.method.value,
                "secret": user.mfa.secret,
                "otp_code": user.mfa.otp_code,
                "otp_expires_at": self._serialize_datetime(user.mfa.otp_expires_at),
            },
            "reset_token": user.reset_token,
            "reset_expires_at": self._serialize_datetime(user.reset_expires_at),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        mfa = data.get("mfa") or {}
        return User(
            id=data["id"],
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data["password_hash"],
            role=Role(data["role"]),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            organization_id=data.get("organization_id"),
            invited_by=data.get("invited_by"),
            mfa=MfaState(
                method=MfaMethod(mfa.get("method", MfaMethod.NONE.value)),
                secret=mfa.get("secret"),
                otp_code=mfa.get("otp_code"),
                otp_expires_at=self._deserialize_datetime(mfa.get("otp_expires_at")),
            ),
            reset_token=data.get("reset_token"),
            reset_expires_at=self._deserialize_datetime(data.get("reset_expires_at")),
            created_at=self._deserialize_datetime(data.get("created_at")),
        )

    def _serialize_organization(self, org: Organization) -> dict:
        return {
            "id": org.id,
            "name": org.name,
            "client_admin_id": org.client_admin_id,
            "user_ids": list(org.user_ids),
            "created_by": org.created_by,
            "created_at": self._serialize_datetime(org.created_at),
        }

    def _deserialize_organization(self, data: dict) -> Organization:
        return Organization(
            id=data["id"],
            name=data["name"],
            client_admin_id=data.get("client_admin_id"),
            user_ids=list(data.get("user_ids") or []),
            created_by=data.get("created_by"),
            created_at=self._deserialize_datetime(data.get("created_at")),
        )

    def _serialize_invitation(self, invite: Invitation) -> dict:
        return {
            "id": invite.id,
            "email": invite.email,
            "role": invite.role.value,
            "invited_by": invite.invited_by,
            "token": invite.token,
            "expires_at": self._serialize_datetime(invite.expires_at),
            "organization_id": invite.organization_id,
            "accepted": invite.accepted,
            "created_at": self._serialize_datetime(invite.created_at),
        }

    def _deserialize_invitation(self, data: dict) -> Invitation:
        return Invitation(
            id=data["id"],
            email=data["email"],
            role=Role(data["role"]),
            invited_by=data["invited_by"],
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            organization_id=data.get("organization_id"),
            accepted=bool(data.get("accepted")),
            created_at=self._deserialize_datetime(data.get("created_at")),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state: Dict[str, Any] = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "organizations": [
                self._serialize_organization(o) for o in self.organizations.values()
            ],
            "invitations": [
                self._serialize_invitation(i) for i in self.invitations.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        with self._data_lock:
            self.users = {
                u["id"]: self._deserialize_user(u) for u in state.get("users", [])
            }
            self.organizations = {
                o["id"]: self._deserialize_organization(o)
                for o in state.get("organizations", [])
            }
            self.invitations = {
                i["id"]: self._deserialize_invitation(i)
                for i in state.get("invitations", [])
            }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            organizations=len(self.organizations),
            invitations=len(self.invitations),
        )
        return True
