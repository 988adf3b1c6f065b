from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from accessflow.logging import get_logger

logger = get_logger(__name__)

_hasher = PasswordHasher(type=Type.ID)

# Verified against when the account does not exist so both failure paths cost the same
_DUMMY_HASH = _hasher.hash("accessflow-dummy-password")


def hash_password(password: str) -> str:
    """Hash a password with argon2id."""
    return _hasher.hash(password)


def verify_password(stored_hash: str | None, password: str) -> bool:
    if not password:
        return False
    target = stored_hash or _DUMMY_HASH
    try:
        matched = _hasher.verify(target, password)
    except VerificationError:
        return False
    except InvalidHash:
        logger.warning("password_hash_invalid")
        return False
    return bool(matched and stored_hash)
