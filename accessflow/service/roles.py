from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Union

from accessflow.storage.models import Role

# Read literally: not reflexive, not transitive.
INVITE_PERMISSIONS: Mapping[Role, frozenset[Role]] = MappingProxyType(
    {
        Role.SUPER_ADMIN: frozenset({Role.SITE_ADMIN, Role.OPERATOR, Role.CLIENT_ADMIN}),
        Role.SITE_ADMIN: frozenset({Role.CLIENT_ADMIN, Role.OPERATOR}),
        Role.OPERATOR: frozenset({Role.CLIENT_ADMIN}),
        Role.CLIENT_ADMIN: frozenset({Role.CLIENT_USER}),
    }
)

# Roles that always belong to an organization
ORGANIZATION_ROLES = frozenset({Role.CLIENT_ADMIN, Role.CLIENT_USER})

# Roles allowed to list every principal
ADMIN_ROLES = frozenset({Role.SUPER_ADMIN, Role.SITE_ADMIN})


def _coerce(role: Union[Role, str]) -> Role | None:
    try:
        return Role(role)
    except ValueError:
        return None


def can_invite(inviter_role: Union[Role, str], target_role: Union[Role, str]) -> bool:
    inviter = _coerce(inviter_role)
    target = _coerce(target_role)
    if inviter is None or target is None:
        return False
    return target in INVITE_PERMISSIONS.get(inviter, frozenset())
