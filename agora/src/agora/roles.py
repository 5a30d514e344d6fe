"""Role hierarchy and the default core permission table."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List

from .errors import BadRequest


class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"
    MEMBER = "MEMBER"
    GUEST = "GUEST"


# Lower index = higher privilege.
ROLE_HIERARCHY: tuple[Role, ...] = (
    Role.OWNER,
    Role.ADMIN,
    Role.MODERATOR,
    Role.MEMBER,
    Role.GUEST,
)

CORE_PERMISSIONS: FrozenSet[str] = frozenset(
    {
        "context.view",
        "context.edit",
        "context.delete",
        "context.manage_members",
        "activity.create",
        "activity.edit_own",
        "activity.delete_own",
        "activity.delete_any",
        "activity.pin",
        "member.invite",
        "member.approve",
        "member.ban",
        "member.update_role",
    }
)

ROLE_PERMISSIONS: Dict[Role, tuple[str, ...]] = {
    Role.OWNER: (
        "context.view",
        "context.edit",
        "context.delete",
        "context.manage_members",
        "activity.create",
        "activity.edit_own",
        "activity.delete_own",
        "activity.delete_any",
        "activity.pin",
        "member.invite",
        "member.approve",
        "member.ban",
        "member.update_role",
    ),
    Role.ADMIN: (
        "context.view",
        "context.edit",
        "context.manage_members",
        "activity.create",
        "activity.edit_own",
        "activity.delete_own",
        "activity.delete_any",
        "activity.pin",
        "member.invite",
        "member.approve",
        "member.ban",
        "member.update_role",
    ),
    Role.MODERATOR: (
        "context.view",
        "activity.create",
        "activity.edit_own",
        "activity.delete_own",
        "activity.delete_any",
        "member.approve",
        "member.ban",
    ),
    Role.MEMBER: (
        "context.view",
        "activity.create",
        "activity.edit_own",
        "activity.delete_own",
    ),
    Role.GUEST: ("context.view",),
}

# Roles allowed to run the core moderation transitions (approve, reject, ban, unban).
MODERATION_ROLES: FrozenSet[Role] = frozenset({Role.OWNER, Role.ADMIN, Role.MODERATOR})
ROLE_MANAGER_ROLES: FrozenSet[Role] = frozenset({Role.OWNER, Role.ADMIN})


def parse_role(value: str | Role) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).upper())
    except ValueError:
        raise BadRequest(f"unknown role: {value}") from None


def hierarchy_index(role: Role) -> int:
    return ROLE_HIERARCHY.index(role)


def role_has_permission(role: Role, permission: str) -> bool:
    return permission in ROLE_PERMISSIONS[role]


def is_higher_role(role_a: Role, role_b: Role) -> bool:
    return hierarchy_index(role_a) < hierarchy_index(role_b)


def is_equal_or_higher_role(role_a: Role, role_b: Role) -> bool:
    return hierarchy_index(role_a) <= hierarchy_index(role_b)


def get_roles_at_or_above(role: Role) -> List[Role]:
    return list(ROLE_HIERARCHY[: hierarchy_index(role) + 1])


def get_roles_below(role: Role) -> List[Role]:
    return list(ROLE_HIERARCHY[hierarchy_index(role) + 1 :])
