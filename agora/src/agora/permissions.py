"""Permission resolution for context members.

``PermissionResolver`` is a pure function of a membership snapshot and the
plugin registry; it takes no locks and does no I/O. ``PermissionService``
loads the membership from the store and delegates to the resolver.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Iterator, List, Optional

from .errors import BadRequest
from .roles import CORE_PERMISSIONS, ROLE_PERMISSIONS, Role

if TYPE_CHECKING:  # pragma: no cover
    from .contexts import SQLiteContextStore
    from .memberships import Membership, SQLiteMembershipStore
    from .plugins import PluginRegistry


ACTIVITY_ACTIONS = ("edit", "delete", "pin")


class PermissionOverrides(Mapping):
    """Read-only permission -> bool map built from the stored override JSON.

    Entries whose value is not a boolean are dropped.
    """

    def __init__(self, raw: Optional[Mapping[str, Any]] = None) -> None:
        self._grants = {
            str(key): value for key, value in (raw or {}).items() if isinstance(value, bool)
        }

    def __getitem__(self, key: str) -> bool:
        return self._grants[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._grants)

    def __len__(self) -> int:
        return len(self._grants)

    def __repr__(self) -> str:
        return f"PermissionOverrides({self._grants!r})"


@dataclass(frozen=True)
class MembershipSnapshot:
    role: Role
    status: str
    permissions: Optional[PermissionOverrides] = None

    @classmethod
    def from_membership(cls, membership: "Membership") -> "MembershipSnapshot":
        overrides = PermissionOverrides(membership.permissions) if membership.permissions is not None else None
        return cls(role=membership.role, status=membership.status.value, permissions=overrides)


@dataclass(frozen=True)
class PermissionContext:
    user_id: str
    context_id: str
    membership: Optional[MembershipSnapshot] = None


@dataclass(frozen=True)
class PermissionResult:
    allowed: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"allowed": self.allowed}
        if self.reason is not None:
            body["reason"] = self.reason
        return body


def is_plugin_permission(permission: str) -> bool:
    return permission.startswith("plugin.")


def is_core_permission(permission: str) -> bool:
    return permission in CORE_PERMISSIONS


class PermissionResolver:
    def __init__(self, registry: "PluginRegistry") -> None:
        self._registry = registry

    def role_has_plugin_permission(self, role: Role, permission: str) -> bool:
        parts = permission.split(".")
        if len(parts) != 3 or parts[0] != "plugin":
            return False
        _, plugin_id, permission_id = parts
        plugin = self._registry.get(plugin_id)
        if plugin is None:
            return False
        definition = plugin.find_permission(permission_id)
        if definition is None:
            return False
        return role in definition.default_roles

    def check_permission(self, ctx: PermissionContext, permission: str) -> bool:
        membership = ctx.membership
        if membership is None or membership.status != "APPROVED":
            return False
        if membership.permissions is not None and permission in membership.permissions:
            return membership.permissions[permission]
        if is_plugin_permission(permission):
            return self.role_has_plugin_permission(membership.role, permission)
        return permission in ROLE_PERMISSIONS[membership.role]

    def get_permissions_for_role(self, role: Role, enabled_plugins: Iterable[str] = ()) -> List[str]:
        permissions = list(ROLE_PERMISSIONS[role])
        for plugin_id in enabled_plugins:
            plugin = self._registry.get(plugin_id)
            if plugin is None:
                continue
            for definition in plugin.permissions:
                if role in definition.default_roles:
                    permissions.append(plugin.permission_token(definition.id))
        return permissions

    def get_membership_permissions(self, ctx: PermissionContext, enabled_plugins: Iterable[str] = ()) -> List[str]:
        membership = ctx.membership
        if membership is None or membership.status != "APPROVED":
            return []
        permissions = self.get_permissions_for_role(membership.role, enabled_plugins)
        if membership.permissions is None:
            return permissions
        for permission, granted in membership.permissions.items():
            if granted and permission not in permissions:
                permissions.append(permission)
            elif not granted and permission in permissions:
                permissions.remove(permission)
        return permissions


class PermissionService:
    """Membership-backed permission checks with human-readable denial reasons."""

    def __init__(
        self,
        resolver: PermissionResolver,
        memberships: "SQLiteMembershipStore",
        contexts: "SQLiteContextStore",
    ) -> None:
        self.resolver = resolver
        self._memberships = memberships
        self._contexts = contexts

    async def has_permission_with_reason(self, user_id: str, context_id: str, permission: str) -> PermissionResult:
        membership = self._memberships.get(context_id, user_id)
        if membership is None:
            return PermissionResult(False, "Not a member of this context")
        if not membership.approved:
            return PermissionResult(False, f"Membership status is {membership.status.value}")

        ctx = PermissionContext(
            user_id=user_id,
            context_id=context_id,
            membership=MembershipSnapshot.from_membership(membership),
        )
        if self.resolver.check_permission(ctx, permission):
            return PermissionResult(True)
        return PermissionResult(False, f"Role {membership.role.value} lacks permission {permission}")

    async def has_permission(self, user_id: str, context_id: str, permission: str) -> bool:
        result = await self.has_permission_with_reason(user_id, context_id, permission)
        return result.allowed

    async def has_all_permissions(self, user_id: str, context_id: str, permissions: Iterable[str]) -> bool:
        for permission in permissions:
            if not await self.has_permission(user_id, context_id, permission):
                return False
        return True

    async def has_any_permission(self, user_id: str, context_id: str, permissions: Iterable[str]) -> bool:
        for permission in permissions:
            if await self.has_permission(user_id, context_id, permission):
                return True
        return False

    async def get_permissions_from_db(self, user_id: str, context_id: str) -> List[str]:
        membership = self._memberships.get(context_id, user_id)
        if membership is None or not membership.approved:
            return []
        context = self._contexts.get(context_id)
        features = context.features if context is not None else []
        ctx = PermissionContext(
            user_id=user_id,
            context_id=context_id,
            membership=MembershipSnapshot.from_membership(membership),
        )
        return self.resolver.get_membership_permissions(ctx, features)

    async def can_act_on_activity(
        self, user_id: str, context_id: str, activity_actor_id: str, action: str
    ) -> PermissionResult:
        is_author = user_id == activity_actor_id
        if action == "edit":
            if is_author:
                return await self.has_permission_with_reason(user_id, context_id, "activity.edit_own")
            return PermissionResult(False, "Cannot edit activities by other users")
        if action == "delete":
            permission = "activity.delete_own" if is_author else "activity.delete_any"
            return await self.has_permission_with_reason(user_id, context_id, permission)
        if action == "pin":
            return await self.has_permission_with_reason(user_id, context_id, "activity.pin")
        raise BadRequest(f"unknown activity action: {action}")
