"""Audience tokens and the visibility checks that interpret them.

Tokens are ``public``, ``followers``, ``user:{id}``, ``context:{id}`` and
``context:{id}:{modifier}``. Anything else parses as ``unknown`` and never
matches a viewer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence

from .errors import BadRequest
from .memberships import MembershipStatus
from .roles import MODERATION_ROLES, ROLE_MANAGER_ROLES, Role

if TYPE_CHECKING:  # pragma: no cover
    from .activities import Activity
    from .contexts import SQLiteContextStore
    from .follows import SQLiteFollowStore
    from .memberships import Membership, SQLiteMembershipStore
    from .plugins import PluginRegistry


PUBLIC = "public"
FOLLOWERS = "followers"
USER_PREFIX = "user:"
CONTEXT_PREFIX = "context:"

MODIFIER_ADMINS = "admins"
MODIFIER_MODERATORS = "moderators"
MODIFIER_ROLE_PREFIX = "role:"


@dataclass(frozen=True)
class ParsedAddress:
    kind: str
    raw: str
    id: Optional[str] = None
    modifier: Optional[str] = None


def parse_address(token: str) -> ParsedAddress:
    if token == PUBLIC:
        return ParsedAddress("public", token)
    if token == FOLLOWERS:
        return ParsedAddress("followers", token)
    if token.startswith(USER_PREFIX):
        user_id = token[len(USER_PREFIX) :]
        if user_id:
            return ParsedAddress("user", token, id=user_id)
        return ParsedAddress("unknown", token)
    if token.startswith(CONTEXT_PREFIX):
        remainder = token[len(CONTEXT_PREFIX) :]
        context_id, sep, modifier = remainder.partition(":")
        if not context_id or (sep and not modifier):
            return ParsedAddress("unknown", token)
        return ParsedAddress("context", token, id=context_id, modifier=modifier or None)
    return ParsedAddress("unknown", token)


def public() -> str:
    return PUBLIC


def followers() -> str:
    return FOLLOWERS


def user(user_id: str) -> str:
    return f"{USER_PREFIX}{user_id}"


def context(context_id: str) -> str:
    return f"{CONTEXT_PREFIX}{context_id}"


def context_admins(context_id: str) -> str:
    return f"{CONTEXT_PREFIX}{context_id}:{MODIFIER_ADMINS}"


def context_moderators(context_id: str) -> str:
    return f"{CONTEXT_PREFIX}{context_id}:{MODIFIER_MODERATORS}"


def context_role(context_id: str, role: Role | str) -> str:
    value = role.value if isinstance(role, Role) else role
    return f"{CONTEXT_PREFIX}{context_id}:{MODIFIER_ROLE_PREFIX}{value}"


def is_public_address(addresses: Iterable[str]) -> bool:
    return PUBLIC in addresses


def is_followers_address(addresses: Iterable[str]) -> bool:
    return FOLLOWERS in addresses


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


def extract_user_ids(addresses: Iterable[str]) -> List[str]:
    return _unique(p.id for p in map(parse_address, addresses) if p.kind == "user" and p.id)


def extract_context_ids(addresses: Iterable[str]) -> List[str]:
    return _unique(p.id for p in map(parse_address, addresses) if p.kind == "context" and p.id)


def address_targets_user(addresses: Iterable[str], user_id: str) -> bool:
    return user(user_id) in addresses


def address_targets_context(addresses: Iterable[str], context_id: str) -> bool:
    return any(p.kind == "context" and p.id == context_id for p in map(parse_address, addresses))


def combine_addresses(*groups: Iterable[str]) -> List[str]:
    return _unique(token for group in groups for token in group)


def validate_addresses(addresses: Iterable[str]) -> List[str]:
    """Return the tokens unchanged or raise ``BadRequest`` naming the first bad one."""

    tokens = list(addresses)
    for token in tokens:
        if not isinstance(token, str):
            raise BadRequest("address tokens must be strings")
        parsed = parse_address(token)
        if parsed.kind == "unknown":
            raise BadRequest(f"invalid address: {token}")
        if parsed.modifier and parsed.modifier.startswith(MODIFIER_ROLE_PREFIX):
            role_name = parsed.modifier[len(MODIFIER_ROLE_PREFIX) :]
            if role_name not in Role.__members__:
                raise BadRequest(f"invalid address: {token}")
    return tokens


@dataclass(frozen=True)
class VisibilityResult:
    visible: bool
    reason: str


class AddressResolver:
    """Evaluates an activity's audience tokens against one viewer."""

    def __init__(
        self,
        registry: "PluginRegistry",
        memberships: "SQLiteMembershipStore",
        contexts: "SQLiteContextStore",
        follows: "SQLiteFollowStore",
    ) -> None:
        self._registry = registry
        self._memberships = memberships
        self._contexts = contexts
        self._follows = follows

    async def can_see_activity(self, activity: "Activity", user_id: str | None) -> bool:
        result = await self.can_see_activity_with_reason(activity, user_id)
        return result.visible

    async def can_see_activity_with_reason(self, activity: "Activity", user_id: str | None) -> VisibilityResult:
        addresses = [*activity.to, *activity.cc]
        if PUBLIC in addresses:
            return VisibilityResult(True, "Public activity")
        if user_id is None:
            return VisibilityResult(False, "Authentication required for non-public activities")
        if activity.actor_id == user_id:
            return VisibilityResult(True, "Activity owner")

        for token in addresses:
            parsed = parse_address(token)
            if parsed.kind == "user" and parsed.id == user_id:
                return VisibilityResult(True, "Direct recipient")
            if parsed.kind == "followers" and self._follows.is_following(user_id, activity.actor_id):
                return VisibilityResult(True, "Following actor")
            if parsed.kind == "context" and parsed.id:
                if await self.can_access_context_address(user_id, parsed.id, parsed.modifier):
                    if parsed.modifier:
                        return VisibilityResult(True, f"Context member with modifier: {parsed.modifier}")
                    return VisibilityResult(True, "Context member")
        return VisibilityResult(False, "No matching address found")

    async def filter_visible(self, activities: Sequence["Activity"], user_id: str | None) -> List["Activity"]:
        visible = []
        for activity in activities:
            if await self.can_see_activity(activity, user_id):
                visible.append(activity)
        return visible

    async def can_access_context_address(self, user_id: str, context_id: str, modifier: str | None) -> bool:
        membership = self._memberships.get(context_id, user_id)
        if membership is None or not membership.approved:
            return False
        if modifier is None:
            return True
        builtin = self._match_builtin_modifier(membership, modifier)
        if builtin is not None:
            return builtin

        context = self._contexts.get(context_id)
        if context is None:
            return False
        pattern = self._registry.find_address_pattern(context.features, modifier)
        if pattern is None:
            return False
        return await pattern.resolver(context_id, user_id)

    async def resolve_context_recipients(self, context_id: str, modifier: str | None = None) -> List[str]:
        """List the approved members a ``context:{id}[:{modifier}]`` token reaches."""

        members = self._memberships.list(context_id, status=MembershipStatus.APPROVED)
        if modifier is None:
            return [m.user_id for m in members]

        recipients = []
        pattern = None
        for membership in members:
            builtin = self._match_builtin_modifier(membership, modifier)
            if builtin is None:
                if pattern is None:
                    context = self._contexts.get(context_id)
                    if context is None:
                        return []
                    pattern = self._registry.find_address_pattern(context.features, modifier)
                    if pattern is None:
                        return []
                if await pattern.resolver(context_id, membership.user_id):
                    recipients.append(membership.user_id)
            elif builtin:
                recipients.append(membership.user_id)
        return recipients

    @staticmethod
    def _match_builtin_modifier(membership: "Membership", modifier: str) -> bool | None:
        if modifier == MODIFIER_ADMINS:
            return membership.role in ROLE_MANAGER_ROLES
        if modifier == MODIFIER_MODERATORS:
            return membership.role in MODERATION_ROLES
        if modifier.startswith(MODIFIER_ROLE_PREFIX):
            return membership.role.value == modifier[len(MODIFIER_ROLE_PREFIX) :]
        return None
