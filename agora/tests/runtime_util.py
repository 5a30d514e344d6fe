from __future__ import annotations

from agora.app import Runtime
from agora.config import AgoraConfig
from agora.contexts import Context, ContextKind, JoinPolicy, Visibility
from agora.memberships import Membership, MembershipStatus
from agora.roles import Role


def build_runtime(**overrides) -> Runtime:
    return Runtime(AgoraConfig().with_overrides(**overrides))


async def make_context(
    runtime: Runtime,
    owner_id: str = "owner",
    *,
    name: str = "Reptile Keepers",
    kind: ContextKind = ContextKind.GROUP,
    visibility: Visibility = Visibility.PUBLIC,
    join_policy: JoinPolicy = JoinPolicy.OPEN,
    plugin_id: str | None = None,
    plugin_data: dict | None = None,
) -> Context:
    if plugin_id is None:
        plugin_id = "event" if kind == ContextKind.EVENT else "group"
    context, _ = await runtime.contexts.create(
        owner_id=owner_id,
        kind=kind,
        name=name,
        plugin_id=plugin_id,
        plugin_data=plugin_data,
        visibility=visibility,
        join_policy=join_policy,
    )
    return context


def add_member(
    runtime: Runtime,
    context_id: str,
    user_id: str,
    role: Role = Role.MEMBER,
    status: MembershipStatus = MembershipStatus.APPROVED,
    permissions: dict | None = None,
) -> Membership:
    return runtime.membership_store.insert(context_id, user_id, role=role, status=status, permissions=permissions)
