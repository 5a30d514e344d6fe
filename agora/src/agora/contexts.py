from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .errors import BadRequest, Conflict, Forbidden, InvalidPluginData, NotFound
from .memberships import Membership, MembershipStatus, SQLiteMembershipStore
from .roles import Role
from .sessions import _now_ms, new_id
from .sqlite_backend import SQLiteBackend

if TYPE_CHECKING:  # pragma: no cover
    from .permissions import PermissionService
    from .plugins import PluginRegistry


class ContextKind(str, Enum):
    GROUP = "GROUP"
    EVENT = "EVENT"
    CONVENTION = "CONVENTION"


class Visibility(str, Enum):
    PUBLIC = "PUBLIC"
    UNLISTED = "UNLISTED"
    PRIVATE = "PRIVATE"


class JoinPolicy(str, Enum):
    OPEN = "OPEN"
    APPROVAL = "APPROVAL"
    INVITE = "INVITE"
    CLOSED = "CLOSED"


_COLUMNS = (
    "id, kind, slug, name, description, visibility, join_policy, owner_id, "
    "features_json, plugins_json, is_archived, created_at_ms"
)

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_STRIP.sub("-", name.lower()).strip("-")[:64]


@dataclass
class Context:
    id: str
    kind: ContextKind
    slug: str
    name: str
    description: str
    visibility: Visibility
    join_policy: JoinPolicy
    owner_id: str
    features: List[str] = field(default_factory=list)
    plugins: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    is_archived: bool = False
    created_at_ms: int = 0

    @property
    def is_public(self) -> bool:
        return self.visibility == Visibility.PUBLIC

    def plugin_config(self, plugin_id: str) -> Dict[str, Any]:
        config = self.plugins.get(plugin_id)
        return config if isinstance(config, dict) else {}

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "visibility": self.visibility.value,
            "join_policy": self.join_policy.value,
            "owner_id": self.owner_id,
            "features": list(self.features),
            "plugins": self.plugins,
            "is_archived": self.is_archived,
            "created_at_ms": self.created_at_ms,
        }


def _row_to_context(row: sqlite3.Row) -> Context:
    return Context(
        id=row[0],
        kind=ContextKind(row[1]),
        slug=row[2],
        name=row[3],
        description=row[4],
        visibility=Visibility(row[5]),
        join_policy=JoinPolicy(row[6]),
        owner_id=row[7],
        features=json.loads(row[8]),
        plugins=json.loads(row[9]),
        is_archived=bool(row[10]),
        created_at_ms=row[11],
    )


class SQLiteContextStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def insert(self, context: Context) -> Context:
        try:
            with self._backend.lock:
                self._backend.connection.execute(
                    f"INSERT INTO contexts ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        context.id,
                        context.kind.value,
                        context.slug,
                        context.name,
                        context.description,
                        context.visibility.value,
                        context.join_policy.value,
                        context.owner_id,
                        json.dumps(context.features),
                        json.dumps(context.plugins),
                        int(context.is_archived),
                        context.created_at_ms,
                    ),
                )
        except sqlite3.IntegrityError:
            raise Conflict("Slug is already taken") from None
        return context

    def get(self, context_id: str) -> Context | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM contexts WHERE id=?",
                (context_id,),
            ).fetchone()
        return _row_to_context(row) if row is not None else None

    def get_by_slug(self, slug: str) -> Context | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM contexts WHERE slug=?",
                (slug,),
            ).fetchone()
        return _row_to_context(row) if row is not None else None

    def slug_exists(self, slug: str) -> bool:
        with self._backend.lock:
            row = self._backend.connection.execute("SELECT 1 FROM contexts WHERE slug=?", (slug,)).fetchone()
        return row is not None

    def update_fields(self, context_id: str, **fields: Any) -> Context:
        columns = {
            "name": "name",
            "description": "description",
            "visibility": "visibility",
            "join_policy": "join_policy",
        }
        assignments = []
        params: List[Any] = []
        for key, value in fields.items():
            if value is None:
                continue
            if key not in columns:
                raise ValueError(f"unknown context field: {key}")
            assignments.append(f"{columns[key]}=?")
            params.append(value.value if isinstance(value, Enum) else value)
        if assignments:
            params.append(context_id)
            with self._backend.lock:
                self._backend.connection.execute(
                    f"UPDATE contexts SET {', '.join(assignments)} WHERE id=?",
                    params,
                )
        context = self.get(context_id)
        if context is None:
            raise NotFound("Context not found")
        return context

    def set_plugin_data(self, context_id: str, plugins: Dict[str, Dict[str, Any]]) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                "UPDATE contexts SET plugins_json=? WHERE id=?",
                (json.dumps(plugins), context_id),
            )

    def archive(self, context_id: str) -> None:
        with self._backend.lock:
            self._backend.connection.execute("UPDATE contexts SET is_archived=1 WHERE id=?", (context_id,))


@dataclass
class JoinResult:
    membership: Membership
    pending: bool


class ContextService:
    """Context lifecycle: creation with owner membership, edits, joins and leaves."""

    def __init__(
        self,
        contexts: SQLiteContextStore,
        memberships: SQLiteMembershipStore,
        registry: "PluginRegistry",
        permissions: "PermissionService",
    ) -> None:
        self._contexts = contexts
        self._memberships = memberships
        self._registry = registry
        self._permissions = permissions

    async def create(
        self,
        *,
        owner_id: str,
        kind: ContextKind,
        name: str,
        plugin_id: str,
        plugin_data: Optional[Dict[str, Any]] = None,
        description: str = "",
        visibility: Visibility = Visibility.PUBLIC,
        join_policy: JoinPolicy = JoinPolicy.OPEN,
    ) -> tuple[Context, Membership]:
        plugin = self._registry.get(plugin_id)
        if plugin is None:
            raise BadRequest(f'Plugin "{plugin_id}" not found')
        if kind.value not in plugin.context_types:
            raise BadRequest(f'Plugin "{plugin_id}" is not compatible with context type "{kind.value}"')

        data = plugin_data if plugin_data is not None else dict(plugin.default_data)
        result = await self._registry.validate_plugin_data(plugin_id, data)
        if not result.valid:
            raise InvalidPluginData(list(result.errors))
        data = self._registry.normalize_data(plugin_id, data)

        base_slug = slugify(name) or "context"
        slug = base_slug
        counter = 1
        while self._contexts.slug_exists(slug):
            slug = f"{base_slug}-{counter}"
            counter += 1

        context = self._contexts.insert(
            Context(
                id=new_id("ctx"),
                kind=kind,
                slug=slug,
                name=name,
                description=description,
                visibility=visibility,
                join_policy=join_policy,
                owner_id=owner_id,
                features=[plugin_id],
                plugins={plugin_id: data},
                created_at_ms=_now_ms(),
            )
        )
        membership = self._memberships.insert(
            context.id, owner_id, role=Role.OWNER, status=MembershipStatus.APPROVED
        )
        await self._registry.run_hook([plugin_id], "on_context_create", context, data)
        return context, membership

    async def get(self, context_id: str) -> Context:
        context = self._contexts.get(context_id)
        if context is None or context.is_archived:
            raise NotFound("Context not found")
        return context

    async def can_access(self, context_id: str, user_id: str | None) -> bool:
        context = self._contexts.get(context_id)
        if context is None:
            return False
        if context.visibility != Visibility.PRIVATE:
            return True
        if user_id is None:
            return False
        membership = self._memberships.get(context_id, user_id)
        return membership is not None and membership.approved

    async def can_view_feed(self, context_id: str, user_id: str | None) -> bool:
        """Whether ``user_id`` may follow the context's timeline: public context or approved member."""

        context = self._contexts.get(context_id)
        if context is None or context.is_archived:
            return False
        if context.is_public:
            return True
        if user_id is None:
            return False
        membership = self._memberships.get(context_id, user_id)
        return membership is not None and membership.approved

    async def update(self, context_id: str, actor_id: str, **fields: Any) -> Context:
        await self.get(context_id)
        if not await self._permissions.has_permission(actor_id, context_id, "context.edit"):
            raise Forbidden("Insufficient permissions to update context")
        return self._contexts.update_fields(context_id, **fields)

    async def update_plugin_data(
        self, context_id: str, plugin_id: str, data: Dict[str, Any], actor_id: str
    ) -> Context:
        if not await self._permissions.has_permission(actor_id, context_id, "context.edit"):
            raise Forbidden("Insufficient permissions")
        context = await self.get(context_id)
        if not self._registry.has(plugin_id):
            raise BadRequest(f'Plugin "{plugin_id}" not found')

        current = context.plugin_config(plugin_id)
        merged = {**current, **data}
        result = await self._registry.validate_plugin_data(plugin_id, merged, context)
        if not result.valid:
            raise InvalidPluginData(list(result.errors))

        plugins = dict(context.plugins)
        plugins[plugin_id] = merged
        self._contexts.set_plugin_data(context_id, plugins)
        context.plugins = plugins
        await self._registry.run_hook([plugin_id], "on_context_update", context, merged, current)
        return context

    async def archive(self, context_id: str, actor_id: str) -> None:
        context = self._contexts.get(context_id)
        if context is None:
            raise NotFound("Context not found")
        if context.owner_id != actor_id:
            raise Forbidden("Only the owner can archive this context")
        self._contexts.archive(context_id)
        context.is_archived = True
        await self._registry.run_hook(context.features, "on_context_delete", context)

    async def join(self, context_id: str, user_id: str) -> JoinResult:
        context = self._contexts.get(context_id)
        if context is None:
            raise NotFound("Context not found")
        if context.is_archived:
            raise BadRequest("Context is archived")
        if context.join_policy == JoinPolicy.CLOSED:
            raise Forbidden("Context is not accepting members")
        if context.join_policy == JoinPolicy.INVITE:
            raise Forbidden("Invite required to join")

        needs_approval = context.join_policy == JoinPolicy.APPROVAL
        status = MembershipStatus.PENDING if needs_approval else MembershipStatus.APPROVED

        existing = self._memberships.get(context_id, user_id)
        if existing is not None:
            if existing.status == MembershipStatus.APPROVED:
                raise Conflict("Already a member")
            if existing.status == MembershipStatus.PENDING:
                raise Conflict("Membership request pending")
            if existing.status == MembershipStatus.BANNED:
                raise Forbidden("You are banned from this context")
            membership = self._memberships.update(context_id, user_id, role=Role.MEMBER, status=status)
        else:
            membership = self._memberships.insert(context_id, user_id, role=Role.MEMBER, status=status)

        if membership.approved:
            await self._registry.run_hook(context.features, "on_member_join", membership, context)
        return JoinResult(membership=membership, pending=needs_approval)

    async def leave(self, context_id: str, user_id: str) -> None:
        context = self._contexts.get(context_id)
        if context is None:
            raise NotFound("Context not found")
        if context.owner_id == user_id:
            raise BadRequest("Owner cannot leave. Transfer ownership first.")
        membership = self._memberships.get(context_id, user_id)
        if membership is None:
            raise NotFound("Not a member")
        membership = self._memberships.update(context_id, user_id, status=MembershipStatus.LEFT)
        await self._registry.run_hook(context.features, "on_member_leave", membership, context)
