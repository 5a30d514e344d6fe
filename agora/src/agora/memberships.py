from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .errors import BadRequest, Conflict, Forbidden, InvalidPluginData, NotFound
from .roles import MODERATION_ROLES, ROLE_HIERARCHY, ROLE_MANAGER_ROLES, Role, is_equal_or_higher_role
from .sessions import _now_ms, new_id
from .sqlite_backend import SQLiteBackend

if TYPE_CHECKING:  # pragma: no cover
    from .contexts import SQLiteContextStore
    from .plugins import PluginRegistry


DEFAULT_MEMBER_PAGE_SIZE = 50

_ROLE_RANK_SQL = "CASE role " + " ".join(
    f"WHEN '{role.value}' THEN {index}" for index, role in enumerate(ROLE_HIERARCHY)
) + " END"

_COLUMNS = (
    "id, context_id, user_id, role, status, permissions_json, plugin_data_json, joined_at_ms, updated_at_ms"
)


class MembershipStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    BANNED = "BANNED"
    LEFT = "LEFT"


@dataclass
class Membership:
    id: str
    context_id: str
    user_id: str
    role: Role
    status: MembershipStatus
    permissions: Optional[Dict[str, Any]] = None
    plugin_data: Dict[str, Any] = field(default_factory=dict)
    joined_at_ms: int = 0
    updated_at_ms: int = 0

    @property
    def approved(self) -> bool:
        return self.status == MembershipStatus.APPROVED

    def plugin_section(self, plugin_id: str) -> Dict[str, Any]:
        section = self.plugin_data.get(plugin_id)
        return section if isinstance(section, dict) else {}

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "context_id": self.context_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "status": self.status.value,
            "permissions": self.permissions,
            "plugin_data": self.plugin_data,
            "joined_at_ms": self.joined_at_ms,
            "updated_at_ms": self.updated_at_ms,
        }


def _load_json(raw: str | None, default):
    if raw is None:
        return default
    try:
        value = json.loads(raw)
    except ValueError:
        return default
    return value if isinstance(value, dict) else default


def _row_to_membership(row: sqlite3.Row) -> Membership:
    return Membership(
        id=row[0],
        context_id=row[1],
        user_id=row[2],
        role=Role(row[3]),
        status=MembershipStatus(row[4]),
        permissions=_load_json(row[5], None),
        plugin_data=_load_json(row[6], {}),
        joined_at_ms=row[7],
        updated_at_ms=row[8],
    )


class SQLiteMembershipStore:
    """Membership rows keyed by the unique ``(context_id, user_id)`` pair."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def insert(
        self,
        context_id: str,
        user_id: str,
        *,
        role: Role = Role.MEMBER,
        status: MembershipStatus = MembershipStatus.PENDING,
        permissions: Optional[Dict[str, Any]] = None,
    ) -> Membership:
        now_ms = _now_ms()
        membership = Membership(
            id=new_id("mem"),
            context_id=context_id,
            user_id=user_id,
            role=role,
            status=status,
            permissions=permissions,
            joined_at_ms=now_ms,
            updated_at_ms=now_ms,
        )
        try:
            with self._backend.lock:
                self._backend.connection.execute(
                    f"INSERT INTO memberships ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        membership.id,
                        context_id,
                        user_id,
                        role.value,
                        status.value,
                        json.dumps(permissions) if permissions is not None else None,
                        "{}",
                        now_ms,
                        now_ms,
                    ),
                )
        except sqlite3.IntegrityError:
            raise Conflict("Membership already exists") from None
        return membership

    def get(self, context_id: str, user_id: str) -> Membership | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM memberships WHERE context_id=? AND user_id=?",
                (context_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_membership(row)

    def update(
        self,
        context_id: str,
        user_id: str,
        *,
        role: Role | None = None,
        status: MembershipStatus | None = None,
        permissions: Optional[Dict[str, Any]] = None,
        plugin_data: Optional[Dict[str, Any]] = None,
    ) -> Membership:
        assignments: List[str] = []
        params: List[Any] = []
        if role is not None:
            assignments.append("role=?")
            params.append(role.value)
        if status is not None:
            assignments.append("status=?")
            params.append(status.value)
        if permissions is not None:
            assignments.append("permissions_json=?")
            params.append(json.dumps(permissions))
        if plugin_data is not None:
            assignments.append("plugin_data_json=?")
            params.append(json.dumps(plugin_data))
        assignments.append("updated_at_ms=?")
        params.append(_now_ms())
        params.extend([context_id, user_id])
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                f"UPDATE memberships SET {', '.join(assignments)} WHERE context_id=? AND user_id=?",
                params,
            )
        if cursor.rowcount == 0:
            raise NotFound("Membership not found")
        updated = self.get(context_id, user_id)
        if updated is None:
            raise NotFound("Membership not found")
        return updated

    def delete(self, context_id: str, user_id: str) -> bool:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                "DELETE FROM memberships WHERE context_id=? AND user_id=?",
                (context_id, user_id),
            )
        return cursor.rowcount > 0

    def list(
        self,
        context_id: str,
        *,
        status: MembershipStatus | None = None,
        role: Role | None = None,
    ) -> List[Membership]:
        clauses = ["context_id=?"]
        params: List[Any] = [context_id]
        if status is not None:
            clauses.append("status=?")
            params.append(status.value)
        if role is not None:
            clauses.append("role=?")
            params.append(role.value)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_COLUMNS} FROM memberships
                WHERE {' AND '.join(clauses)}
                ORDER BY {_ROLE_RANK_SQL} ASC, joined_at_ms ASC, id ASC
                """,
                params,
            ).fetchall()
        return [_row_to_membership(row) for row in rows]

    def count_by_status(self, context_id: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in MembershipStatus}
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT status, COUNT(*) FROM memberships WHERE context_id=? GROUP BY status",
                (context_id,),
            ).fetchall()
        for status, count in rows:
            counts[status] = count
        return counts

    def user_memberships(self, user_id: str, status: MembershipStatus | None = None) -> List[Membership]:
        query = f"SELECT {_COLUMNS} FROM memberships WHERE user_id=?"
        params: List[Any] = [user_id]
        if status is not None:
            query += " AND status=?"
            params.append(status.value)
        query += " ORDER BY joined_at_ms DESC"
        with self._backend.lock:
            rows = self._backend.connection.execute(query, params).fetchall()
        return [_row_to_membership(row) for row in rows]


@dataclass
class MembershipPage:
    items: List[Membership]
    next_cursor: str | None

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "items": [membership.to_api_dict() for membership in self.items],
            "next_cursor": self.next_cursor,
        }


class MembershipService:
    """Moderator-driven membership transitions: role changes, approval and bans."""

    def __init__(
        self,
        memberships: SQLiteMembershipStore,
        contexts: "SQLiteContextStore",
        registry: "PluginRegistry",
    ) -> None:
        self._memberships = memberships
        self._contexts = contexts
        self._registry = registry

    async def get(self, context_id: str, user_id: str) -> Membership | None:
        return self._memberships.get(context_id, user_id)

    async def list(
        self,
        context_id: str,
        *,
        status: MembershipStatus | None = None,
        role: Role | None = None,
        cursor: str | None = None,
        limit: int = DEFAULT_MEMBER_PAGE_SIZE,
    ) -> MembershipPage:
        rows = self._memberships.list(context_id, status=status, role=role)
        if cursor is not None:
            for index, membership in enumerate(rows):
                if membership.id == cursor:
                    rows = rows[index + 1 :]
                    break
            else:
                rows = []
        page = rows[: limit + 1]
        has_more = len(page) > limit
        items = page[:limit]
        return MembershipPage(items=items, next_cursor=items[-1].id if has_more else None)

    async def count_by_status(self, context_id: str) -> Dict[str, int]:
        return self._memberships.count_by_status(context_id)

    async def user_memberships(
        self, user_id: str, status: MembershipStatus | None = MembershipStatus.APPROVED
    ) -> List[Membership]:
        return self._memberships.user_memberships(user_id, status)

    async def update_role(self, context_id: str, target_user_id: str, new_role: Role, actor_id: str) -> Membership:
        actor = self._memberships.get(context_id, actor_id)
        if actor is None or not actor.approved:
            raise Forbidden("You are not an approved member of this context")
        if actor.role not in ROLE_MANAGER_ROLES:
            raise Forbidden("Insufficient permissions to change roles")

        target = self._memberships.get(context_id, target_user_id)
        if target is None:
            raise NotFound("Member not found")

        context = self._contexts.get(context_id)
        if context is None:
            raise NotFound("Context not found")

        if context.owner_id == target_user_id:
            raise BadRequest("Cannot change owner role. Use transfer ownership instead.")
        if new_role == Role.ADMIN and actor.role != Role.OWNER:
            raise Forbidden("Only the owner can promote members to admin")
        if new_role == Role.OWNER:
            raise BadRequest("Cannot assign owner role. Use transfer ownership instead.")
        if actor.role != Role.OWNER and is_equal_or_higher_role(target.role, actor.role):
            raise Forbidden("Cannot change role of member with equal or higher role")

        return self._memberships.update(context_id, target_user_id, role=new_role)

    async def approve(self, context_id: str, target_user_id: str, actor_id: str) -> Membership:
        self._require_moderator(context_id, actor_id, "approve")
        target = self._memberships.get(context_id, target_user_id)
        if target is None:
            raise NotFound("Membership not found")
        if target.status != MembershipStatus.PENDING:
            raise BadRequest("Membership is not pending approval")

        updated = self._memberships.update(context_id, target_user_id, status=MembershipStatus.APPROVED)
        context = self._contexts.get(context_id)
        if context is not None:
            await self._registry.run_hook(context.features, "on_member_join", updated, context)
        return updated

    async def reject(self, context_id: str, target_user_id: str, actor_id: str) -> None:
        self._require_moderator(context_id, actor_id, "reject")
        target = self._memberships.get(context_id, target_user_id)
        if target is None:
            raise NotFound("Membership not found")
        if target.status != MembershipStatus.PENDING:
            raise BadRequest("Membership is not pending")
        self._memberships.delete(context_id, target_user_id)

    async def ban(self, context_id: str, target_user_id: str, actor_id: str) -> Membership:
        actor = self._require_moderator(context_id, actor_id, "ban")
        target = self._memberships.get(context_id, target_user_id)
        if target is None:
            raise NotFound("Member not found")

        context = self._contexts.get(context_id)
        if context is None:
            raise NotFound("Context not found")
        if context.owner_id == target_user_id:
            raise BadRequest("Cannot ban the owner")
        if actor.role != Role.OWNER and is_equal_or_higher_role(target.role, actor.role):
            raise Forbidden("Cannot ban member with equal or higher role")

        return self._memberships.update(context_id, target_user_id, status=MembershipStatus.BANNED)

    async def unban(self, context_id: str, target_user_id: str, actor_id: str) -> Membership:
        self._require_moderator(context_id, actor_id, "unban")
        target = self._memberships.get(context_id, target_user_id)
        if target is None:
            raise NotFound("Member not found")
        if target.status != MembershipStatus.BANNED:
            raise BadRequest("Member is not banned")
        return self._memberships.update(context_id, target_user_id, status=MembershipStatus.APPROVED)

    async def update_plugin_data(
        self,
        context_id: str,
        user_id: str,
        plugin_id: str,
        data: Dict[str, Any],
        actor_id: str | None = None,
    ) -> Membership:
        if actor_id is not None and actor_id != user_id:
            actor = self._memberships.get(context_id, actor_id)
            if actor is None or not actor.approved or actor.role not in ROLE_MANAGER_ROLES:
                raise Forbidden("Insufficient permissions")

        membership = self._memberships.get(context_id, user_id)
        if membership is None:
            raise NotFound("Membership not found")

        merged = {**membership.plugin_section(plugin_id), **data}
        result = self._registry.validate_member_data(plugin_id, merged)
        if not result.valid:
            raise InvalidPluginData(list(result.errors))

        plugin_data = dict(membership.plugin_data)
        plugin_data[plugin_id] = merged
        return self._memberships.update(context_id, user_id, plugin_data=plugin_data)

    def _require_moderator(self, context_id: str, actor_id: str, verb: str) -> Membership:
        actor = self._memberships.get(context_id, actor_id)
        if actor is None or not actor.approved:
            raise Forbidden("You are not an approved member")
        if actor.role not in MODERATION_ROLES:
            raise Forbidden(f"Insufficient permissions to {verb} members")
        return actor
