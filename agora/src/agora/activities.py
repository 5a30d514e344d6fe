from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence

from . import addressing
from .errors import BadRequest, Conflict, Forbidden, NotFound
from .broadcast import context_channel
from .inbox import SQLiteInboxStore, deliver_activity
from .permissions import PermissionResult
from .sessions import _now_ms, new_id
from .sqlite_backend import SQLiteBackend

if TYPE_CHECKING:  # pragma: no cover
    from .addressing import AddressResolver
    from .broadcast import LiveBroadcaster
    from .contexts import SQLiteContextStore
    from .follows import Follow, SQLiteFollowStore
    from .permissions import PermissionService
    from .plugins import PluginRegistry


logger = logging.getLogger(__name__)


class ActivityType:
    CREATE = "CREATE"
    ANNOUNCE = "ANNOUNCE"
    LIKE = "LIKE"
    FOLLOW = "FOLLOW"
    ACCEPT = "ACCEPT"
    JOIN = "JOIN"
    LEAVE = "LEAVE"
    INVITE = "INVITE"
    FLAG = "FLAG"
    BLOCK = "BLOCK"
    DM = "DM"


class ObjectType:
    NOTE = "NOTE"
    ACTIVITY = "ACTIVITY"
    USER = "USER"


_COLUMNS = (
    "a.id, a.type, a.actor_id, a.object_type, a.object_json, a.to_json, a.cc_json, "
    "a.context_id, a.in_reply_to, a.object_id, a.published_ms, a.deleted"
)


@dataclass
class Activity:
    id: str
    type: str
    actor_id: str
    object_type: str
    object: Dict[str, Any] = field(default_factory=dict)
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    context_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    object_id: Optional[str] = None
    published_ms: int = 0
    deleted: bool = False

    @property
    def is_public(self) -> bool:
        return addressing.PUBLIC in self.to or addressing.PUBLIC in self.cc

    @property
    def addresses(self) -> List[str]:
        return [*self.to, *self.cc]

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "actor_id": self.actor_id,
            "object_type": self.object_type,
            "object": self.object,
            "to": list(self.to),
            "cc": list(self.cc),
            "context_id": self.context_id,
            "in_reply_to": self.in_reply_to,
            "object_id": self.object_id,
            "published_ms": self.published_ms,
            "deleted": self.deleted,
        }


def _row_to_activity(row: sqlite3.Row) -> Activity:
    return Activity(
        id=row[0],
        type=row[1],
        actor_id=row[2],
        object_type=row[3],
        object=json.loads(row[4]),
        to=json.loads(row[5]),
        cc=json.loads(row[6]),
        context_id=row[7],
        in_reply_to=row[8],
        object_id=row[9],
        published_ms=row[10],
        deleted=bool(row[11]),
    )


class SQLiteActivityStore:
    """Activities plus their audience tokens, one row per ``(activity, slot, address)``."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def insert(self, activity: Activity) -> Activity:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                last = cursor.execute("SELECT COALESCE(MAX(published_ms), 0) FROM activities").fetchone()[0]
                stored = replace(activity, published_ms=max(_now_ms(), last + 1))
                cursor.execute(
                    """
                    INSERT INTO activities (
                        id, type, actor_id, object_type, object_json, to_json, cc_json,
                        context_id, in_reply_to, object_id, published_ms, deleted
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        stored.id,
                        stored.type,
                        stored.actor_id,
                        stored.object_type,
                        json.dumps(stored.object),
                        json.dumps(stored.to),
                        json.dumps(stored.cc),
                        stored.context_id,
                        stored.in_reply_to,
                        stored.object_id,
                        stored.published_ms,
                    ),
                )
                rows = [(stored.id, "to", token) for token in dict.fromkeys(stored.to)]
                rows.extend((stored.id, "cc", token) for token in dict.fromkeys(stored.cc))
                cursor.executemany(
                    "INSERT INTO activity_addresses (activity_id, slot, address) VALUES (?, ?, ?)",
                    rows,
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return stored

    def get(self, activity_id: str) -> Activity | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM activities a WHERE a.id=?",
                (activity_id,),
            ).fetchone()
        return _row_to_activity(row) if row is not None else None

    def get_many(self, activity_ids: Iterable[str]) -> Dict[str, Activity]:
        ids = list(dict.fromkeys(activity_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM activities a WHERE a.id IN ({placeholders}) AND a.deleted=0",
                ids,
            ).fetchall()
        return {row[0]: _row_to_activity(row) for row in rows}

    def mark_deleted(self, activity_id: str) -> None:
        with self._backend.lock:
            self._backend.connection.execute("UPDATE activities SET deleted=1 WHERE id=?", (activity_id,))

    def find_reaction(self, activity_type: str, actor_id: str, object_id: str) -> Activity | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"""
                SELECT {_COLUMNS} FROM activities a
                WHERE a.type=? AND a.actor_id=? AND a.object_id=? AND a.deleted=0
                """,
                (activity_type, actor_id, object_id),
            ).fetchone()
        return _row_to_activity(row) if row is not None else None

    def query(self, where_sql: str, params: Sequence[Any], *, ascending: bool = False, limit: int) -> List[Activity]:
        order = "ASC" if ascending else "DESC"
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM activities a WHERE {where_sql} ORDER BY a.published_ms {order} LIMIT ?",
                [*params, limit],
            ).fetchall()
        return [_row_to_activity(row) for row in rows]

    def reactions_by(self, actor_id: str, object_ids: Sequence[str]) -> List[tuple[str, str]]:
        """Return ``(object_id, type)`` for the actor's live likes and reposts of ``object_ids``."""

        if not object_ids:
            return []
        placeholders = ", ".join("?" for _ in object_ids)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT object_id, type FROM activities
                WHERE actor_id=? AND deleted=0 AND type IN ('LIKE', 'ANNOUNCE')
                AND object_id IN ({placeholders})
                """,
                [actor_id, *object_ids],
            ).fetchall()
        return [(row[0], row[1]) for row in rows]


class ActivityService:
    """Write path for activities: validate, persist, deliver, notify plugins, broadcast."""

    def __init__(
        self,
        store: SQLiteActivityStore,
        *,
        resolver: "AddressResolver",
        permissions: "PermissionService",
        contexts: "SQLiteContextStore",
        follows: "SQLiteFollowStore",
        inbox: SQLiteInboxStore,
        broadcaster: "LiveBroadcaster",
        registry: "PluginRegistry",
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._permissions = permissions
        self._contexts = contexts
        self._follows = follows
        self._inbox = inbox
        self._broadcaster = broadcaster
        self._registry = registry

    async def _context_viewers(self, activity: Activity) -> set[str | None] | None:
        if activity.context_id is None:
            return None
        viewers: set[str | None] = set()
        for viewer_id in self._broadcaster.viewers(context_channel(activity.context_id)):
            if await self._resolver.can_see_activity(activity, viewer_id):
                viewers.add(viewer_id)
        return viewers

    async def get_visible(self, activity_id: str, viewer_id: str | None) -> Activity | None:
        activity = self._store.get(activity_id)
        if activity is None or activity.deleted:
            return None
        if not await self._resolver.can_see_activity(activity, viewer_id):
            return None
        return activity

    async def create_note(
        self,
        actor_id: str,
        *,
        content: str,
        to: Sequence[str] = (),
        cc: Sequence[str] = (),
        context_id: str | None = None,
        in_reply_to: str | None = None,
        summary: str | None = None,
        sensitive: bool = False,
        activity_type: str = ActivityType.CREATE,
    ) -> Activity:
        to_tokens = list(dict.fromkeys(addressing.validate_addresses(to)))
        cc_tokens = list(dict.fromkeys(addressing.validate_addresses(cc)))

        context = None
        if context_id is not None:
            context = self._contexts.get(context_id)
            if context is None or context.is_archived:
                raise NotFound("Context not found")
            result = await self._permissions.has_permission_with_reason(actor_id, context_id, "activity.create")
            if not result.allowed:
                raise Forbidden(result.reason or "Forbidden")

            if context.is_public and addressing.PUBLIC not in to_tokens:
                to_tokens.append(addressing.PUBLIC)
            context_token = addressing.context(context_id)
            if context_token not in to_tokens and context_token not in cc_tokens:
                if addressing.PUBLIC in to_tokens:
                    cc_tokens.append(context_token)
                else:
                    to_tokens.append(context_token)

        if activity_type != ActivityType.CREATE:
            enabled = context.features if context is not None else []
            declared = {
                entry["type"] for entry in self._registry.get_all_activity_types() if entry["plugin_id"] in enabled
            }
            if activity_type not in declared:
                raise BadRequest(f"unsupported activity type: {activity_type}")

        if in_reply_to is not None:
            parent = await self.get_visible(in_reply_to, actor_id)
            if parent is None:
                raise NotFound("Activity not found")
            author_token = addressing.user(parent.actor_id)
            if parent.actor_id != actor_id and author_token not in to_tokens and author_token not in cc_tokens:
                cc_tokens.append(author_token)

        if not to_tokens and not cc_tokens:
            raise BadRequest("at least one address is required")

        note: Dict[str, Any] = {"content": content, "sensitive": bool(sensitive)}
        if summary is not None:
            note["summary"] = summary

        activity = self._store.insert(
            Activity(
                id=new_id("act"),
                type=activity_type,
                actor_id=actor_id,
                object_type=ObjectType.NOTE,
                object=note,
                to=to_tokens,
                cc=cc_tokens,
                context_id=context_id,
                in_reply_to=in_reply_to,
            )
        )
        self._deliver(activity)
        if context is not None:
            await self._registry.run_hook(context.features, "on_activity_create", activity, context)
        self._broadcaster.broadcast_new_activity(
            activity, self.home_recipients(activity), context_viewers=await self._context_viewers(activity)
        )
        return activity

    async def like(self, actor_id: str, target_id: str) -> Activity:
        target = await self._require_reactable(actor_id, target_id)
        if self._store.find_reaction(ActivityType.LIKE, actor_id, target_id) is not None:
            raise Conflict("Already liked")
        activity = self._store.insert(
            Activity(
                id=new_id("act"),
                type=ActivityType.LIKE,
                actor_id=actor_id,
                object_type=ObjectType.ACTIVITY,
                object_id=target_id,
                to=[addressing.user(target.actor_id)],
            )
        )
        self._deliver(activity)
        self._broadcaster.broadcast_reaction(
            activity, target, context_viewers=await self._context_viewers(target)
        )
        return activity

    async def unlike(self, actor_id: str, target_id: str) -> None:
        like = self._store.find_reaction(ActivityType.LIKE, actor_id, target_id)
        if like is None:
            raise NotFound("Like not found")
        self._store.mark_deleted(like.id)

    async def announce(
        self,
        actor_id: str,
        target_id: str,
        *,
        to: Sequence[str] | None = None,
        cc: Sequence[str] | None = None,
    ) -> Activity:
        target = self._store.get(target_id)
        if target is None or target.deleted:
            raise NotFound("Activity not found")
        if addressing.PUBLIC not in target.to:
            raise Forbidden("Cannot repost non-public activities")
        if self._store.find_reaction(ActivityType.ANNOUNCE, actor_id, target_id) is not None:
            raise Conflict("Already reposted")

        to_tokens = addressing.validate_addresses(to if to is not None else [addressing.PUBLIC])
        cc_tokens = addressing.validate_addresses(cc if cc is not None else [addressing.FOLLOWERS])
        if target.actor_id != actor_id:
            cc_tokens = addressing.combine_addresses(cc_tokens, [addressing.user(target.actor_id)])

        activity = self._store.insert(
            Activity(
                id=new_id("act"),
                type=ActivityType.ANNOUNCE,
                actor_id=actor_id,
                object_type=ObjectType.ACTIVITY,
                object_id=target_id,
                to=addressing.combine_addresses(to_tokens),
                cc=cc_tokens,
            )
        )
        self._deliver(activity)
        self._broadcaster.broadcast_new_activity(activity, self.home_recipients(activity))
        self._broadcaster.broadcast_reaction(
            activity, target, context_viewers=await self._context_viewers(target)
        )
        return activity

    async def unannounce(self, actor_id: str, target_id: str) -> None:
        repost = self._store.find_reaction(ActivityType.ANNOUNCE, actor_id, target_id)
        if repost is None:
            raise NotFound("Repost not found")
        self._store.mark_deleted(repost.id)

    async def delete(self, actor_id: str, activity_id: str) -> None:
        activity = self._store.get(activity_id)
        if activity is None or activity.deleted:
            raise NotFound("Activity not found")
        result = await self.can_act(actor_id, activity, "delete")
        if not result.allowed:
            raise Forbidden(result.reason or "Forbidden")
        self._store.mark_deleted(activity_id)

    async def can_act(self, actor_id: str, activity: Activity, action: str) -> PermissionResult:
        """Edit/delete/pin decision for ``activity``; outside a context only the author may act."""

        if activity.context_id is not None:
            return await self._permissions.can_act_on_activity(actor_id, activity.context_id, activity.actor_id, action)
        if action not in ("edit", "delete", "pin"):
            raise BadRequest(f"unknown activity action: {action}")
        if action == "pin":
            return PermissionResult(False, "Only context activities can be pinned")
        if actor_id != activity.actor_id:
            return PermissionResult(False, f"You can only {action} your own activities")
        return PermissionResult(True)

    async def follow_user(self, actor_id: str, target_id: str, *, requires_approval: bool = False) -> "Follow":
        follow = self._follows.follow(actor_id, target_id, requires_approval=requires_approval)
        activity = self._store.insert(
            Activity(
                id=new_id("act"),
                type=ActivityType.FOLLOW,
                actor_id=actor_id,
                object_type=ObjectType.USER,
                object_id=target_id,
                to=[addressing.user(target_id)],
            )
        )
        self._deliver(activity)
        self._broadcaster.broadcast_new_activity(activity, self.home_recipients(activity))
        return follow

    async def unfollow_user(self, actor_id: str, target_id: str) -> None:
        if not self._follows.unfollow(actor_id, target_id):
            raise NotFound("Not following")

    def home_recipients(self, activity: Activity) -> List[str]:
        """Users whose home feed should receive ``activity`` live."""

        recipients = [activity.actor_id]
        tokens = activity.addresses
        if addressing.PUBLIC in tokens or addressing.FOLLOWERS in tokens:
            recipients.extend(self._follows.follower_ids(activity.actor_id))
        recipients.extend(addressing.extract_user_ids(tokens))
        return list(dict.fromkeys(recipients))

    async def _require_reactable(self, actor_id: str, target_id: str) -> Activity:
        target = self._store.get(target_id)
        if target is None or target.deleted:
            raise NotFound("Activity not found")
        if not await self._resolver.can_see_activity(target, actor_id):
            raise Forbidden("You cannot react to this activity")
        return target

    def _deliver(self, activity: Activity) -> int:
        delivered = deliver_activity(self._inbox, activity)
        logger.debug("activity %s delivered to %d inboxes", activity.id, delivered)
        return delivered
