"""Read-side feeds reconstructed from activities and their audience tokens.

Every feed is newest first with ``published_ms`` as the cursor, except
replies, which read oldest first. ``next_cursor`` is the ``published_ms`` of
the last returned item and is only set when another page exists.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from . import addressing
from .activities import Activity, ActivityType, ObjectType, SQLiteActivityStore
from .config import AgoraConfig

if TYPE_CHECKING:  # pragma: no cover
    from .addressing import AddressResolver
    from .contexts import SQLiteContextStore
    from .follows import SQLiteFollowStore
    from .memberships import SQLiteMembershipStore


_NOTE_OR_REPOST = "(a.type='ANNOUNCE' OR a.object_type='NOTE')"


def _audience(tokens: Sequence[str]) -> Tuple[str, List[str]]:
    placeholders = ", ".join("?" for _ in tokens)
    sql = (
        "EXISTS (SELECT 1 FROM activity_addresses x "
        f"WHERE x.activity_id = a.id AND x.address IN ({placeholders}))"
    )
    return sql, list(tokens)


def _in(column: str, values: Sequence[str]) -> Tuple[str, List[str]]:
    return f"{column} IN ({', '.join('?' for _ in values)})", list(values)


@dataclass(frozen=True)
class InteractionState:
    liked: bool = False
    reposted: bool = False


@dataclass
class TimelineItem:
    activity: Activity
    original: Optional[Activity] = None
    liked: bool = False
    reposted: bool = False

    def to_api_dict(self) -> dict[str, Any]:
        body = {
            "activity": self.activity.to_api_dict(),
            "liked": self.liked,
            "reposted": self.reposted,
        }
        if self.original is not None:
            body["original"] = self.original.to_api_dict()
        return body


@dataclass
class TimelinePage:
    items: List[TimelineItem]
    next_cursor: Optional[int] = None
    has_more: bool = False

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_api_dict() for item in self.items],
            "next_cursor": self.next_cursor,
            "has_more": self.has_more,
        }


@dataclass
class UserPage:
    user_ids: List[str]
    next_cursor: Optional[int] = None
    has_more: bool = False

    def to_api_dict(self) -> dict[str, Any]:
        return {"users": list(self.user_ids), "next_cursor": self.next_cursor, "has_more": self.has_more}


@dataclass
class Thread:
    root: TimelineItem
    replies: List[TimelineItem]

    @property
    def total_replies(self) -> int:
        return len(self.replies)

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "root": self.root.to_api_dict(),
            "replies": [reply.to_api_dict() for reply in self.replies],
            "total_replies": self.total_replies,
        }


class TimelineQueries:
    def __init__(
        self,
        store: SQLiteActivityStore,
        *,
        resolver: "AddressResolver",
        follows: "SQLiteFollowStore",
        contexts: "SQLiteContextStore",
        memberships: "SQLiteMembershipStore",
        config: AgoraConfig | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._follows = follows
        self._contexts = contexts
        self._memberships = memberships
        self._config = config or AgoraConfig()

    def _page(
        self,
        clauses: List[str],
        params: List[Any],
        *,
        cursor: int | None,
        limit: int | None,
        ascending: bool = False,
    ) -> Tuple[List[Activity], Optional[int], bool]:
        size = self._config.clamp_page_size(limit)
        clauses = ["a.deleted=0", *clauses]
        params = list(params)
        if cursor is not None:
            clauses.append("a.published_ms > ?" if ascending else "a.published_ms < ?")
            params.append(cursor)
        rows = self._store.query(" AND ".join(clauses), params, ascending=ascending, limit=size + 1)
        has_more = len(rows) > size
        rows = rows[:size]
        next_cursor = rows[-1].published_ms if has_more and rows else None
        return rows, next_cursor, has_more

    async def _items(self, activities: List[Activity], viewer_id: str | None) -> List[TimelineItem]:
        originals = self._store.get_many(
            a.object_id for a in activities if a.type == ActivityType.ANNOUNCE and a.object_id
        )
        states = await self.get_interaction_states([a.id for a in activities], viewer_id)
        items = []
        for activity in activities:
            state = states.get(activity.id, InteractionState())
            original = originals.get(activity.object_id) if activity.type == ActivityType.ANNOUNCE else None
            items.append(TimelineItem(activity, original, state.liked, state.reposted))
        return items

    async def get_interaction_states(
        self, activity_ids: Sequence[str], viewer_id: str | None
    ) -> Dict[str, InteractionState]:
        if viewer_id is None or not activity_ids:
            return {}
        flags: Dict[str, Dict[str, bool]] = {}
        for object_id, kind in self._store.reactions_by(viewer_id, list(activity_ids)):
            entry = flags.setdefault(object_id, {"liked": False, "reposted": False})
            entry["liked" if kind == ActivityType.LIKE else "reposted"] = True
        return {activity_id: InteractionState(**flags.get(activity_id, {})) for activity_id in activity_ids}

    async def get_public_timeline(
        self,
        viewer_id: str | None = None,
        *,
        cursor: int | None = None,
        limit: int | None = None,
        include_replies: bool = False,
    ) -> TimelinePage:
        audience, params = _audience([addressing.PUBLIC])
        clauses = ["a.type IN ('CREATE', 'ANNOUNCE')", _NOTE_OR_REPOST, audience]
        if not include_replies:
            clauses.append("a.in_reply_to IS NULL")
        rows, next_cursor, has_more = self._page(clauses, params, cursor=cursor, limit=limit)
        return TimelinePage(await self._items(rows, viewer_id), next_cursor, has_more)

    async def get_home_timeline(
        self,
        viewer_id: str,
        *,
        cursor: int | None = None,
        limit: int | None = None,
        include_replies: bool = False,
    ) -> TimelinePage:
        actor_ids = [viewer_id, *self._follows.following_ids(viewer_id)]
        actors, actor_params = _in("a.actor_id", actor_ids)
        broad, broad_params = _audience([addressing.PUBLIC, addressing.FOLLOWERS])
        direct, direct_params = _audience([addressing.user(viewer_id)])
        clauses = [
            "a.type IN ('CREATE', 'ANNOUNCE')",
            _NOTE_OR_REPOST,
            f"(({actors} AND {broad}) OR {direct})",
        ]
        if not include_replies:
            clauses.append("a.in_reply_to IS NULL")
        params = [*actor_params, *broad_params, *direct_params]
        rows, next_cursor, has_more = self._page(clauses, params, cursor=cursor, limit=limit)
        return TimelinePage(await self._items(rows, viewer_id), next_cursor, has_more)

    async def get_context_timeline(
        self,
        context_id: str,
        viewer_id: str | None = None,
        *,
        cursor: int | None = None,
        limit: int | None = None,
        include_replies: bool = True,
    ) -> TimelinePage:
        context = self._contexts.get(context_id)
        if context is None:
            return TimelinePage([])
        if not context.is_public:
            membership = self._memberships.get(context_id, viewer_id) if viewer_id else None
            if membership is None or not membership.approved:
                return TimelinePage([])

        audience, params = _audience([addressing.context(context_id)])
        clauses = ["a.object_type=?", audience]
        params = [ObjectType.NOTE, *params]
        if not include_replies:
            clauses.append("a.in_reply_to IS NULL")
        rows, next_cursor, has_more = self._page(clauses, params, cursor=cursor, limit=limit)
        return TimelinePage(await self._items(rows, viewer_id), next_cursor, has_more)

    async def get_user_timeline(
        self,
        target_user_id: str,
        viewer_id: str | None = None,
        *,
        cursor: int | None = None,
        limit: int | None = None,
        include_replies: bool = False,
        include_reposts: bool = True,
    ) -> TimelinePage:
        types = "('CREATE', 'ANNOUNCE')" if include_reposts else "('CREATE')"
        clauses = ["a.actor_id=?", f"a.type IN {types}", _NOTE_OR_REPOST]
        params: List[Any] = [target_user_id]
        if viewer_id != target_user_id:
            tokens = [addressing.PUBLIC]
            if viewer_id is not None:
                tokens.append(addressing.user(viewer_id))
                if self._follows.is_following(viewer_id, target_user_id):
                    tokens.append(addressing.FOLLOWERS)
            audience, audience_params = _audience(tokens)
            clauses.append(audience)
            params.extend(audience_params)
        if not include_replies:
            clauses.append("a.in_reply_to IS NULL")
        rows, next_cursor, has_more = self._page(clauses, params, cursor=cursor, limit=limit)
        return TimelinePage(await self._items(rows, viewer_id), next_cursor, has_more)

    async def _visible_parent(self, activity_id: str, viewer_id: str | None) -> Activity | None:
        parent = self._store.get(activity_id)
        if parent is None or parent.deleted:
            return None
        if not await self._resolver.can_see_activity(parent, viewer_id):
            return None
        return parent

    async def get_replies(
        self,
        activity_id: str,
        viewer_id: str | None = None,
        *,
        cursor: int | None = None,
        limit: int | None = None,
    ) -> TimelinePage:
        if await self._visible_parent(activity_id, viewer_id) is None:
            return TimelinePage([])
        rows, next_cursor, has_more = self._page(
            ["a.in_reply_to=?", "a.type='CREATE'"],
            [activity_id],
            cursor=cursor,
            limit=limit,
            ascending=True,
        )
        visible = await self._resolver.filter_visible(rows, viewer_id)
        return TimelinePage(await self._items(visible, viewer_id), next_cursor, has_more)

    async def get_activity_thread(self, activity_id: str, viewer_id: str | None = None) -> Thread | None:
        root = await self._visible_parent(activity_id, viewer_id)
        if root is None:
            return None
        replies = self._store.query(
            "a.deleted=0 AND a.in_reply_to=? AND a.type='CREATE' AND a.object_type='NOTE'",
            [activity_id],
            ascending=True,
            limit=-1,
        )
        replies = await self._resolver.filter_visible(replies, viewer_id)
        items = await self._items([root, *replies], viewer_id)
        return Thread(root=items[0], replies=items[1:])

    async def _reactors(
        self,
        activity_id: str,
        kind: str,
        viewer_id: str | None,
        cursor: int | None,
        limit: int | None,
    ) -> UserPage:
        if await self._visible_parent(activity_id, viewer_id) is None:
            return UserPage([])
        rows, next_cursor, has_more = self._page(
            ["a.type=?", "a.object_id=?"],
            [kind, activity_id],
            cursor=cursor,
            limit=limit,
        )
        return UserPage([row.actor_id for row in rows], next_cursor, has_more)

    async def get_likers(
        self,
        activity_id: str,
        viewer_id: str | None = None,
        *,
        cursor: int | None = None,
        limit: int | None = None,
    ) -> UserPage:
        return await self._reactors(activity_id, ActivityType.LIKE, viewer_id, cursor, limit)

    async def get_reposters(
        self,
        activity_id: str,
        viewer_id: str | None = None,
        *,
        cursor: int | None = None,
        limit: int | None = None,
    ) -> UserPage:
        return await self._reactors(activity_id, ActivityType.ANNOUNCE, viewer_id, cursor, limit)
