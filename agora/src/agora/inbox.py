"""Durable per-user notifications built from directly addressed activities.

Only ``user:{id}`` tokens fan out into inbox rows. ``public`` and
``followers`` audiences are served by the timeline queries instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .addressing import USER_PREFIX
from .errors import BadRequest
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend

if TYPE_CHECKING:  # pragma: no cover
    from .activities import Activity


class InboxCategory(str, Enum):
    DEFAULT = "DEFAULT"
    FOLLOW = "FOLLOW"
    MENTION = "MENTION"
    LIKE = "LIKE"
    REPOST = "REPOST"
    REPLY = "REPLY"
    EVENT = "EVENT"
    GROUP = "GROUP"
    SYSTEM = "SYSTEM"
    DM = "DM"


NON_DM_CATEGORIES: Tuple[InboxCategory, ...] = tuple(c for c in InboxCategory if c != InboxCategory.DM)

_FILTERS: Dict[str, Tuple[InboxCategory, ...]] = {
    "all": NON_DM_CATEGORIES,
    "mentions": (InboxCategory.MENTION,),
    "likes": (InboxCategory.LIKE,),
    "follows": (InboxCategory.FOLLOW,),
    "reposts": (InboxCategory.REPOST,),
    "replies": (InboxCategory.REPLY,),
}

_EVENT_TYPES = {"RSVP", "CHECKIN", "EVENT_UPDATE"}
_GROUP_TYPES = {"ANNOUNCEMENT", "POLL", "INTRODUCTION", "JOIN", "LEAVE", "INVITE"}


def category_filter(name: str | None) -> Tuple[InboxCategory, ...]:
    try:
        return _FILTERS[name or "all"]
    except KeyError:
        raise BadRequest(f"unknown inbox category: {name}") from None


def parse_addressees(to: Iterable[str], cc: Iterable[str], actor_id: str) -> List[str]:
    recipients: Dict[str, None] = {}
    for token in [*to, *cc]:
        if not token.startswith(USER_PREFIX):
            continue
        user_id = token[len(USER_PREFIX) :]
        if user_id and user_id != actor_id:
            recipients[user_id] = None
    return list(recipients)


def category_for_activity(activity: "Activity") -> InboxCategory:
    kind = activity.type
    if kind == "LIKE":
        return InboxCategory.LIKE
    if kind == "ANNOUNCE":
        return InboxCategory.REPOST
    if kind in ("FOLLOW", "ACCEPT"):
        return InboxCategory.FOLLOW
    if kind == "CREATE":
        return InboxCategory.REPLY if activity.in_reply_to else InboxCategory.MENTION
    if kind in _EVENT_TYPES:
        return InboxCategory.EVENT
    if kind in _GROUP_TYPES:
        return InboxCategory.GROUP
    if kind in ("FLAG", "BLOCK"):
        return InboxCategory.SYSTEM
    if kind == "DM":
        return InboxCategory.DM
    return InboxCategory.DEFAULT


@dataclass
class InboxItem:
    id: int
    user_id: str
    activity_id: str
    category: InboxCategory
    read: bool
    muted: bool
    created_at_ms: int

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "activity_id": self.activity_id,
            "category": self.category.value,
            "read": self.read,
            "created_at_ms": self.created_at_ms,
        }


@dataclass
class InboxPage:
    items: List[InboxItem]
    next_cursor: Optional[int]


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteInboxStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def deliver_to_inbox(self, activity_id: str, recipients: Iterable[Tuple[str, InboxCategory]]) -> int:
        """Insert one row per recipient, skipping pairs that already exist; return the new-row count."""

        rows = [(user_id, activity_id, category.value, _now_ms()) for user_id, category in recipients]
        if not rows:
            return 0
        with self._backend.lock:
            conn = self._backend.connection
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO inbox_items (user_id, activity_id, category, read, muted, created_at_ms)
                VALUES (?, ?, ?, 0, 0, ?)
                """,
                rows,
            )
            return conn.total_changes - before

    def list_notifications(
        self,
        user_id: str,
        *,
        category: str | None = "all",
        unread_only: bool = False,
        cursor: int | None = None,
        limit: int = 20,
    ) -> InboxPage:
        categories = [c.value for c in category_filter(category)]
        clauses = ["user_id=?", "muted=0", f"category IN ({_placeholders(categories)})"]
        params: List[Any] = [user_id, *categories]
        if unread_only:
            clauses.append("read=0")
        if cursor is not None:
            clauses.append("seq<?")
            params.append(cursor)
        params.append(limit + 1)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT seq, user_id, activity_id, category, read, muted, created_at_ms
                FROM inbox_items WHERE {' AND '.join(clauses)}
                ORDER BY seq DESC LIMIT ?
                """,
                params,
            ).fetchall()
        items = [
            InboxItem(
                id=row[0],
                user_id=row[1],
                activity_id=row[2],
                category=InboxCategory(row[3]),
                read=bool(row[4]),
                muted=bool(row[5]),
                created_at_ms=row[6],
            )
            for row in rows
        ]
        if len(items) > limit:
            items = items[:limit]
            return InboxPage(items=items, next_cursor=items[-1].id)
        return InboxPage(items=items, next_cursor=None)

    def mark_items_read(self, user_id: str, item_ids: Sequence[int]) -> int:
        if not item_ids:
            return 0
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                f"UPDATE inbox_items SET read=1 WHERE user_id=? AND read=0 AND seq IN ({_placeholders(item_ids)})",
                [user_id, *item_ids],
            )
        return cursor.rowcount

    def mark_all_read(self, user_id: str, category: str | None = None) -> int:
        categories = [c.value for c in category_filter(category)]
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                f"UPDATE inbox_items SET read=1 WHERE user_id=? AND read=0 AND category IN ({_placeholders(categories)})",
                [user_id, *categories],
            )
        return cursor.rowcount

    def get_unread_counts(self, user_id: str) -> Dict[str, int]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT category, COUNT(*) FROM inbox_items WHERE user_id=? AND read=0 AND muted=0 GROUP BY category",
                (user_id,),
            ).fetchall()
        by_category = {row[0]: row[1] for row in rows}
        counts = {"total": sum(n for c, n in by_category.items() if c != InboxCategory.DM.value)}
        for name in ("mentions", "likes", "follows", "reposts", "replies"):
            (category,) = _FILTERS[name]
            counts[name] = by_category.get(category.value, 0)
        return counts

    def delete_notification(self, user_id: str, item_id: int) -> bool:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                "UPDATE inbox_items SET muted=1 WHERE user_id=? AND seq=?",
                (user_id, item_id),
            )
        return cursor.rowcount > 0


def deliver_activity(inbox: SQLiteInboxStore, activity: "Activity") -> int:
    category = category_for_activity(activity)
    recipients = parse_addressees(activity.to, activity.cc, activity.actor_id)
    return inbox.deliver_to_inbox(activity.id, [(user_id, category) for user_id in recipients])
