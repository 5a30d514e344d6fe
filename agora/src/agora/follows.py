from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, List

from .errors import BadRequest, Conflict, NotFound
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend


class FollowStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass
class Follow:
    follower_id: str
    following_id: str
    status: FollowStatus
    created_at_ms: int

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "follower_id": self.follower_id,
            "following_id": self.following_id,
            "status": self.status.value,
            "created_at_ms": self.created_at_ms,
        }


class SQLiteFollowStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def follow(self, follower_id: str, following_id: str, *, requires_approval: bool = False) -> Follow:
        if follower_id == following_id:
            raise BadRequest("Cannot follow yourself")
        status = FollowStatus.PENDING if requires_approval else FollowStatus.ACCEPTED
        follow = Follow(follower_id, following_id, status, _now_ms())
        with self._backend.lock:
            conn = self._backend.connection
            row = conn.execute(
                "SELECT status FROM follows WHERE follower_id=? AND following_id=?",
                (follower_id, following_id),
            ).fetchone()
            if row is not None:
                if row[0] == FollowStatus.ACCEPTED.value:
                    raise Conflict("Already following")
                if row[0] == FollowStatus.PENDING.value:
                    raise Conflict("Follow request already sent")
                conn.execute(
                    "DELETE FROM follows WHERE follower_id=? AND following_id=?",
                    (follower_id, following_id),
                )
            conn.execute(
                "INSERT INTO follows (follower_id, following_id, status, created_at_ms) VALUES (?, ?, ?, ?)",
                (follower_id, following_id, status.value, follow.created_at_ms),
            )
        return follow

    def _set_status(self, follower_id: str, following_id: str, status: FollowStatus) -> None:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                "UPDATE follows SET status=? WHERE follower_id=? AND following_id=? AND status='PENDING'",
                (status.value, follower_id, following_id),
            )
        if cursor.rowcount == 0:
            raise NotFound("Follow request not found")

    def accept(self, follower_id: str, following_id: str) -> None:
        self._set_status(follower_id, following_id, FollowStatus.ACCEPTED)

    def reject(self, follower_id: str, following_id: str) -> None:
        self._set_status(follower_id, following_id, FollowStatus.REJECTED)

    def unfollow(self, follower_id: str, following_id: str) -> bool:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                "DELETE FROM follows WHERE follower_id=? AND following_id=?",
                (follower_id, following_id),
            )
        return cursor.rowcount > 0

    def get_status(self, follower_id: str, following_id: str) -> FollowStatus | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT status FROM follows WHERE follower_id=? AND following_id=?",
                (follower_id, following_id),
            ).fetchone()
        return FollowStatus(row[0]) if row is not None else None

    def is_following(self, follower_id: str, following_id: str) -> bool:
        return self.get_status(follower_id, following_id) == FollowStatus.ACCEPTED

    def following_ids(self, user_id: str) -> List[str]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT following_id FROM follows WHERE follower_id=? AND status='ACCEPTED'",
                (user_id,),
            ).fetchall()
        return [row[0] for row in rows]

    def follower_ids(self, user_id: str) -> List[str]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT follower_id FROM follows WHERE following_id=? AND status='ACCEPTED'",
                (user_id,),
            ).fetchall()
        return [row[0] for row in rows]
