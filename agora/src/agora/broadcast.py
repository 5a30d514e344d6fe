"""In-process live channels feeding the ``/v1/stream`` event stream.

Delivery is fire and forget: a publish with no subscribers is dropped and a
connection that cannot accept a frame is evicted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Collection, Dict, Iterable, List, Optional, Set

if TYPE_CHECKING:  # pragma: no cover
    from .activities import Activity


logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "GLOBAL"
PING_FRAME = ": ping\n\n"


def global_channel() -> str:
    return GLOBAL_CHANNEL


def context_channel(context_id: str) -> str:
    return f"CONTEXT:{context_id}"


def home_channel(user_id: str) -> str:
    return f"HOME:{user_id}"


def encode_event(data: Any, event: str | None = None) -> str:
    payload = json.dumps(data, separators=(",", ":"))
    if event:
        return f"event: {event}\ndata: {payload}\n\n"
    return f"data: {payload}\n\n"


class ConnectionClosed(Exception):
    pass


class LiveConnection:
    """One open stream: a bounded queue of encoded frames drained by the HTTP writer."""

    def __init__(self, user_id: str | None = None, *, max_queue: int = 1000) -> None:
        self.user_id = user_id
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=max_queue)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, frame: str) -> None:
        if self._closed:
            raise ConnectionClosed("connection closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.close()
            raise ConnectionClosed("backpressure") from None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def next_message(self) -> str | None:
        """Return the next frame, or ``None`` once the connection has been closed."""

        if self._closed and self._queue.empty():
            return None
        frame = await self._queue.get()
        if frame is None:
            return None
        return frame


class LiveBroadcaster:
    def __init__(
        self,
        *,
        max_connections_per_user: int = 5,
        sweep_interval_s: float = 60,
        sweep_enabled: bool = False,
    ) -> None:
        self.max_connections_per_user = max_connections_per_user
        self.sweep_interval_s = sweep_interval_s
        self.sweep_enabled = sweep_enabled
        self._channels: Dict[str, List[LiveConnection]] = {}
        self._sweeper_task: asyncio.Task | None = None

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def connection_count(self, channel: str | None = None) -> int:
        if channel is not None:
            return len(self._channels.get(channel, []))
        return sum(len(conns) for conns in self._channels.values())

    def viewers(self, channel: str) -> Set[str | None]:
        """User ids (``None`` for anonymous) currently subscribed to ``channel``."""

        return {connection.user_id for connection in self._channels.get(channel, [])}

    def add_connection(self, channel: str, connection: LiveConnection) -> None:
        connections = self._channels.setdefault(channel, [])
        if connection.user_id is not None:
            owned = [c for c in connections if c.user_id == connection.user_id]
            if len(owned) >= self.max_connections_per_user:
                oldest = owned[0]
                oldest.close()
                connections.remove(oldest)
                logger.debug("evicted oldest connection for %s on %s", connection.user_id, channel)
        connections.append(connection)

    def remove_connection(self, channel: str, connection: LiveConnection) -> None:
        connections = self._channels.get(channel)
        if not connections:
            return
        try:
            connections.remove(connection)
        except ValueError:
            return
        if not connections:
            self._channels.pop(channel, None)

    def broadcast_to_channel(
        self,
        channel: str,
        data: Any,
        *,
        event: str | None = None,
        viewers: Collection[str | None] | None = None,
    ) -> int:
        """Enqueue ``data`` on the connections of ``channel``; return how many accepted it.

        When ``viewers`` is given only connections whose user is in it receive the frame.
        """

        connections = self._channels.get(channel)
        if not connections:
            return 0
        frame = encode_event(data, event)
        delivered = 0
        for connection in list(connections):
            if viewers is not None and connection.user_id not in viewers:
                continue
            try:
                connection.enqueue(frame)
            except ConnectionClosed:
                logger.debug("dropping closed connection on %s", channel)
                self.remove_connection(channel, connection)
            else:
                delivered += 1
        return delivered

    def broadcast_new_activity(
        self,
        activity: "Activity",
        home_user_ids: Iterable[str] = (),
        *,
        context_viewers: Collection[str | None] | None = None,
    ) -> None:
        message = {"type": "new_post", "activity": activity.to_api_dict()}
        if "public" in activity.to:
            self.broadcast_to_channel(GLOBAL_CHANNEL, message, event="new_post")
        if activity.context_id:
            self.broadcast_to_channel(
                context_channel(activity.context_id), message, event="new_post", viewers=context_viewers
            )
        for user_id in home_user_ids:
            self.broadcast_to_channel(home_channel(user_id), message, event="new_post")

    def broadcast_reaction(
        self,
        reaction: "Activity",
        target: "Activity",
        *,
        context_viewers: Collection[str | None] | None = None,
    ) -> None:
        message = {
            "type": "new_reaction",
            "reaction": {
                "id": reaction.id,
                "type": reaction.type,
                "target_activity_id": target.id,
                "user_id": reaction.actor_id,
                "published_ms": reaction.published_ms,
            },
        }
        if "public" in target.to:
            self.broadcast_to_channel(GLOBAL_CHANNEL, message, event="new_reaction")
        if target.context_id:
            self.broadcast_to_channel(
                context_channel(target.context_id), message, event="new_reaction", viewers=context_viewers
            )

    def sweep(self) -> int:
        """Ping every connection, evict those that fail, drop empty channels; return evictions."""

        evicted = 0
        for channel, connections in list(self._channels.items()):
            for connection in list(connections):
                try:
                    connection.enqueue(PING_FRAME)
                except ConnectionClosed:
                    connections.remove(connection)
                    evicted += 1
            if not connections:
                self._channels.pop(channel, None)
        logger.debug("live sweep evicted %d connections, %d channels open", evicted, len(self._channels))
        return evicted

    def start_sweeper(self) -> None:
        if not self.sweep_enabled:
            return
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_s)
                self.sweep()
        except asyncio.CancelledError:
            return

    def close_all(self) -> None:
        for connections in self._channels.values():
            for connection in connections:
                connection.close()
        self._channels.clear()
