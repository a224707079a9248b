# broadcast.py
"""Push channel for round and bet events."""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger("aviator.broadcast")

DEFAULT_QUEUE_SIZE = 1000


class Subscriber:
    """
    One connected client. Events are buffered in a bounded FIFO queue and
    drained by the connection's own sender, so a slow client only ever
    delays itself.
    """

    def __init__(self, user_id: Optional[str] = None, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.user_id = user_id
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.connected_at = datetime.now(timezone.utc)
        self.closed = False

    def offer(self, message: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    async def next_event(self) -> dict[str, Any]:
        return await self.queue.get()


class EventBroadcaster:
    """
    Fan-out of engine events to every subscriber, or to one user's
    subscribers for personal acknowledgements.

    publish() never awaits: the round loop hands the event over and moves
    on. Every message carries a global sequence number so clients can
    detect gaps.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subscribers: set[Subscriber] = set()
        self._by_user: dict[str, set[Subscriber]] = {}
        self._seq = itertools.count(1)
        self._last_seq = 0

    def subscribe(self, user_id: Optional[str] = None) -> Subscriber:
        subscriber = Subscriber(user_id, self.queue_size)
        self._subscribers.add(subscriber)
        if user_id is not None:
            self._by_user.setdefault(user_id, set()).add(subscriber)
        logger.info(f"Subscriber joined (user={user_id}). Total: {len(self._subscribers)}")
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        subscriber.closed = True
        self._subscribers.discard(subscriber)

        if subscriber.user_id is not None:
            peers = self._by_user.get(subscriber.user_id)
            if peers is not None:
                peers.discard(subscriber)
                if not peers:
                    del self._by_user[subscriber.user_id]

        logger.info(f"Subscriber left (user={subscriber.user_id}). Total: {len(self._subscribers)}")

    def publish(
        self,
        event: str,
        data: dict[str, Any],
        user_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Deliver to everyone, or only to user_id's connections."""
        message = {
            "event": event,
            "seq": self._next_seq(),
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        if user_id is None:
            targets = list(self._subscribers)
        else:
            targets = list(self._by_user.get(user_id, ()))

        for subscriber in targets:
            if not subscriber.offer(message):
                logger.warning(f"Dropping slow subscriber (user={subscriber.user_id})")
                self.unsubscribe(subscriber)

        return message

    def _next_seq(self) -> int:
        self._last_seq = next(self._seq)
        return self._last_seq

    @property
    def last_seq(self) -> int:
        """Sequence number of the most recent event, 0 before any."""
        return self._last_seq

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
