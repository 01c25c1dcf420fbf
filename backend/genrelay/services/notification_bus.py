"""In-process fan-out of completion events to live listeners.

Each subscription owns a bounded mailbox. Publishing never blocks: when a
listener's mailbox is full the message is dropped for that listener only.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

EVENT_GENERATION_COMPLETED = "generation_completed"
EVENT_PING = "ping"


@dataclass(frozen=True)
class Notification:
    event: str
    data: dict[str, Any]


@dataclass(eq=False)
class Subscription:
    client_id: str
    mailbox: asyncio.Queue = field(repr=False)

    async def get(self) -> Notification:
        return await self.mailbox.get()


class NotificationBus:
    """Client id → subscriptions, with drop-on-full delivery."""

    def __init__(self, mailbox_size: int = 8) -> None:
        self.mailbox_size = mailbox_size
        self._subscribers: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, client_id: str) -> Subscription:
        sub = Subscription(client_id=client_id, mailbox=asyncio.Queue(maxsize=self.mailbox_size))
        with self._lock:
            self._subscribers.setdefault(client_id, []).append(sub)
            total = len(self._subscribers[client_id])
        logger.info("Listener subscribed: client=%s (total=%d)", client_id, total)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.client_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(sub.client_id, None)
        logger.info("Listener unsubscribed: client=%s", sub.client_id)

    def subscriber_count(self, client_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(client_id, []))

    def publish(self, client_id: str, event: str, data: dict[str, Any]) -> int:
        """Deliver to every current subscription of ``client_id``; returns how many accepted it."""
        with self._lock:
            targets = list(self._subscribers.get(client_id, []))

        note = Notification(event=event, data=data)
        delivered = 0
        for sub in targets:
            try:
                sub.mailbox.put_nowait(note)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("dropping sse message due to slow consumer: client=%s event=%s", client_id, event)
        return delivered
