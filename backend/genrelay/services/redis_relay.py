"""Redis Pub/Sub bridge for cross-replica completion events.

The orchestrator publishes to ``genrelay:events:<client_id>``; every API
replica runs ``run()`` in its lifespan and feeds what it receives into its
local NotificationBus, where the listener may be connected.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import redis.asyncio as aioredis

from genrelay.services.notification_bus import NotificationBus

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "genrelay:events:"


class RedisRelay:
    def __init__(self, bus: NotificationBus, redis_url: str, client: aioredis.Redis | None = None) -> None:
        self.bus = bus
        self._client = client or aioredis.from_url(redis_url)
        self.listening = False
        self.connections = 0

    async def publish(self, client_id: str, event: str, data: dict[str, Any]) -> bool:
        """Best-effort publish; returns False instead of raising when Redis fails."""
        try:
            message = json.dumps({"event": event, "data": data})
            await self._client.publish(f"{CHANNEL_PREFIX}{client_id}", message)
        except Exception:
            logger.warning("Failed to publish completion event for client %s", client_id, exc_info=True)
            return False
        return True

    async def run(self, retry_delay: float = 1.0, max_delay: float = 30.0) -> None:
        """Keep ``listen()`` alive until cancelled, reconnecting with doubling delays."""
        delay = retry_delay
        while True:
            connections = self.connections
            try:
                await self.listen()
                logger.warning("Redis relay subscription ended")
            except Exception as e:
                logger.warning("Redis relay listener failed: %s", e)
            if self.connections > connections:
                delay = retry_delay
            logger.info("Redis relay reconnecting in %.1fs", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)

    async def listen(self) -> None:
        """Relay every pattern message into the local bus until the subscription ends."""
        pubsub = self._client.pubsub()
        try:
            await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
            self.listening = True
            self.connections += 1
            logger.info("Redis relay listening on %s*", CHANNEL_PREFIX)
            async for raw_message in pubsub.listen():
                if raw_message.get("type") != "pmessage":
                    continue
                self.dispatch(raw_message.get("channel"), raw_message.get("data"))
        finally:
            self.listening = False
            await pubsub.aclose()

    def dispatch(self, channel: Any, payload: Any) -> None:
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8", errors="replace")
        if not isinstance(channel, str) or not channel.startswith(CHANNEL_PREFIX):
            return
        try:
            message = json.loads(payload)
        except (json.JSONDecodeError, TypeError):
            logger.debug("Ignoring undecodable relay message on %s", channel)
            return
        if not isinstance(message, dict) or not message.get("event"):
            return
        self.bus.publish(channel[len(CHANNEL_PREFIX):], str(message["event"]), message.get("data") or {})

    async def aclose(self) -> None:
        await self._client.aclose()
