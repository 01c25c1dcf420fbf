"""Live completion events over Server-Sent Events.

One long-lived stream per connection. The loop multiplexes the subscriber
mailbox with a heartbeat deadline; the subscription is removed when the
client goes away.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from genrelay.api.deps import get_bus
from genrelay.config import get_settings
from genrelay.services.notification_bus import EVENT_PING, NotificationBus, Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def event_stream(
    sub: Subscription,
    bus: NotificationBus,
    heartbeat: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    loop = asyncio.get_running_loop()
    next_ping = loop.time() + heartbeat
    try:
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            remaining = next_ping - loop.time()
            if remaining <= 0:
                yield format_sse(EVENT_PING, {"ts": int(time.time() * 1000)})
                next_ping = loop.time() + heartbeat
                continue
            try:
                note = await asyncio.wait_for(sub.get(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            yield format_sse(note.event, note.data)
    finally:
        bus.unsubscribe(sub)
        logger.info("Generation event stream closed: client=%s", sub.client_id)


@router.get("/events")
async def stream_generation_events(
    request: Request,
    client_id: str = Query(""),
    bus: NotificationBus = Depends(get_bus),
):
    """``generation_completed`` events for ``client_id`` plus periodic pings."""
    client_id = client_id.strip()
    if not client_id:
        raise HTTPException(status_code=400, detail="client_id is required")

    sub = bus.subscribe(client_id)
    return StreamingResponse(
        event_stream(sub, bus, get_settings().SSE_HEARTBEAT_INTERVAL, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
