"""
Server-Sent Events relay for room channels.

Subscribes to one room's redis channel and yields SSE frames:

    event: chat:list_update:trigger
    data: {"event": ..., "room": "user_7", "payload": {...}, "ts": ...}

A ``: ping`` comment is sent every SSE_HEARTBEAT_SECONDS so proxies keep
the connection open. The subscription is always released when the client
goes away.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import AsyncGenerator, Optional

from resqzone.app.core.config import settings
from resqzone.app.realtime.sink import channel_name, get_redis

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": ping\n\n"


def format_sse(data: str, event: Optional[str] = None) -> str:
    lines = []
    if event:
        lines.append(f"event: {event}")
    for chunk in data.splitlines() or [""]:
        lines.append(f"data: {chunk}")
    return "\n".join(lines) + "\n\n"


def _event_name(raw: str) -> Optional[str]:
    try:
        return json.loads(raw).get("event")
    except (ValueError, AttributeError):
        return None


async def stream_room_events(
    room: str,
    *,
    client=None,
    heartbeat_seconds: Optional[float] = None,
    poll_timeout: float = 1.0,
) -> AsyncGenerator[str, None]:
    """Yield SSE frames for every envelope published to ``room``."""
    client = client or get_redis()
    heartbeat = heartbeat_seconds or settings.SSE_HEARTBEAT_SECONDS
    channel = channel_name(room)
    pubsub = client.pubsub()

    try:
        await pubsub.subscribe(channel)
        logger.info("SSE subscribed to %s", channel, extra={"room": room})
        last_beat = time.monotonic()

        while True:
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=poll_timeout,
            )
            now = time.monotonic()
            if now - last_beat >= heartbeat:
                yield HEARTBEAT_FRAME
                last_beat = now
            if message and message.get("type") == "message":
                data = message.get("data") or ""
                yield format_sse(data, _event_name(data))
    except asyncio.CancelledError:
        logger.debug("SSE client left %s", channel, extra={"room": room})
        raise
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        logger.info("SSE unsubscribed from %s", channel, extra={"room": room})
