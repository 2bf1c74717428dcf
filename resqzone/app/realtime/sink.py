"""
sink.py — Fire-and-forget realtime notifications.

Provides:
    • NotificationSink protocol (push_to_user / push_to_room)
    • RedisNotificationSink — publishes JSON envelopes to redis channels
    • LoggingNotificationSink — development backend, logs instead of publishing
    • Lazy async redis client shared by the sink, the SSE stream and health

Rooms and channels:

    user_{id}   per-user channel (list updates, new alerts)
    chat_{id}   per-group channel

    redis channel = REDIS_CHANNEL_PREFIX + room, e.g. ``resqzone:user_7``

Envelope published on every push:

    {"event": "chat:list_update:trigger", "room": "user_7",
     "payload": {...}, "ts": "2024-05-01T12:00:00+00:00"}

A push never raises: an unreachable redis is logged at WARNING and the
calling operation carries on.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from resqzone.app.core.config import settings

logger = logging.getLogger(__name__)


# ── Event names ──
EVENT_LIST_UPDATE = "chat:list_update:trigger"
EVENT_ALERT_NEW = "alert:new"


def user_room(user_id: int) -> str:
    return f"user_{user_id}"


def chat_room(chat_id: int) -> str:
    return f"chat_{chat_id}"


def channel_name(room: str, prefix: Optional[str] = None) -> str:
    return f"{settings.REDIS_CHANNEL_PREFIX if prefix is None else prefix}{room}"


def build_envelope(room: str, event: str, payload: Optional[Dict[str, Any]]) -> str:
    return json.dumps(
        {
            "event": event,
            "room": room,
            "payload": payload or {},
            "ts": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )


class NotificationSink(Protocol):
    """Realtime push target. Implementations must not raise."""

    async def push_to_user(
        self, user_id: int, event: str, payload: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    async def push_to_room(
        self, room_id: str, event: str, payload: Optional[Dict[str, Any]] = None,
    ) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════
# Redis client (created on first use)
# ═══════════════════════════════════════════════════════════════════════════

_redis_client = None


def get_redis():
    """Get or create the shared async redis client."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        _redis_client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("Redis client created: %s", settings.redis_dsn_redacted)
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


# ═══════════════════════════════════════════════════════════════════════════
# Sinks
# ═══════════════════════════════════════════════════════════════════════════

class RedisNotificationSink:
    """Publishes every push to the room's redis channel."""

    def __init__(self, client=None, channel_prefix: Optional[str] = None):
        self._client = client
        self.channel_prefix = (
            settings.REDIS_CHANNEL_PREFIX if channel_prefix is None else channel_prefix
        )

    @property
    def client(self):
        if self._client is None:
            self._client = get_redis()
        return self._client

    async def push_to_user(
        self, user_id: int, event: str, payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.push_to_room(user_room(user_id), event, payload)

    async def push_to_room(
        self, room_id: str, event: str, payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        channel = channel_name(room_id, self.channel_prefix)
        try:
            receivers = await self.client.publish(channel, build_envelope(room_id, event, payload))
            logger.debug(
                "Published %s to %s (%s receivers)", event, channel, receivers,
                extra={"event": event, "room": room_id},
            )
        except Exception as e:
            logger.warning(
                "Notify failed for %s on %s: %s", event, channel, e,
                extra={"event": event, "room": room_id},
            )


class LoggingNotificationSink:
    """Development sink: records pushes in the log and in ``sent``."""

    def __init__(self, keep: int = 200):
        self.keep = keep
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    async def push_to_user(
        self, user_id: int, event: str, payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.push_to_room(user_room(user_id), event, payload)

    async def push_to_room(
        self, room_id: str, event: str, payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.sent.append((room_id, event, payload or {}))
        del self.sent[:-self.keep]
        logger.info(
            "Notify %s → %s", event, room_id,
            extra={"event": event, "room": room_id},
        )


_sink: Optional[NotificationSink] = None


def get_sink() -> NotificationSink:
    """FastAPI dependency: the process-wide sink chosen by NOTIFY_BACKEND."""
    global _sink
    if _sink is None:
        if settings.NOTIFY_BACKEND == "log":
            _sink = LoggingNotificationSink()
        else:
            _sink = RedisNotificationSink()
        logger.info("Notification backend: %s", settings.NOTIFY_BACKEND)
    return _sink


async def safe_push(sink: NotificationSink, room_id: str, event: str,
                    payload: Optional[Dict[str, Any]] = None) -> None:
    """Push through ``sink``; a misbehaving sink is logged, never raised."""
    try:
        await sink.push_to_room(room_id, event, payload)
    except Exception as e:
        logger.warning(
            "Sink %s raised on %s → %s: %s", type(sink).__name__, event, room_id, e,
            extra={"event": event, "room": room_id},
        )
