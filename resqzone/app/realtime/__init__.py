"""Realtime push: notification sinks and the SSE relay."""

from resqzone.app.realtime.sink import (
    EVENT_ALERT_NEW,
    EVENT_LIST_UPDATE,
    LoggingNotificationSink,
    NotificationSink,
    RedisNotificationSink,
    chat_room,
    get_sink,
    user_room,
)

__all__ = [
    "EVENT_ALERT_NEW",
    "EVENT_LIST_UPDATE",
    "LoggingNotificationSink",
    "NotificationSink",
    "RedisNotificationSink",
    "chat_room",
    "get_sink",
    "user_room",
]
