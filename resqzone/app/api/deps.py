"""
FastAPI dependencies wiring the core services to the shared store and sink.

Tests override ``get_store`` and ``get_sink``; the service factories pick
the overrides up automatically.
"""

from __future__ import annotations

from fastapi import Depends

from resqzone.app.alerts.fanout import AlertFanout, RetryConfig
from resqzone.app.core.config import settings
from resqzone.app.core.database import get_store
from resqzone.app.groups.directory import GroupDirectory
from resqzone.app.realtime.sink import get_sink


def get_alert_fanout(store=Depends(get_store), sink=Depends(get_sink)) -> AlertFanout:
    return AlertFanout(
        store,
        sink,
        concurrency=settings.FANOUT_CONCURRENCY,
        retry=RetryConfig(
            max_retries=settings.FANOUT_MAX_RETRIES,
            backoff_base_seconds=settings.FANOUT_RETRY_BACKOFF_SECONDS,
        ),
    )


def get_group_directory(
    store=Depends(get_store),
    sink=Depends(get_sink),
    fanout: AlertFanout = Depends(get_alert_fanout),
) -> GroupDirectory:
    return GroupDirectory(
        store, sink, fanout, default_radius_km=settings.LOCAL_GROUP_RADIUS_KM,
    )
