"""
Dependency probes behind ``/health`` and ``/health/ready``.

    database  SELECT 1 through the pool   failure → unhealthy (503 on ready)
    redis     PING                        failure → degraded

Redis only carries realtime pushes, so losing it degrades the service:
pushes are dropped while groups and fanout keep working. The redis probe
is skipped entirely when ``NOTIFY_BACKEND`` is ``log``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List

from sqlalchemy import text

from resqzone.app.core.config import settings

logger = logging.getLogger(__name__)

_STARTED = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            out["message"] = self.message
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class HealthReport:
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        worst = HealthStatus.HEALTHY
        for comp in self.components:
            if _SEVERITY[comp.status] > _SEVERITY[worst]:
                worst = comp.status
        return worst

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "checked_at": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _STARTED, 1),
            "components": [c.to_dict() for c in self.components],
        }


async def _probe(
    name: str,
    check: Callable[[], Awaitable[Dict[str, Any]]],
    on_failure: HealthStatus,
) -> ComponentHealth:
    """Time ``check``; any exception marks the component ``on_failure``."""
    comp = ComponentHealth(name=name)
    started = time.monotonic()
    try:
        comp.details = await check()
    except Exception as e:
        comp.status = on_failure
        comp.message = str(e) or type(e).__name__
        logger.warning("Health probe %s failed: %s", name, comp.message)
    comp.latency_ms = (time.monotonic() - started) * 1000
    return comp


async def check_database(engine=None) -> ComponentHealth:
    async def ping() -> Dict[str, Any]:
        nonlocal engine
        if engine is None:
            from resqzone.app.core.database import get_engine
            engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"dialect": engine.dialect.name}

    return await _probe("database", ping, HealthStatus.UNHEALTHY)


async def check_redis(client=None) -> ComponentHealth:
    async def ping() -> Dict[str, Any]:
        redis = client
        if redis is None:
            from resqzone.app.realtime.sink import get_redis
            redis = get_redis()
        await redis.ping()
        return {"url": settings.redis_dsn_redacted}

    return await _probe("redis", ping, HealthStatus.DEGRADED)


async def run_health_check(engine=None, redis_client=None) -> HealthReport:
    """Run every applicable probe concurrently."""
    probes = [check_database(engine)]
    if settings.NOTIFY_BACKEND == "redis":
        probes.append(check_redis(redis_client))
    return HealthReport(components=list(await asyncio.gather(*probes)))
