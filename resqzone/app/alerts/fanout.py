"""
fanout.py — Broadcast creation and per-user alert delivery.

This is the coordinator that:
    1. Validates an alert request
    2. Persists the Broadcast row (emergency alerts only)
    3. Selects recipients (users within the radius, or an explicit id list)
    4. Writes one Delivery + one delivery-log row per recipient, concurrently
    5. Pushes ``alert:new`` to every recipient whose Delivery landed
    6. Reports the outcome, raising PartialFailure when any write failed

═══════════════════════════════════════════════════════════════════════════
FANOUT FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Validate        │  title, message, center, radius > 0
    │                     │  urgency defaults to advisory
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Broadcast row   │  system_alerts, category = emergency
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Targeting       │  users with a position → users_within_radius
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Per-user writes │  user_alerts row, then emergency_logs row
    │     (bounded        │  (sent | failed); each recipient is its own
    │      concurrency)   │  autocommit unit and never aborts the others
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  5. Notify          │  alert:new → user_{id}, after the writes
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  6. Result          │  FanoutResult, or PartialFailure carrying it
    └─────────────────────┘

Per-recipient writes run in no particular order. Rows committed before a
caller timeout stay committed.

═══════════════════════════════════════════════════════════════════════════
RETRY
═══════════════════════════════════════════════════════════════════════════

A failed Delivery insert is retried ``max_retries`` times (default 0)
with backoff:

    exponential: delay = base × 2^(attempt - 1)
    linear:      delay = base × attempt
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import and_, delete, insert, select, update

from resqzone.app.alerts.models import (
    AlertType,
    Broadcast,
    BroadcastCategory,
    Delivery,
    DeliveryStatus,
    DirectedAlertRequest,
    EmergencyAlertRequest,
    FanoutResult,
    ReadScope,
    Recipient,
    RecipientOutcome,
    Urgency,
)
from resqzone.app.core.errors import (
    InvalidCoordinate,
    InvalidInput,
    NotFound,
    PartialFailure,
    StoreError,
)
from resqzone.app.core.tables import (
    emergency_logs,
    system_alert_reads,
    system_alerts,
    user_alerts,
    users,
)
from resqzone.app.realtime.sink import EVENT_ALERT_NEW, NotificationSink, safe_push, user_room
from resqzone.app.spatial.geo_index import Coordinate, users_within_radius

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Retry parameters for per-recipient Delivery inserts."""
    max_retries: int = 0
    backoff_base_seconds: float = 0.25
    backoff_type: str = "exponential"  # or "linear"


def _compute_backoff(config: RetryConfig, attempt: int) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based)."""
    if config.backoff_type == "exponential":
        return config.backoff_base_seconds * (2 ** (attempt - 1))
    return config.backoff_base_seconds * attempt


# ═══════════════════════════════════════════════════════════════════════════
# Validation helpers
# ═══════════════════════════════════════════════════════════════════════════

def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"'{field}' is required", field=field)
    return value.strip()


def _coerce_urgency(value: Union[Urgency, str, None]) -> Urgency:
    if value is None or value == "":
        return Urgency.ADVISORY
    try:
        return Urgency(value)
    except ValueError:
        raise InvalidInput(
            f"Unknown urgency '{value}'", field="urgency",
            allowed=[u.value for u in Urgency],
        ) from None


def _require_radius(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput("'radius_km' is required", field="radius_km")
    if not math.isfinite(value) or value <= 0:
        raise InvalidInput(f"Radius must be positive, got {value}", field="radius_km")
    return float(value)


def _unique_ids(user_ids: Sequence[Any]) -> List[int]:
    seen: Dict[int, None] = {}
    for uid in user_ids:
        if isinstance(uid, bool) or not isinstance(uid, int):
            raise InvalidInput(f"Invalid user id {uid!r}", field="user_ids")
        seen.setdefault(uid, None)
    return list(seen)


# ═══════════════════════════════════════════════════════════════════════════
# AlertFanout
# ═══════════════════════════════════════════════════════════════════════════

class AlertFanout:
    """Creates broadcasts and delivers alerts through a Store and a sink."""

    def __init__(
        self,
        store,
        sink: NotificationSink,
        *,
        concurrency: int = 20,
        retry: Optional[RetryConfig] = None,
    ):
        self.store = store
        self.sink = sink
        self.concurrency = max(1, concurrency)
        self.retry = retry or RetryConfig()

    # ── Emergency (geographic) ──

    async def send_emergency_alert(self, request: EmergencyAlertRequest) -> FanoutResult:
        """
        Persist a Broadcast and deliver it to every user within the radius.

        Raises InvalidInput / InvalidCoordinate before any write. Raises
        PartialFailure after all writes when some recipients failed; the
        exception's ``result`` is the same FanoutResult a clean run returns.
        """
        title = _require_text(request.title, "title")
        message = _require_text(request.message, "message")
        if request.center is None:
            raise InvalidInput("'center' is required", field="center")
        center = request.center
        radius_km = _require_radius(request.radius_km)
        urgency = _coerce_urgency(request.urgency)

        written = await self.store.execute(
            insert(system_alerts).values(
                title=title,
                message=message,
                category=BroadcastCategory.EMERGENCY.value,
                urgency=urgency.value,
                latitude=center.latitude,
                longitude=center.longitude,
                radius_km=radius_km,
                is_active=True,
                created_by=request.created_by,
            )
        )
        broadcast_id = written.insert_id

        candidates = await self._positioned_users()
        matched = users_within_radius(center, radius_km, candidates)
        logger.info(
            "Emergency broadcast %s: %d/%d users within %.3f km",
            broadcast_id, len(matched), len(candidates), radius_km,
            extra={
                "broadcast_id": broadcast_id,
                "recipient_count": len(matched),
                "lat": center.latitude,
                "lon": center.longitude,
            },
        )

        values = {
            "type": AlertType.EMERGENCY.value,
            "related_id": broadcast_id,
            "title": title,
            "message": message,
            "urgency": urgency.value,
            "latitude": center.latitude,
            "longitude": center.longitude,
            "radius_km": radius_km,
            "source": "system",
        }
        outcomes = await self._dispatch(
            [r.user_id for r in matched], values, broadcast_id=broadcast_id,
        )
        result = FanoutResult(
            broadcast_id=broadcast_id,
            delivered_count=len(matched),
            outcomes=outcomes,
        )
        return await self._finish(result, title, urgency)

    # ── Directed (explicit recipients) ──

    async def send_directed_alert(self, request: DirectedAlertRequest) -> FanoutResult:
        """Deliver one alert to each listed user; no Broadcast, no log rows."""
        if not request.user_ids:
            raise InvalidInput("'user_ids' must not be empty", field="user_ids")
        recipients = _unique_ids(request.user_ids)
        title = _require_text(request.title, "title")
        message = _require_text(request.message, "message")
        urgency = _coerce_urgency(request.urgency)
        try:
            alert_type = AlertType(request.alert_type)
        except ValueError:
            raise InvalidInput(
                f"Unknown alert type '{request.alert_type}'", field="alert_type",
            ) from None

        center = request.center
        values = {
            "type": alert_type.value,
            "related_id": request.related_id,
            "title": title,
            "message": message,
            "urgency": urgency.value,
            "latitude": center.latitude if center else None,
            "longitude": center.longitude if center else None,
            "radius_km": request.radius_km if center else None,
            "source": request.source or "system",
        }
        outcomes = await self._dispatch(recipients, values)
        result = FanoutResult(
            broadcast_id=None,
            delivered_count=len(recipients),
            outcomes=outcomes,
        )
        logger.info(
            "Directed alert '%s' to %d users", title, len(recipients),
            extra={"recipient_count": len(recipients)},
        )
        return await self._finish(result, title, urgency)

    # ── Read state ──

    async def mark_read(
        self,
        delivery_ref: int,
        read_type: Union[ReadScope, str] = ReadScope.USER,
        user_id: Optional[int] = None,
    ) -> None:
        """
        Mark a Delivery (``user``) or a Broadcast (``system``) as read.

        Repeating the call is a no-op. For ``user``, passing ``user_id``
        restricts the update to that user's own Delivery.
        """
        try:
            scope = ReadScope(read_type)
        except ValueError:
            raise InvalidInput(
                f"Unknown read type '{read_type}'", field="type",
                allowed=[s.value for s in ReadScope],
            ) from None

        if scope == ReadScope.USER:
            condition = user_alerts.c.id == delivery_ref
            if user_id is not None:
                condition = and_(condition, user_alerts.c.user_id == user_id)
            written = await self.store.execute(
                update(user_alerts).where(condition).values(is_read=True)
            )
            # some drivers report only changed rows
            if written.affected_rows == 0:
                exists = await self.store.scalar(select(user_alerts.c.id).where(condition))
                if exists is None:
                    raise NotFound("Delivery", delivery_id=delivery_ref)
            return

        if user_id is None:
            raise InvalidInput("'user_id' is required for system reads", field="user_id")
        await self.get_broadcast(delivery_ref)
        if await self.store.scalar(select(users.c.id).where(users.c.id == user_id)) is None:
            raise NotFound("User", user_id=user_id)
        written = await self.store.insert_ignore(
            system_alert_reads,
            {"user_id": user_id, "system_alert_id": delivery_ref},
        )
        logger.debug(
            "Broadcast %s read by %s (new marker: %s)",
            delivery_ref, user_id, written.affected_rows > 0,
            extra={"broadcast_id": delivery_ref, "user_id": user_id},
        )

    # ── Queries & maintenance ──

    async def list_user_deliveries(
        self, user_id: int, *, unread_only: bool = False, limit: int = 100,
    ) -> List[Delivery]:
        stmt = select(user_alerts).where(user_alerts.c.user_id == user_id)
        if unread_only:
            stmt = stmt.where(user_alerts.c.is_read.is_(False))
        stmt = stmt.order_by(user_alerts.c.created_at.desc(), user_alerts.c.id.desc()).limit(limit)
        return [Delivery.from_row(row) for row in await self.store.fetch_all(stmt)]

    async def get_broadcast(self, broadcast_id: int) -> Broadcast:
        row = await self.store.fetch_one(
            select(system_alerts).where(system_alerts.c.id == broadcast_id)
        )
        if row is None:
            raise NotFound("Broadcast", broadcast_id=broadcast_id)
        return Broadcast.from_row(row)

    async def list_broadcasts(
        self,
        user_id: Optional[int] = None,
        category: Optional[str] = None,
        *,
        include_inactive: bool = False,
    ) -> List[Broadcast]:
        """Broadcasts newest first, with ``is_read`` set for ``user_id``."""
        if user_id is not None:
            stmt = select(system_alerts, system_alert_reads.c.id.label("read_marker")).select_from(
                system_alerts.outerjoin(
                    system_alert_reads,
                    and_(
                        system_alert_reads.c.system_alert_id == system_alerts.c.id,
                        system_alert_reads.c.user_id == user_id,
                    ),
                )
            )
        else:
            stmt = select(system_alerts)
        if not include_inactive:
            stmt = stmt.where(system_alerts.c.is_active.is_(True))
        if category:
            stmt = stmt.where(system_alerts.c.category == category)
        stmt = stmt.order_by(system_alerts.c.created_at.desc(), system_alerts.c.id.desc())

        broadcasts = []
        for row in await self.store.fetch_all(stmt):
            row["is_read"] = row.pop("read_marker", None) is not None
            broadcasts.append(Broadcast.from_row(row))
        return broadcasts

    async def delete_delivery(self, delivery_id: int, user_id: Optional[int] = None) -> None:
        condition = user_alerts.c.id == delivery_id
        if user_id is not None:
            condition = and_(condition, user_alerts.c.user_id == user_id)
        written = await self.store.execute(delete(user_alerts).where(condition))
        if written.affected_rows == 0:
            raise NotFound("Delivery", delivery_id=delivery_id)
        logger.info("Delivery %s deleted", delivery_id)

    async def deactivate_broadcast(self, broadcast_id: int) -> Broadcast:
        """Hide a Broadcast from listings; its Deliveries are untouched."""
        await self.store.execute(
            update(system_alerts)
            .where(system_alerts.c.id == broadcast_id)
            .values(is_active=False)
        )
        broadcast = await self.get_broadcast(broadcast_id)
        logger.info(
            "Broadcast %s deactivated", broadcast_id,
            extra={"broadcast_id": broadcast_id},
        )
        return broadcast

    # ═══════════════════════════════════════════════════════════════════
    # Internals
    # ═══════════════════════════════════════════════════════════════════

    async def _positioned_users(self) -> List[Recipient]:
        rows = await self.store.fetch_all(
            select(users.c.id, users.c.latitude, users.c.longitude).where(
                users.c.latitude.is_not(None), users.c.longitude.is_not(None),
            )
        )
        recipients: List[Recipient] = []
        for row in rows:
            try:
                position = Coordinate(row["latitude"], row["longitude"])
            except InvalidCoordinate:
                logger.warning(
                    "Skipping user %s with invalid stored position (%s, %s)",
                    row["id"], row["latitude"], row["longitude"],
                    extra={"user_id": row["id"]},
                )
                continue
            recipients.append(Recipient(user_id=row["id"], position=position))
        return recipients

    async def _dispatch(
        self,
        user_ids: List[int],
        values: Dict[str, Any],
        *,
        broadcast_id: Optional[int] = None,
    ) -> List[RecipientOutcome]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(uid: int) -> RecipientOutcome:
            async with semaphore:
                return await self._deliver_to_recipient(uid, values, broadcast_id)

        return list(await asyncio.gather(*(bounded(uid) for uid in user_ids)))

    async def _deliver_to_recipient(
        self,
        user_id: int,
        values: Dict[str, Any],
        broadcast_id: Optional[int],
    ) -> RecipientOutcome:
        """Delivery insert with retry, then the log row when there is a broadcast."""
        outcome = RecipientOutcome(user_id=user_id, status=DeliveryStatus.FAILED)

        for attempt in range(1, self.retry.max_retries + 2):
            outcome.attempts = attempt
            try:
                written = await self.store.execute(
                    insert(user_alerts).values(user_id=user_id, is_read=False, **values)
                )
            except StoreError as e:
                outcome.error = e.message
                if attempt <= self.retry.max_retries:
                    delay = _compute_backoff(self.retry, attempt)
                    logger.info(
                        "Retry %d/%d for user %s in %.2fs",
                        attempt, self.retry.max_retries, user_id, delay,
                        extra={"user_id": user_id},
                    )
                    await asyncio.sleep(delay)
                continue
            outcome.delivery_id = written.insert_id
            outcome.status = DeliveryStatus.SENT
            outcome.error = None
            break

        if outcome.status == DeliveryStatus.FAILED:
            logger.error(
                "Delivery failed for user %s after %d attempts: %s",
                user_id, outcome.attempts, outcome.error,
                extra={"user_id": user_id, "broadcast_id": broadcast_id},
            )

        if broadcast_id is not None:
            try:
                await self.store.execute(
                    insert(emergency_logs).values(
                        alert_id=broadcast_id,
                        user_id=user_id,
                        delivery_status=outcome.status.value,
                    )
                )
            except StoreError as e:
                outcome.log_error = e.message
                logger.error(
                    "Delivery log write failed for user %s: %s", user_id, e.message,
                    extra={"user_id": user_id, "broadcast_id": broadcast_id},
                )

        return outcome

    async def _finish(self, result: FanoutResult, title: str, urgency: Urgency) -> FanoutResult:
        for outcome in result.outcomes:
            if outcome.delivered:
                await safe_push(
                    self.sink,
                    user_room(outcome.user_id),
                    EVENT_ALERT_NEW,
                    {
                        "delivery_id": outcome.delivery_id,
                        "broadcast_id": result.broadcast_id,
                        "title": title,
                        "urgency": urgency.value,
                    },
                )

        if result.is_partial:
            logger.warning(
                "Fanout partial: %d failed, %d log failures of %d",
                len(result.failed_user_ids),
                len(result.log_failure_user_ids),
                result.delivered_count,
                extra={
                    "broadcast_id": result.broadcast_id,
                    "recipient_count": result.delivered_count,
                },
            )
            raise PartialFailure(result)
        return result
