"""
models.py — Shared data structures for broadcasts and per-user deliveries.

Defines:
    • Urgency         — advisory < moderate < severe
    • AlertType       — what a Delivery refers to (chat, emergency, ...)
    • DeliveryStatus  — per-recipient log status (sent / failed)
    • ReadScope       — which read-state a mark-read call targets
    • Recipient       — a user id with an optional position
    • EmergencyAlertRequest / DirectedAlertRequest — fanout inputs
    • Broadcast / Delivery — persisted records, shaped for clients
    • RecipientOutcome / FanoutResult — fanout bookkeeping

═══════════════════════════════════════════════════════════════════════════
DELIVERY LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    created (log: sent | failed) ──mark_read──▶ read
                                                 │
                                                 └── mark_read again: no-op

A Broadcast is immutable after creation except for ``is_active``.
Deliveries copy title / message / urgency / geofence from their broadcast
so clients can render them without a join.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from resqzone.app.spatial.geo_index import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Urgency(str, Enum):
    ADVISORY = "advisory"
    MODERATE = "moderate"
    SEVERE   = "severe"


class AlertType(str, Enum):
    """Delivery categories (``user_alerts.type``)."""
    CHAT      = "chat"
    TASK      = "task"
    QUIZ      = "quiz"
    SYSTEM    = "system"
    EMERGENCY = "emergency"
    WEATHER   = "weather"


class BroadcastCategory(str, Enum):
    MAINTENANCE = "maintenance"
    UPDATE      = "update"
    SECURITY    = "security"
    GENERAL     = "general"
    EMERGENCY   = "emergency"
    WEATHER     = "weather"


class DeliveryStatus(str, Enum):
    SENT   = "sent"
    FAILED = "failed"


class ReadScope(str, Enum):
    USER   = "user"    # flips user_alerts.is_read
    SYSTEM = "system"  # inserts a (user, broadcast) read marker


# ═══════════════════════════════════════════════════════════════════════════
# Inputs
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Recipient:
    """A candidate recipient; ``position`` is None when never recorded."""
    user_id: int
    position: Optional[Coordinate] = None


@dataclass
class EmergencyAlertRequest:
    """
    Geographic alert: every user within ``radius_km`` of ``center``.

    ``urgency`` defaults to advisory. ``center`` may be given as a
    Coordinate or left None to fail validation with InvalidInput.
    """
    title: str
    message: str
    center: Optional[Coordinate]
    radius_km: Optional[float]
    urgency: Optional[Urgency] = None
    created_by: Optional[int] = None


@dataclass
class DirectedAlertRequest:
    """Non-geographic alert addressed to explicit user ids."""
    user_ids: Sequence[int]
    title: str
    message: str
    urgency: Optional[Urgency] = None
    source: str = "system"
    alert_type: AlertType = AlertType.SYSTEM
    related_id: Optional[int] = None
    center: Optional[Coordinate] = None
    radius_km: Optional[float] = None


# ═══════════════════════════════════════════════════════════════════════════
# Persisted records
# ═══════════════════════════════════════════════════════════════════════════

def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _position(lat: Optional[float], lon: Optional[float]) -> Optional[Coordinate]:
    if lat is None or lon is None:
        return None
    return Coordinate(lat, lon)


@dataclass
class Broadcast:
    """One system / emergency alert event (``system_alerts`` row)."""
    id: int
    title: str
    message: Optional[str]
    category: str
    urgency: str
    center: Optional[Coordinate] = None
    radius_km: Optional[float] = None
    is_active: bool = True
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    is_read: bool = False  # per-viewer flag, filled when listing for a user

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Broadcast":
        return cls(
            id=row["id"],
            title=row["title"],
            message=row.get("message"),
            category=row.get("category") or BroadcastCategory.GENERAL.value,
            urgency=row.get("urgency") or Urgency.ADVISORY.value,
            center=_position(row.get("latitude"), row.get("longitude")),
            radius_km=row.get("radius_km"),
            is_active=bool(row.get("is_active", True)),
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            is_read=bool(row.get("is_read", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "urgency": self.urgency,
            "latitude": self.center.latitude if self.center else None,
            "longitude": self.center.longitude if self.center else None,
            "radius_km": self.radius_km,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "is_read": self.is_read,
        }


@dataclass
class Delivery:
    """A per-recipient notification (``user_alerts`` row)."""
    id: int
    user_id: int
    type: str
    title: Optional[str]
    message: Optional[str]
    related_id: Optional[int] = None
    is_read: bool = False
    urgency: Optional[str] = None
    center: Optional[Coordinate] = None
    radius_km: Optional[float] = None
    source: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Delivery":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            title=row.get("title"),
            message=row.get("message"),
            related_id=row.get("related_id"),
            is_read=bool(row.get("is_read", False)),
            urgency=row.get("urgency"),
            center=_position(row.get("latitude"), row.get("longitude")),
            radius_km=row.get("radius_km"),
            source=row.get("source"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "related_id": self.related_id,
            "is_read": self.is_read,
            "urgency": self.urgency,
            "latitude": self.center.latitude if self.center else None,
            "longitude": self.center.longitude if self.center else None,
            "radius_km": self.radius_km,
            "source": self.source,
            "created_at": _iso(self.created_at),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Fanout bookkeeping
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RecipientOutcome:
    """What happened for one recipient of a fanout."""
    user_id: int
    delivery_id: Optional[int] = None
    status: DeliveryStatus = DeliveryStatus.SENT
    attempts: int = 0
    error: Optional[str] = None
    log_error: Optional[str] = None  # the delivery-log write itself failed

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.SENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "delivery_id": self.delivery_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "log_error": self.log_error,
        }


@dataclass
class FanoutResult:
    """
    Aggregate result of one fanout.

    ``delivered_count`` is the number of matched recipients, whether or not
    each write was individually confirmed; see ``failed_user_ids``.
    """
    broadcast_id: Optional[int]
    delivered_count: int
    outcomes: List[RecipientOutcome] = field(default_factory=list)

    @property
    def failed_user_ids(self) -> List[int]:
        return [o.user_id for o in self.outcomes if not o.delivered]

    @property
    def log_failure_user_ids(self) -> List[int]:
        return [o.user_id for o in self.outcomes if o.log_error]

    @property
    def is_partial(self) -> bool:
        return any(not o.delivered or o.log_error for o in self.outcomes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "broadcast_id": self.broadcast_id,
            "delivered_count": self.delivered_count,
            "failed_user_ids": self.failed_user_ids,
            "log_failure_user_ids": self.log_failure_user_ids,
        }
