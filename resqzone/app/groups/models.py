"""
models.py — Groups, memberships and directory results.

A Group is either *plain* (direct or ad-hoc chat) or *geo-bound* (a local
community group with a center and a radius). The two geofence fields are
set together or not at all.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from resqzone.app.core.errors import InvalidInput
from resqzone.app.spatial.geo_index import Coordinate


class MemberRole(str, Enum):
    OWNER  = "owner"
    MEMBER = "member"


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


@dataclass(frozen=True)
class AddressHint:
    """Reverse-geocoded address parts used to name a new local group."""
    street: Optional[str] = None
    city: Optional[str] = None

    def label(self) -> Optional[str]:
        for part in (self.street, self.city):
            if part and part.strip():
                return part.strip()
        return None


@dataclass
class Group:
    id: int
    name: Optional[str]
    is_group: bool = True
    center: Optional[Coordinate] = None
    radius_km: Optional[float] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if (self.center is None) != (self.radius_km is None):
            raise InvalidInput(
                "A group's center and radius must be set together",
                field="radius_km", group_id=self.id,
            )

    @property
    def is_geo_bound(self) -> bool:
        return self.center is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Group":
        lat, lon, radius = row.get("latitude"), row.get("longitude"), row.get("radius_km")
        geo = lat is not None and lon is not None and radius is not None
        return cls(
            id=row["id"],
            name=row.get("name"),
            is_group=bool(row.get("is_group", True)),
            center=Coordinate(lat, lon) if geo else None,
            radius_km=radius if geo else None,
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "is_group": self.is_group,
            "latitude": self.center.latitude if self.center else None,
            "longitude": self.center.longitude if self.center else None,
            "radius_km": self.radius_km,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Member:
    """A group member joined with the user's display fields."""
    user_id: int
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    postal_code: Optional[str] = None
    joined_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "name": self.name,
            "postal_code": self.postal_code,
            "role": self.role,
            "joined_at": _iso(self.joined_at),
        }


@dataclass(frozen=True)
class JoinResult:
    group_id: int
    created: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"group_id": self.group_id, "created": self.created}


@dataclass(frozen=True)
class ChatCreation:
    """Outcome of ``create_chat``; ``created`` is False for a reused direct chat."""
    chat_id: int
    created: bool
    member_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "created": self.created,
            "member_ids": list(self.member_ids),
        }


@dataclass(frozen=True)
class MembershipChange:
    group_id: int
    user_id: int
    disbanded: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "user_id": self.user_id,
            "disbanded": self.disbanded,
        }


@dataclass
class GroupSummary:
    """One entry of a user's chat list."""
    group: Group
    viewer_id: int
    members: List[Member] = field(default_factory=list)
    is_nearby: bool = False

    @property
    def role(self) -> Optional[str]:
        for m in self.members:
            if m.user_id == self.viewer_id:
                return m.role
        return None

    @property
    def other_member(self) -> Optional[Member]:
        """The counterpart of a direct chat."""
        if self.group.is_group:
            return None
        return next((m for m in self.members if m.user_id != self.viewer_id), None)

    @property
    def display_name(self) -> str:
        if self.group.is_group:
            return self.group.name or "Unnamed Group"
        other = self.other_member
        return (other.name if other else "") or self.group.name or "Direct Chat"

    def to_dict(self) -> Dict[str, Any]:
        data = self.group.to_dict()
        data.update({
            "name": self.display_name,
            "members": [m.to_dict() for m in self.members],
            "member_count": len(self.members),
            "role": self.role,
            "is_nearby": self.is_nearby,
        })
        return data


@dataclass
class NearbyGroup:
    """A local group covering a point, for discovery."""
    group: Group
    distance_km: float
    member_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = self.group.to_dict()
        data["distance_km"] = self.distance_km
        data["member_count"] = self.member_count
        return data
