"""
geo_index.py — Great-circle distance and radius queries.

Provides:
    - Validated ``Coordinate`` value type
    - Central-angle (spherical law of cosines) distance in kilometres
    - Nearest covering group lookup (create-or-join decisions)
    - Users-within-radius filtering (emergency fanout targeting)
    - Bounding-box pre-filter for performance at scale

All distances are in **kilometers**. Coordinates are in **decimal degrees**.

Mathematical Foundation
=======================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂), in radians:

    cos c = cos φ₁ · cos φ₂ · cos(λ₂ − λ₁) + sin φ₁ · sin φ₂
    d     = R · acos(cos c)

with R = 6371 km (mean Earth radius). Floating-point rounding can push
``cos c`` a hair outside [-1, 1] for identical or antipodal points, so it
is clamped before ``acos``. The result is rounded to 6 decimal places
(millimetres): rounding is non-decreasing, so distance stays monotonic
along a bearing and identical points give exactly 0.

Tie-breaking
============
When two groups cover a point at exactly the same distance, the one with
the lower id (the older group) wins. The order of the candidate list
never matters.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar

from resqzone.app.core.errors import InvalidCoordinate, InvalidInput

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6371.0
DISTANCE_PRECISION: int = 6  # km decimals; radius checks compare at this precision
_BBOX_PAD_DEG: float = 1e-6  # ~11 cm, keeps points at exactly R inside the box


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        try:
            lat = float(self.latitude)
            lon = float(self.longitude)
        except (TypeError, ValueError):
            raise InvalidCoordinate(self.latitude, self.longitude) from None
        if not (math.isfinite(lat) and -90.0 <= lat <= 90.0):
            raise InvalidCoordinate(
                self.latitude, self.longitude,
                f"Latitude must be in [-90, 90], got {self.latitude}",
            )
        if not (math.isfinite(lon) and -180.0 <= lon <= 180.0):
            raise InvalidCoordinate(
                self.latitude, self.longitude,
                f"Longitude must be in [-180, 180], got {self.longitude}",
            )
        object.__setattr__(self, "latitude", lat)
        object.__setattr__(self, "longitude", lon)

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)

    def to_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}


class GeoBound(Protocol):
    """Anything with an id and an optional circular geofence."""
    id: int
    center: Optional[Coordinate]
    radius_km: Optional[float]


class Positioned(Protocol):
    """Anything with an optional recorded position."""
    position: Optional[Coordinate]


G = TypeVar("G", bound=GeoBound)
P = TypeVar("P", bound=Positioned)


# ---------------------------------------------------------------------------
# Distance
# ---------------------------------------------------------------------------

def distance_km(a: Coordinate, b: Coordinate) -> float:
    """
    Great-circle distance between two points.

    >>> distance_km(Coordinate(51.5074, -0.1278), Coordinate(51.5074, -0.1278))
    0.0
    """
    # cos²φ + sin²φ can land an ulp below 1, which acos turns into ~0.1 m
    if a.latitude == b.latitude and a.longitude == b.longitude:
        return 0.0
    cos_c = (
        math.cos(a.lat_rad) * math.cos(b.lat_rad) * math.cos(b.lon_rad - a.lon_rad)
        + math.sin(a.lat_rad) * math.sin(b.lat_rad)
    )
    cos_c = min(1.0, max(-1.0, cos_c))
    return round(EARTH_RADIUS_KM * math.acos(cos_c), DISTANCE_PRECISION)


def destination_point(origin: Coordinate, bearing_deg: float, dist_km: float) -> Coordinate:
    """
    Point reached by travelling ``dist_km`` from ``origin`` along an initial
    bearing (degrees clockwise from north).
    """
    angular = dist_km / EARTH_RADIUS_KM
    bearing = math.radians(bearing_deg)
    lat1, lon1 = origin.lat_rad, origin.lon_rad

    lat2 = math.asin(
        math.sin(lat1) * math.cos(angular)
        + math.cos(lat1) * math.sin(angular) * math.cos(bearing)
    )
    lon2 = lon1 + math.atan2(
        math.sin(bearing) * math.sin(angular) * math.cos(lat1),
        math.cos(angular) - math.sin(lat1) * math.sin(lat2),
    )
    # normalise longitude to [-180, 180]
    lon_deg = (math.degrees(lon2) + 540.0) % 360.0 - 180.0
    return Coordinate(math.degrees(lat2), lon_deg)


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before trigonometry)
# ---------------------------------------------------------------------------

def _bounding_box(center: Coordinate, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Lat/lon box that fully contains the circle (center, radius_km).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees. Near the poles,
    or when the box would wrap the antimeridian, longitude is left
    unconstrained.
    """
    angular = radius_km / EARTH_RADIUS_KM

    min_lat = center.latitude - math.degrees(angular) - _BBOX_PAD_DEG
    max_lat = center.latitude + math.degrees(angular) + _BBOX_PAD_DEG

    cos_lat = math.cos(center.lat_rad)
    ratio = math.sin(angular) / cos_lat if cos_lat > 1e-10 else 2.0
    if ratio < 1.0 and min_lat > -90.0 and max_lat < 90.0:
        delta_lon = math.degrees(math.asin(ratio)) + _BBOX_PAD_DEG
    else:
        delta_lon = 180.0

    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon
    if min_lon < -180.0 or max_lon > 180.0:
        min_lon, max_lon = -180.0, 180.0

    return (max(min_lat, -90.0), min(max_lat, 90.0), min_lon, max_lon)


def _inside_bbox(point: Coordinate, bbox: Tuple[float, float, float, float]) -> bool:
    min_lat, max_lat, min_lon, max_lon = bbox
    return min_lat <= point.latitude <= max_lat and min_lon <= point.longitude <= max_lon


# ---------------------------------------------------------------------------
# Group queries
# ---------------------------------------------------------------------------

def covering_groups(point: Coordinate, groups: Iterable[G]) -> List[Tuple[G, float]]:
    """
    Every geo-bound group whose radius includes ``point``, nearest first.

    Returns (group, distance_km) pairs ordered by (distance, id). Groups
    without a center or radius are skipped.
    Distances are compared at ``DISTANCE_PRECISION``, so a point up to
    0.5 mm beyond the radius still counts as covered.
    """
    covering: List[Tuple[G, float]] = []
    for group in groups:
        if group.center is None or group.radius_km is None:
            continue
        dist = distance_km(point, group.center)
        if dist <= group.radius_km:
            covering.append((group, dist))

    covering.sort(key=lambda pair: (pair[1], pair[0].id))
    return covering


def nearest_covering_group(point: Coordinate, groups: Iterable[G]) -> Optional[G]:
    """
    The geo-bound group nearest to ``point`` among those covering it.

    Equidistant groups resolve to the lower id. Returns None when no
    candidate's radius reaches the point.
    """
    covering = covering_groups(point, groups)
    return covering[0][0] if covering else None


# ---------------------------------------------------------------------------
# Radius filtering
# ---------------------------------------------------------------------------

def users_within_radius(
    center: Coordinate,
    radius_km: float,
    users: Sequence[P],
) -> List[P]:
    """
    Users whose position lies within or exactly at ``radius_km`` of ``center``.

    Users without a recorded position are never included. Input order is
    preserved.

    Boundary tolerance: distances are rounded to ``DISTANCE_PRECISION``
    (1 mm) before the comparison, so a user up to 0.5 mm beyond
    ``radius_km`` is included. Below that the central-angle formula
    itself is not exact.
    """
    if not (isinstance(radius_km, (int, float)) and math.isfinite(radius_km)) or radius_km <= 0:
        raise InvalidInput(f"Radius must be positive, got {radius_km}", field="radius_km")

    bbox = _bounding_box(center, radius_km)
    matched: List[P] = []
    unpositioned = 0

    for user in users:
        if user.position is None:
            unpositioned += 1
            continue
        if not _inside_bbox(user.position, bbox):
            continue
        if distance_km(center, user.position) <= radius_km:
            matched.append(user)

    logger.debug(
        "Radius filter: %d/%d matched, %d without position (radius=%.3f km)",
        len(matched), len(users), unpositioned, radius_km,
    )
    return matched
