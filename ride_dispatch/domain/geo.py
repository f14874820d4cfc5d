"""
Geographic helpers: haversine distance, bounding boxes, ETA and H3 cells.

Assumption
----------
We use great-circle (Haversine) distance instead of a real routing engine
(OSRM / Google Maps).  Arrival estimates assume a constant speed, so they
are straight-line approximations, not route-accurate ETAs.

Complexity: O(1) per call, except ``cells_covering`` which is O(k^2) in the
number of H3 rings needed to cover the radius.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import h3

from .errors import InvalidCoordinate

EARTH_RADIUS_KM = 6_371.0
FALLBACK_SPEED_KMH = 30.0


@dataclass(frozen=True)
class Point:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        validate(self.latitude, self.longitude)


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        if not self.min_lat <= lat <= self.max_lat:
            return False
        if self.min_lng <= self.max_lng:
            return self.min_lng <= lng <= self.max_lng
        # box crosses the antimeridian
        return lng >= self.min_lng or lng <= self.max_lng


def validate(latitude: float, longitude: float) -> None:
    """Raise ``InvalidCoordinate`` unless the pair is a real WGS84 point."""
    if (
        latitude is None
        or longitude is None
        or math.isnan(latitude)
        or math.isnan(longitude)
        or abs(latitude) > 90
        or abs(longitude) > 180
    ):
        raise InvalidCoordinate(latitude, longitude)


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def distance(a: Point, b: Point) -> float:
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)


def eta_minutes(
    distance_km: float, assumed_speed_kmh: Optional[float] = None
) -> float:
    """Minutes to cover *distance_km* at *assumed_speed_kmh* (30 km/h if unknown)."""
    speed = assumed_speed_kmh or FALLBACK_SPEED_KMH
    if speed <= 0:
        speed = FALLBACK_SPEED_KMH
    return distance_km / speed * 60


def bounding_box(center: Point, radius_km: float) -> BoundingBox:
    """
    Smallest lat/lng box containing every point within *radius_km*.

    Uses the angular radius so the box stays a superset of the haversine
    circle at any latitude; near the poles it degrades to the full
    longitude range.
    """
    angular = radius_km / EARTH_RADIUS_KM
    dlat = math.degrees(angular)
    min_lat = max(-90.0, center.latitude - dlat)
    max_lat = min(90.0, center.latitude + dlat)

    cos_lat = math.cos(math.radians(center.latitude))
    ratio = math.sin(angular) / cos_lat if cos_lat > 1e-12 else 2.0
    if max_lat >= 90.0 or min_lat <= -90.0 or ratio >= 1.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)

    dlng = math.degrees(math.asin(ratio))
    min_lng = center.longitude - dlng
    max_lng = center.longitude + dlng
    if min_lng < -180.0:
        min_lng += 360.0
    if max_lng > 180.0:
        max_lng -= 360.0
    return BoundingBox(min_lat, max_lat, min_lng, max_lng)


def within_box(box: BoundingBox, lat: float, lng: float) -> bool:
    """Cheap pre-filter before the exact haversine check."""
    return box.contains(lat, lng)


def cell_for(lat: float, lng: float, resolution: int) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(lat, lng, resolution)


def rings_for_radius(radius_km: float, resolution: int) -> int:
    """Number of H3 rings around a cell needed to cover *radius_km*."""
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    return math.ceil(radius_km / edge_km) + 2


def cells_covering(center: Point, radius_km: float, resolution: int) -> set[str]:
    """H3 cells whose union contains the circle of *radius_km* around *center*."""
    origin = cell_for(center.latitude, center.longitude, resolution)
    return set(h3.grid_disk(origin, rings_for_radius(radius_km, resolution)))
