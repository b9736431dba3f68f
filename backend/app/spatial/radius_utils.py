"""
radius_utils.py — Great-circle distance and radius filtering.

Provides:
    - Haversine distance calculation between two (lat, lon) points
    - Point-in-radius checks (boundary inclusive)
    - Bounding-box pre-filter for performance at scale
    - Generic radius filtering of located items (alert history, nearby alerts)

All distances are in **kilometers**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where:
    φ  = latitude in radians
    λ  = longitude in radians
    R  = 6371 km

The result is returned unrounded: radius checks compare against the raw
value so that a point exactly on the boundary stays inside.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6371.0

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees, with optional accuracy (m)."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None

    def __post_init__(self) -> None:
        if not (math.isfinite(self.latitude) and math.isfinite(self.longitude)):
            raise ValueError(
                f"Coordinate must be finite, got ({self.latitude}, {self.longitude})"
            )
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @property
    def lat_rad(self) -> float:
        """Latitude in radians."""
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        """Longitude in radians."""
        return math.radians(self.longitude)

    @property
    def is_null_island(self) -> bool:
        """True for the (0, 0) placeholder many clients send when GPS fails."""
        return self.latitude == 0.0 and self.longitude == 0.0

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
        }


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine(point1: Coordinate, point2: Coordinate) -> float:
    """
    Compute the great-circle distance between two points using the
    Haversine formula.

    Parameters
    ----------
    point1 : Coordinate
        Origin point (e.g. alert location).
    point2 : Coordinate
        Target point (e.g. a user's last known location).

    Returns
    -------
    float
        Distance in kilometers.

    Examples
    --------
    >>> haversine(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    >>> round(haversine(Coordinate(0, 0), Coordinate(1, 0)), 1)
    111.2
    """
    d_lat = point2.lat_rad - point1.lat_rad
    d_lon = point2.lon_rad - point1.lon_rad

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(point1.lat_rad)
        * math.cos(point2.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))

    return EARTH_RADIUS_KM * c


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before expensive Haversine)
# ---------------------------------------------------------------------------

def bounding_box(center: Coordinate, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Compute a lat/lon bounding box that fully contains the circle defined
    by (center, radius_km).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees. Near the
    poles, or when the box would wrap the antimeridian, the longitude
    range opens to the full [-180, 180].
    """
    angular = radius_km / EARTH_RADIUS_KM

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    # Longitude delta widens toward the poles: asin(sin θ / cos φ)
    cos_lat = math.cos(center.lat_rad)
    sin_ang = math.sin(min(angular, math.pi / 2))
    if cos_lat > 1e-10 and sin_ang < cos_lat and min_lat > -90.0 and max_lat < 90.0:
        delta_lon = math.degrees(math.asin(sin_ang / cos_lat))
    else:
        delta_lon = 180.0

    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon
    if min_lon < -180.0 or max_lon > 180.0:
        min_lon, max_lon = -180.0, 180.0

    # Pad by a hair so float noise never rejects an exact-boundary point
    pad = 1e-9
    return (
        max(min_lat - pad, -90.0),
        min(max_lat + pad, 90.0),
        max(min_lon - pad, -180.0),
        min(max_lon + pad, 180.0),
    )


def inside_bbox(
    point: Coordinate,
    box: Tuple[float, float, float, float],
) -> bool:
    """Quick rectangular check."""
    min_lat, max_lat, min_lon, max_lon = box
    return min_lat <= point.latitude <= max_lat and min_lon <= point.longitude <= max_lon


# ---------------------------------------------------------------------------
# Radius filtering
# ---------------------------------------------------------------------------

def filter_within_radius(
    center: Coordinate,
    items: Iterable[T],
    radius_km: float,
    *,
    location_of: Callable[[T], Optional[Coordinate]],
    sort_by_distance: bool = False,
) -> List[Tuple[T, float]]:
    """
    Keep the items whose location lies within ``radius_km`` of ``center``.

    Items whose ``location_of`` returns None are skipped. Uses a
    bounding-box pre-filter, then the precise Haversine check.

    Returns
    -------
    list of (item, distance_km)
        In input order, or nearest-first when ``sort_by_distance``.
    """
    if radius_km < 0:
        raise ValueError(f"Radius must be non-negative, got {radius_km}")

    box = bounding_box(center, radius_km)
    matched: List[Tuple[T, float]] = []

    for item in items:
        location = location_of(item)
        if location is None or not inside_bbox(location, box):
            continue
        dist = haversine(center, location)
        if dist <= radius_km:
            matched.append((item, dist))

    if sort_by_distance:
        matched.sort(key=lambda pair: pair[1])

    return matched


# ---------------------------------------------------------------------------
# Utility: Human-readable distance
# ---------------------------------------------------------------------------

def format_distance(km: float) -> str:
    """
    Format a distance for notification messages.

    >>> format_distance(0.0)
    '0.0km'
    >>> format_distance(3.7266)
    '3.7km'
    """
    return f"{km:.1f}km"
