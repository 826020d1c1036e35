"""
geo_math.py — Distance computation shared by live matching and fan-out.

Provides:
    - Coordinate: validated (lat, lon) in decimal degrees
    - distance_km: Haversine great-circle distance
    - bounding_box / inside_bbox: cheap rectangular pre-filter
    - is_within_radius: inclusive geofence test

Kilometres and decimal degrees throughout. Great-circle distance:

    h = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    d = 2 · R · atan2(√h, √(1 − h))

    R = 6,371 km (mean Earth radius)

Both the client-side matcher and the server-side dispatcher call
distance_km, so a hazard and a watcher are "near" on exactly the same
terms on either side.

Out-of-range coordinates are rejected at construction, never clamped.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Tuple


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0


# ---------------------------------------------------------------------------
# Core data structure
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        # NaN fails both comparisons
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

    def to_dict(self) -> Dict[str, Any]:
        return {"latitude": self.latitude, "longitude": self.longitude}


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def distance_km(a: Coordinate, b: Coordinate) -> float:
    """
    Great-circle distance between two points (Haversine).

    Parameters
    ----------
    a, b : Coordinate
        Endpoints. Order does not matter.

    Returns
    -------
    float
        Non-negative distance in kilometers.

    Examples
    --------
    >>> round(distance_km(Coordinate(0, 0), Coordinate(0, 1)), 2)
    111.19

    >>> distance_km(Coordinate(10, 10), Coordinate(10, 10))
    0.0
    """
    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(a.lat_rad)
        * math.cos(b.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )
    # Rounding can push h a hair past 1.0 for antipodal points
    h = min(1.0, max(0.0, h))

    return 2.0 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))


def is_within_radius(
    center: Coordinate,
    point: Coordinate,
    radius_km: float,
) -> Tuple[bool, float]:
    """
    Inclusive geofence test.

    Returns
    -------
    (inside, distance_km)
    """
    if radius_km <= 0:
        raise ValueError(f"Radius must be positive, got {radius_km}")

    dist = distance_km(center, point)
    return (dist <= radius_km, dist)


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before Haversine)
# ---------------------------------------------------------------------------

def bounding_box(
    center: Coordinate, radius_km: float,
) -> Tuple[float, float, float, float]:
    """
    Compute (min_lat, max_lat, min_lon, max_lon) fully containing the circle.

    Conservative: anything outside the box is outside the circle. Near the
    poles or the antimeridian the box widens to the full longitude range.
    """
    angular = radius_km / EARTH_RADIUS_KM

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    # Widest longitude offset on the circle is asin(sin(d) / cos(lat)),
    # reached at the tangent points, not at the centre latitude
    cos_lat = math.cos(center.lat_rad)
    ratio = math.sin(angular) / cos_lat if cos_lat > 1e-10 else 2.0
    if ratio < 1.0 and min_lat > -90.0 and max_lat < 90.0:
        delta_lon = math.degrees(math.asin(ratio))
    else:
        delta_lon = 180.0

    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon
    if min_lon < -180.0 or max_lon > 180.0:
        # Circle wraps the antimeridian
        min_lon, max_lon = -180.0, 180.0

    return (
        max(min_lat, -90.0),
        min(max_lat, 90.0),
        min_lon,
        max_lon,
    )


def inside_bbox(
    point: Coordinate,
    box: Tuple[float, float, float, float],
) -> bool:
    """Quick rectangular check."""
    min_lat, max_lat, min_lon, max_lon = box
    return (
        min_lat <= point.latitude <= max_lat
        and min_lon <= point.longitude <= max_lon
    )


# ---------------------------------------------------------------------------
# Utility: Human-readable distance
# ---------------------------------------------------------------------------

def format_distance(km: float) -> str:
    """
    Format a distance for display.

    >>> format_distance(0.45)
    '450 m'
    >>> format_distance(2.2239)
    '2.22 km'
    """
    if km < 1.0:
        return f"{int(km * 1000)} m"
    return f"{km:.2f} km"
