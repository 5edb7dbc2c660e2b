"""Great-circle distance and geofence circle helpers."""

from __future__ import annotations

import math
from typing import Final

EARTH_RADIUS_M: Final[float] = 6_371_000.0

MIN_ZONE_RADIUS_M: Final[float] = 30.0
MAX_ZONE_RADIUS_M: Final[float] = 500.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in meters between two points given in decimal degrees.

    Args:
        lat1: Latitude of the first point.
        lon1: Longitude of the first point.
        lat2: Latitude of the second point.
        lon2: Longitude of the second point.

    Returns:
        Great-circle distance on a spherical Earth, in meters.
    """

    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    half_dlat = math.radians(lat2 - lat1) / 2.0
    half_dlon = math.radians(lon2 - lon1) / 2.0

    h = math.sin(half_dlat) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(half_dlon) ** 2
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def is_inside_circle(lat: float, lon: float, center_lat: float, center_lon: float, radius_m: float) -> bool:
    """True when the point lies inside the circle or on its edge."""

    return haversine_m(lat, lon, center_lat, center_lon) <= radius_m


def clamp_radius(radius_m: float) -> float:
    """Clamp a zone radius into [30, 500] meters."""

    return min(MAX_ZONE_RADIUS_M, max(MIN_ZONE_RADIUS_M, float(radius_m)))
