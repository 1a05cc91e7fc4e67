"""Great-circle helpers."""

from __future__ import annotations

import math

from fleetstate._constants import EARTH_RADIUS_M


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def point_towards(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
    distance_m: float,
) -> tuple[float, float]:
    """Return the point *distance_m* from the first point along the bearing to the second."""
    total = haversine_m(lat1, lon1, lat2, lon2)
    if total <= 0:
        return lat1, lon1
    fraction = min(1.0, distance_m / total)
    # Linear interpolation is accurate enough at geofence scale.
    return lat1 + (lat2 - lat1) * fraction, lon1 + (lon2 - lon1) * fraction


def format_coordinates(latitude: float, longitude: float) -> str:
    return f"{latitude:.5f}, {longitude:.5f}"
