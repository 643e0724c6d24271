from __future__ import annotations

import math

from .models import Location

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(a: Location, b: Location) -> float:
    """Great-circle distance between two points, in meters."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def is_outside(center: Location, radius_m: float, point: Location) -> tuple[bool, float]:
    distance = haversine_m(center, point)
    return distance > float(radius_m), distance
