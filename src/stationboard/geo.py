"""Great-circle distance helpers."""

import math
from typing import Iterable

from .models import Coordinates

# Mean radius of Earth in meters
EARTH_RADIUS_M = 6371000.0


def haversine_distance(a: Coordinates, b: Coordinates) -> float:
    """
    Calculate the great circle distance between two points on Earth.
    Returns distance in meters.
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [a.latitude, a.longitude, b.latitude, b.longitude])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # Clamp against floating point drift for antipodal points
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, h)))


def min_distance(position: Coordinates, points: Iterable[Coordinates]) -> float:
    """Distance to the nearest of ``points``, or infinity if there are none."""
    return min((haversine_distance(position, p) for p in points), default=math.inf)


def is_valid_position(position: Coordinates) -> bool:
    lat, lon = position.latitude, position.longitude
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
