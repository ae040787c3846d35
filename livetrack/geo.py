"""
Geographic helpers shared by ingest and ETA prediction
"""

import math
from typing import Any

EARTH_RADIUS_METERS = 6371000
MAX_LAT = 90.0
MIN_LAT = -90.0
MAX_LON = 180.0
MIN_LON = -180.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return distance in meters between two lat/lon points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi/2)**2 + math.cos(phi1)*math.cos(phi2)*math.sin(dlambda/2)**2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_number(value: Any) -> bool:
    """True for finite ints/floats; bools are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def is_valid_coordinate(lat: Any, lon: Any) -> bool:
    """Range check plus rejection of the (0, 0) "null island" fix."""
    if not is_number(lat) or not is_number(lon):
        return False
    if not MIN_LAT <= lat <= MAX_LAT or not MIN_LON <= lon <= MAX_LON:
        return False
    if lat == 0 and lon == 0:
        return False
    return True
