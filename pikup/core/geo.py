# pikup/core/geo.py
from math import atan2, cos, radians, sin
from typing import Any, Mapping, Optional

EARTH_RADIUS_MILES = 3959.0


def _coords(point: Any) -> tuple:
    if isinstance(point, Mapping):
        lat = point.get("latitude", point.get("lat"))
        lng = point.get("longitude", point.get("lng"))
    else:
        lat = getattr(point, "latitude")
        lng = getattr(point, "longitude")
    return float(lat), float(lng)


def distance_miles(a, b) -> float:
    """
    a, b: mappings with latitude/longitude (or lat/lng), or objects with
    latitude/longitude attributes. Great-circle distance in miles.
    """
    lat1, lng1 = _coords(a)
    lat2, lng2 = _coords(b)
    dlat = radians(lat2 - lat1)
    dlon = radians(lng2 - lng1)
    s = sin(dlat/2)**2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon/2)**2
    return 2 * EARTH_RADIUS_MILES * atan2(s**0.5, (1 - s)**0.5)


def has_moved_significantly(previous: Optional[Any], current: Any, threshold_miles: float = 0.03) -> bool:
    # first fix always counts
    if previous is None:
        return True
    return distance_miles(previous, current) > threshold_miles


def within_radius(center, point, radius_miles: float) -> bool:
    return distance_miles(center, point) <= radius_miles
