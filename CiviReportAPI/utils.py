import math
from datetime import datetime, timezone
from typing import NamedTuple

EARTH_RADIUS_M = 6371000.0


class BoundingBox(NamedTuple):
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime, matching the DateTime columns.

    Returns:
        datetime: The current time in UTC without tzinfo.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points.

    Args:
        lat1 (float): Latitude of the first point.
        lon1 (float): Longitude of the first point.
        lat2 (float): Latitude of the second point.
        lon2 (float): Longitude of the second point.

    Returns:
        float: Distance in meters.
    """
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def bounding_box(latitude: float, longitude: float, radius_m: float) -> BoundingBox:
    """
    Lat/lon box enclosing a circle of `radius_m` around a point.

    The box is a cheap index-friendly prefilter; callers refine with
    `haversine_meters`.

    Args:
        latitude (float): Center latitude.
        longitude (float): Center longitude.
        radius_m (float): Radius in meters.

    Returns:
        BoundingBox: The enclosing box, clamped to valid latitudes.
    """
    dlat = math.degrees(radius_m / EARTH_RADIUS_M)
    cos_lat = math.cos(math.radians(latitude))
    if cos_lat < 1e-6:
        dlon = 180.0
    else:
        dlon = min(180.0, math.degrees(radius_m / (EARTH_RADIUS_M * cos_lat)))
    return BoundingBox(
        min_lat=max(-90.0, latitude - dlat),
        max_lat=min(90.0, latitude + dlat),
        min_lon=longitude - dlon,
        max_lon=longitude + dlon,
    )
