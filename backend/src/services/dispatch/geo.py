"""Great-circle distance helpers."""

import math
from dataclasses import dataclass

EARTH_RADIUS_METERS = 6_371_000.0


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points in meters.

    Args:
        lat1, lon1: First point in decimal degrees
        lat2, lon2: Second point in decimal degrees

    Returns:
        Distance in meters
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))

    return c * EARTH_RADIUS_METERS


def bounding_box(point: GeoPoint, radius_meters: float) -> tuple[float, float, float, float]:
    """
    Latitude/longitude box enclosing a circle around ``point``.

    Near the poles, when the circle crosses one, or when it crosses the
    antimeridian, the box spans every longitude.

    Returns:
        (min_latitude, max_latitude, min_longitude, max_longitude)
    """
    angular_radius = radius_meters / EARTH_RADIUS_METERS
    lat_delta = math.degrees(angular_radius)
    cos_lat = math.cos(math.radians(point.latitude))
    ratio = math.sin(angular_radius) / cos_lat if cos_lat > 1e-12 else 2.0
    if ratio >= 1.0:
        return (
            max(-90.0, point.latitude - lat_delta),
            min(90.0, point.latitude + lat_delta),
            -180.0,
            180.0,
        )
    lon_delta = math.degrees(math.asin(ratio))
    if point.longitude - lon_delta < -180.0 or point.longitude + lon_delta > 180.0:
        return (point.latitude - lat_delta, point.latitude + lat_delta, -180.0, 180.0)
    return (
        point.latitude - lat_delta,
        point.latitude + lat_delta,
        point.longitude - lon_delta,
        point.longitude + lon_delta,
    )
