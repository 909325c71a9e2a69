"""Great-circle distance helpers for proximity matching."""
from __future__ import annotations

import math

from utils.errors import ValidationError

EARTH_RADIUS_M = 6_371_000.0
# Metres per degree of latitude on the same sphere.
_METRES_PER_DEGREE = math.pi * EARTH_RADIUS_M / 180.0


def haversine_distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance in metres on a spherical Earth. Adequate at city-block scale."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def bounding_box(lat: float, lng: float, radius_m: float) -> tuple[float, float, float, float]:
    """Return (min_lat, max_lat, min_lng, max_lng) enclosing a radius around a point."""
    d_lat = radius_m / _METRES_PER_DEGREE
    cos_lat = math.cos(math.radians(lat))
    d_lng = 180.0 if cos_lat < 1e-9 else min(180.0, radius_m / (_METRES_PER_DEGREE * cos_lat))
    return lat - d_lat, lat + d_lat, lng - d_lng, lng + d_lng


def in_bounding_box(box: tuple[float, float, float, float], lat: float, lng: float) -> bool:
    """Containment test for a box from bounding_box. Longitude edges may cross the antimeridian."""
    min_lat, max_lat, min_lng, max_lng = box
    if not min_lat <= lat <= max_lat:
        return False
    half_width = (max_lng - min_lng) / 2
    if half_width >= 180.0:
        return True
    centre = min_lng + half_width
    return abs((lng - centre + 180.0) % 360.0 - 180.0) <= half_width


def validate_coordinates(lat, lng) -> tuple[float, float]:
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise ValidationError("Location must include numeric lat and lng", field="location")
    if math.isnan(lat_f) or math.isnan(lng_f):
        raise ValidationError("Location coordinates must be numbers", field="location")
    if not -90.0 <= lat_f <= 90.0:
        raise ValidationError("Latitude must be between -90 and 90", field="location.lat")
    if not -180.0 <= lng_f <= 180.0:
        raise ValidationError("Longitude must be between -180 and 180", field="location.lng")
    return lat_f, lng_f
