"""
Geographic utility functions.

This module provides the core geospatial calculations used by dispatch and
tracking: great-circle distance, radius containment and heading arithmetic.
Everything here is pure and side-effect free.
"""

import math
from math import radians, degrees, cos, sin, asin, atan2, sqrt
from typing import List, NamedTuple, Tuple, Union


EARTH_RADIUS_KM = 6371.0


class InvalidCoordinateError(ValueError):
    """Raised when a latitude, longitude or heading is NaN, infinite or out of range."""
    pass


class Point(NamedTuple):
    """A (lat, lng) pair in decimal degrees."""
    lat: float
    lng: float


PointLike = Union[Point, Tuple[float, float]]


def validate_point(point: PointLike) -> Point:
    """
    Validate and coerce a (lat, lng) pair.

    Args:
        point: Point or 2-tuple of latitude/longitude

    Returns:
        Point with float coordinates

    Raises:
        InvalidCoordinateError: If either value is missing, non-numeric,
            non-finite or outside its valid range
    """
    try:
        lat, lng = float(point[0]), float(point[1])
    except (TypeError, ValueError, IndexError):
        raise InvalidCoordinateError(f"Not a coordinate pair: {point!r}")

    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidCoordinateError(f"Non-finite coordinate: ({lat}, {lng})")
    if not -90.0 <= lat <= 90.0:
        raise InvalidCoordinateError(f"Latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise InvalidCoordinateError(f"Longitude out of range: {lng}")
    return Point(lat, lng)


def validate_heading(heading_degrees: float) -> float:
    """Reject NaN/infinite headings; any finite angle is normalized to [0, 360)."""
    try:
        value = float(heading_degrees)
    except (TypeError, ValueError):
        raise InvalidCoordinateError(f"Not a heading: {heading_degrees!r}")
    if not math.isfinite(value):
        raise InvalidCoordinateError(f"Non-finite heading: {value}")
    return normalize_heading(value)


def distance_km(a: PointLike, b: PointLike) -> float:
    """
    Calculate distance between two points in kilometers using Haversine formula.

    Args:
        a: First point (lat, lng)
        b: Second point (lat, lng)

    Returns:
        Distance in kilometers
    """
    a = validate_point(a)
    b = validate_point(b)
    lat1, lon1, lat2, lon2 = map(radians, [a.lat, a.lng, b.lat, b.lng])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    # Rounding can push h a hair above 1 for antipodal points
    c = 2 * asin(sqrt(min(1.0, h)))
    return c * EARTH_RADIUS_KM


def within_radius(center: PointLike, point: PointLike, radius_km: float) -> bool:
    """True if `point` lies within `radius_km` of `center` (boundary inclusive)."""
    return distance_km(center, point) <= float(radius_km)


def normalize_heading(heading_degrees: float) -> float:
    """Map any finite angle onto [0, 360)."""
    value = float(heading_degrees) % 360.0
    # -1e-15 % 360 == 360.0 in floating point
    if value >= 360.0:
        value -= 360.0
    return value


def shortest_heading_delta(from_deg: float, to_deg: float) -> float:
    """
    Signed rotation in (-180, 180] that turns `from_deg` onto `to_deg`
    along the shorter arc.

    Examples:
        shortest_heading_delta(350, 10) == 20
        shortest_heading_delta(10, 350) == -20
    """
    delta = (validate_heading(to_deg) - validate_heading(from_deg)) % 360.0
    if delta > 180.0:
        delta -= 360.0
    return delta


def initial_bearing(a: PointLike, b: PointLike) -> float:
    """Forward azimuth from `a` to `b` in degrees [0, 360)."""
    a = validate_point(a)
    b = validate_point(b)
    lat1, lat2 = radians(a.lat), radians(b.lat)
    dlon = radians(b.lng - a.lng)
    x = sin(dlon) * cos(lat2)
    y = cos(lat1) * sin(lat2) - sin(lat1) * cos(lat2) * cos(dlon)
    return normalize_heading(degrees(atan2(x, y)))


def _offsets(center: Point, radius_km: float) -> Tuple[float, float]:
    lat_offset = degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = abs(cos(radians(center.lat)))
    if cos_lat < 1e-12:
        return lat_offset, 180.0
    return lat_offset, min(180.0, lat_offset / cos_lat)


def bounding_box(center: PointLike, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Approximate (min_lat, max_lat, min_lng, max_lng) box enclosing a circle.

    Used as a cheap prefilter before the exact haversine check. Longitudes
    are clamped to [-180, 180]; use longitude_ranges() for a box that may
    cross the antimeridian.
    """
    center = validate_point(center)
    lat_offset, lng_offset = _offsets(center, radius_km)
    return (
        max(-90.0, center.lat - lat_offset),
        min(90.0, center.lat + lat_offset),
        max(-180.0, center.lng - lng_offset),
        min(180.0, center.lng + lng_offset),
    )


def longitude_ranges(center: PointLike, radius_km: float) -> List[Tuple[float, float]]:
    """
    Longitude intervals covered by the bounding box of a circle.

    A box crossing the antimeridian comes back as two intervals, one on
    each side of it.
    """
    center = validate_point(center)
    _, lng_offset = _offsets(center, radius_km)
    if lng_offset >= 180.0:
        return [(-180.0, 180.0)]

    low, high = center.lng - lng_offset, center.lng + lng_offset
    if low < -180.0:
        return [(low + 360.0, 180.0), (-180.0, high)]
    if high > 180.0:
        return [(low, 180.0), (-180.0, high - 360.0)]
    return [(low, high)]
