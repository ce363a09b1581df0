"""Common utility functions."""

from .geo import (
    EARTH_RADIUS_KM,
    InvalidCoordinateError,
    Point,
    bounding_box,
    distance_km,
    initial_bearing,
    longitude_ranges,
    normalize_heading,
    shortest_heading_delta,
    validate_heading,
    validate_point,
    within_radius,
)

__all__ = [
    "EARTH_RADIUS_KM",
    "InvalidCoordinateError",
    "Point",
    "bounding_box",
    "distance_km",
    "initial_bearing",
    "longitude_ranges",
    "normalize_heading",
    "shortest_heading_delta",
    "validate_heading",
    "validate_point",
    "within_radius",
]
