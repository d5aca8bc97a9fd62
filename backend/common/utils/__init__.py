"""Common utility functions."""

from .geo import bounding_box, calculate_distance, calculate_distance_km
from .coords import wgs84_to_gcj02, gcj02_to_wgs84, is_outside_china

__all__ = [
    "bounding_box",
    "calculate_distance",
    "calculate_distance_km",
    "wgs84_to_gcj02",
    "gcj02_to_wgs84",
    "is_outside_china",
]
