"""
Datum conversion between WGS-84 (raw GPS) and GCJ-02 (map tiles in mainland China).

Both directions use the published Krasovsky ellipsoid constants. The arithmetic
is kept in a fixed order so that results match other clients bit-for-bit.
"""

import math
from typing import Tuple

# Krasovsky 1940 ellipsoid
SEMI_MAJOR_AXIS = 6378245.0
ECCENTRICITY_SQUARED = 0.00669342162296594323

# Bounding region where the correction applies
MIN_LONGITUDE = 72.004
MAX_LONGITUDE = 137.8347
MIN_LATITUDE = 0.8293
MAX_LATITUDE = 55.8271


def is_outside_china(latitude: float, longitude: float) -> bool:
    """Return True when the point lies outside the correction region."""
    if longitude < MIN_LONGITUDE or longitude > MAX_LONGITUDE:
        return True
    if latitude < MIN_LATITUDE or latitude > MAX_LATITUDE:
        return True
    return False


def _transform_latitude(x: float, y: float) -> float:
    ret = -100.0 + 2.0 * x + 3.0 * y + 0.2 * y * y + 0.1 * x * y
    ret += 0.2 * math.sqrt(abs(x))
    ret += (20.0 * math.sin(6.0 * x * math.pi) + 20.0 * math.sin(2.0 * x * math.pi)) * 2.0 / 3.0
    ret += (20.0 * math.sin(y * math.pi) + 40.0 * math.sin(y / 3.0 * math.pi)) * 2.0 / 3.0
    ret += (160.0 * math.sin(y / 12.0 * math.pi) + 320.0 * math.sin(y * math.pi / 30.0)) * 2.0 / 3.0
    return ret


def _transform_longitude(x: float, y: float) -> float:
    ret = 300.0 + x + 2.0 * y + 0.1 * x * x + 0.1 * x * y
    ret += 0.1 * math.sqrt(abs(x))
    ret += (20.0 * math.sin(6.0 * x * math.pi) + 20.0 * math.sin(2.0 * x * math.pi)) * 2.0 / 3.0
    ret += (20.0 * math.sin(x * math.pi) + 40.0 * math.sin(x / 3.0 * math.pi)) * 2.0 / 3.0
    ret += (150.0 * math.sin(x / 12.0 * math.pi) + 300.0 * math.sin(x / 30.0 * math.pi)) * 2.0 / 3.0
    return ret


def _offset(latitude: float, longitude: float) -> Tuple[float, float]:
    d_lat = _transform_latitude(longitude - 105.0, latitude - 35.0)
    d_lng = _transform_longitude(longitude - 105.0, latitude - 35.0)

    rad_lat = latitude / 180.0 * math.pi
    magic = math.sin(rad_lat)
    magic = 1 - ECCENTRICITY_SQUARED * magic * magic
    sqrt_magic = math.sqrt(magic)

    d_lat = (d_lat * 180.0) / ((SEMI_MAJOR_AXIS * (1 - ECCENTRICITY_SQUARED)) / (magic * sqrt_magic) * math.pi)
    d_lng = (d_lng * 180.0) / (SEMI_MAJOR_AXIS / sqrt_magic * math.cos(rad_lat) * math.pi)
    return d_lat, d_lng


def wgs84_to_gcj02(latitude: float, longitude: float) -> Tuple[float, float]:
    """
    Convert a raw GPS position to the map provider's datum.

    Points outside the correction region are returned unchanged.
    """
    if is_outside_china(latitude, longitude):
        return latitude, longitude

    d_lat, d_lng = _offset(latitude, longitude)
    return latitude + d_lat, longitude + d_lng


def gcj02_to_wgs84(latitude: float, longitude: float) -> Tuple[float, float]:
    """Approximate inverse of wgs84_to_gcj02 (single iteration, a few meters off)."""
    if is_outside_china(latitude, longitude):
        return latitude, longitude

    d_lat, d_lng = _offset(latitude, longitude)
    return latitude - d_lat, longitude - d_lng
