"""
Driver location tracking.

This module handles:
    - Filtering raw fixes (accuracy gate, datum transform, throttle)
    - Updating driver positions and order track history
"""

from .location_filter import LocationFilter
from .tracker import LocationTracker

__all__ = [
    "LocationFilter",
    "LocationTracker",
]
