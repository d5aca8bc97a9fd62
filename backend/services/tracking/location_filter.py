"""
Location filter.

Turns the raw fix stream of each driver into the stream worth publishing:
    - fixes with a declared accuracy outside [0, max_accuracy] are rejected
    - accepted fixes are moved to the GCJ-02 map datum
    - a fix that is both too soon and too close to the last published one
      is suppressed; the first fix of a driver is always published

Elapsed time is measured between device timestamps, so replayed or batched
fixes are filtered the same way as live ones.
"""

import logging
import threading
from dataclasses import replace
from typing import Dict, Optional

from common.utils import calculate_distance, wgs84_to_gcj02
from services.order_lifecycle.types import LocationFix

logger = logging.getLogger(__name__)


class LocationFilter:

    def __init__(
        self,
        min_interval_seconds: float = 3.0,
        min_distance_meters: float = 10.0,
        max_accuracy_meters: float = 100.0,
    ):
        self.min_interval_seconds = min_interval_seconds
        self.min_distance_meters = min_distance_meters
        self.max_accuracy_meters = max_accuracy_meters

        self._lock = threading.Lock()
        self._last_published: Dict[str, LocationFix] = {}

        self.published = 0
        self.suppressed = 0
        self.rejected = 0

    def offer(self, entity_id: str, fix: LocationFix) -> Optional[LocationFix]:
        """
        Decide whether ``fix`` is published.

        Returns:
            The fix in the map datum if it should be published, None otherwise
        """
        if fix.accuracy is not None and not 0 <= fix.accuracy <= self.max_accuracy_meters:
            with self._lock:
                self.rejected += 1
            logger.debug("Rejected fix of %s with accuracy %.1fm", entity_id, fix.accuracy)
            return None

        latitude, longitude = wgs84_to_gcj02(fix.latitude, fix.longitude)
        converted = replace(fix, latitude=latitude, longitude=longitude)

        with self._lock:
            last = self._last_published.get(entity_id)
            if last is not None and self._too_soon(last, converted) and self._too_close(last, converted):
                self.suppressed += 1
                return None
            self._last_published[entity_id] = converted
            self.published += 1

        return converted

    def forget(self, entity_id: str) -> None:
        """Drop the throttle state of one entity; its next fix is published."""
        with self._lock:
            self._last_published.pop(entity_id, None)

    def last_published(self, entity_id: str) -> Optional[LocationFix]:
        return self._last_published.get(entity_id)

    def _too_soon(self, last: LocationFix, fix: LocationFix) -> bool:
        elapsed = (fix.timestamp - last.timestamp).total_seconds()
        return elapsed < self.min_interval_seconds

    def _too_close(self, last: LocationFix, fix: LocationFix) -> bool:
        distance = calculate_distance(last.latitude, last.longitude, fix.latitude, fix.longitude)
        return distance < self.min_distance_meters
