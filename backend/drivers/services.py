"""
Driver availability.

Drivers toggle themselves online/offline and stream their position. ``busy``
is never set here: only the order state machine moves a driver into and out
of ``busy``.
"""

import logging
from typing import Mapping, Optional

from services.order_lifecycle.exceptions import InvalidInput, PreconditionFailed
from services.order_lifecycle.types import DriverAvailability, DriverStatus, LocationFix
from services.storage.base import DriverStore

logger = logging.getLogger(__name__)


class DriverAvailabilityService:

    def __init__(self, drivers: DriverStore, tracker=None, geo_index=None):
        self.drivers = drivers
        self.tracker = tracker
        # Optional external index (e.g. realtime.geo.RedisDriverLocator) kept in step with positions
        self.geo_index = geo_index

    def get_status(self, driver_id: str) -> DriverAvailability:
        return self.drivers.register(self._require_id(driver_id))

    def go_online(self, driver_id: str) -> DriverAvailability:
        """Offline → online. Going online twice is a no-op."""
        driver_id = self._require_id(driver_id)
        record = self.drivers.register(driver_id)
        if record.status == DriverStatus.ONLINE:
            return record

        updated = self.drivers.compare_and_set_status(driver_id, {DriverStatus.OFFLINE}, DriverStatus.ONLINE)
        if updated is None:
            raise PreconditionFailed(
                f"Driver {driver_id} is {self._status_of(driver_id)}",
                user_message="You are on a trip right now.",
            )
        logger.info("Driver %s is online", driver_id)
        return updated

    def go_offline(self, driver_id: str) -> DriverAvailability:
        """Online → offline. A busy driver has to finish the trip first."""
        driver_id = self._require_id(driver_id)
        record = self.drivers.register(driver_id)
        if record.status == DriverStatus.OFFLINE:
            return record

        updated = self.drivers.compare_and_set_status(driver_id, {DriverStatus.ONLINE}, DriverStatus.OFFLINE)
        if updated is None:
            raise PreconditionFailed(
                f"Driver {driver_id} is {self._status_of(driver_id)}",
                user_message="Finish the current trip before going offline.",
            )
        if self.geo_index is not None:
            self.geo_index.remove_driver(driver_id)
        logger.info("Driver %s is offline", driver_id)
        return updated

    def report_location(self, driver_id: str, raw_fix: Mapping, order_id: Optional[str] = None) -> Optional[LocationFix]:
        """Feed one raw fix through the location tracker."""
        driver_id = self._require_id(driver_id)
        self.drivers.register(driver_id)
        if self.tracker is None:
            return None

        published = self.tracker.submit_fix(driver_id, raw_fix, order_id=order_id)
        if published is not None and self.geo_index is not None:
            record = self.drivers.get(driver_id)
            if record is not None and record.status == DriverStatus.ONLINE:
                self.geo_index.update_driver_location(driver_id, published.latitude, published.longitude)
        return published

    def _status_of(self, driver_id: str) -> str:
        record = self.drivers.get(driver_id)
        return record.status if record is not None else "unknown"

    @staticmethod
    def _require_id(driver_id) -> str:
        if driver_id is None or not str(driver_id).strip():
            raise InvalidInput("A driver id is required")
        return str(driver_id)
