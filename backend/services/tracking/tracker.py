"""
Location tracking for drivers.

Raw fixes from a driver device are validated, run through the location filter
and then:
    - stored as the driver's last known position (feeds the nearby-driver lookup)
    - appended to the track history of the order the driver is working on
    - published to that order's subscribers
"""

import logging
from datetime import datetime
from typing import Callable, Mapping, Optional

from django.utils import timezone

from orders.serializers import LocationFixSerializer
from services.order_lifecycle.types import LocationFix, OrderSnapshot, OrderStatus, TrackPoint
from services.storage.base import DriverStore, OrderStore
from .location_filter import LocationFilter

logger = logging.getLogger(__name__)


class LocationTracker:

    def __init__(
        self,
        location_filter: LocationFilter,
        orders: OrderStore,
        drivers: DriverStore,
        hub=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.filter = location_filter
        self.orders = orders
        self.drivers = drivers
        self.hub = hub
        self._clock = clock or timezone.now
        self.malformed = 0

    def submit_fix(self, driver_id: str, raw_fix: Mapping, order_id: Optional[str] = None) -> Optional[LocationFix]:
        """
        Process one raw fix from a driver.

        Malformed fixes are dropped and counted, never raised.

        Returns:
            The published fix (map datum), or None if it was dropped or suppressed
        """
        driver_id = str(driver_id)
        serializer = LocationFixSerializer(data=raw_fix)
        if not serializer.is_valid():
            self.malformed += 1
            logger.warning("Dropped malformed fix from driver %s: %s", driver_id, dict(serializer.errors))
            return None

        published = self.filter.offer(driver_id, LocationFix(**serializer.validated_data))
        if published is None:
            return None

        received_at = self._clock()
        self.drivers.update_position(driver_id, published.latitude, published.longitude, received_at)

        order = self._active_order(driver_id, order_id)
        if order is not None:
            point = self.orders.append_track_point(TrackPoint(
                order_id=order.order_id,
                driver_id=driver_id,
                latitude=published.latitude,
                longitude=published.longitude,
                timestamp=published.timestamp,
                received_at=received_at,
                accuracy=published.accuracy,
                speed=published.speed,
                bearing=published.bearing,
            ))
            if self.hub is not None:
                self.hub.publish_location(point)

        return published

    def _active_order(self, driver_id: str, order_id: Optional[str]) -> Optional[OrderSnapshot]:
        if order_id is None:
            return self.orders.current_for_driver(driver_id)

        order = self.orders.get(order_id)
        if order is None or order.driver_id != driver_id or order.status not in OrderStatus.ASSIGNED:
            logger.debug("Driver %s is not on order %s; fix not added to its track", driver_id, order_id)
            return None
        return order
