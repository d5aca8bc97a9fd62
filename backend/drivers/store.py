"""Django ORM implementations of the driver store and the nearby-driver lookup."""

import functools
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from django.db import DatabaseError
from django.db.models import F

from common.utils.geo import bounding_box, calculate_distance_km
from services.order_lifecycle.exceptions import DependencyUnavailable
from services.order_lifecycle.types import DriverAvailability, DriverStatus, Location, NearbyDriver
from services.storage.base import DriverStore, GeoLookup

from .models import DriverAvailability as DriverAvailabilityRecord

logger = logging.getLogger(__name__)


def _db_call(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DatabaseError as exc:
            logger.exception("Driver store %s failed", func.__name__)
            raise DependencyUnavailable(f"Driver store unavailable: {exc}") from exc
    return wrapper


def _to_availability(record: DriverAvailabilityRecord) -> DriverAvailability:
    return DriverAvailability(
        driver_id=record.driver_id,
        status=record.status,
        latitude=record.latitude,
        longitude=record.longitude,
        last_location_update=record.last_location_update,
        rating=record.rating,
        total_orders=record.total_orders,
    )


class DjangoDriverStore(DriverStore):

    @_db_call
    def get(self, driver_id: str) -> Optional[DriverAvailability]:
        record = DriverAvailabilityRecord.objects.filter(pk=str(driver_id)).first()
        return _to_availability(record) if record is not None else None

    @_db_call
    def register(self, driver_id: str, **defaults) -> DriverAvailability:
        record, _ = DriverAvailabilityRecord.objects.get_or_create(driver_id=str(driver_id), defaults=defaults)
        return _to_availability(record)

    @_db_call
    def compare_and_set_status(
        self,
        driver_id: str,
        expected: Iterable[str],
        new_status: str,
    ) -> Optional[DriverAvailability]:
        updated = (
            DriverAvailabilityRecord.objects
            .filter(pk=str(driver_id), status__in=list(expected))
            .update(status=new_status)
        )
        if not updated:
            return None
        return self.get(driver_id)

    @_db_call
    def update_position(self, driver_id: str, latitude: float, longitude: float, at: datetime) -> Optional[DriverAvailability]:
        updated = DriverAvailabilityRecord.objects.filter(pk=str(driver_id)).update(
            latitude=latitude,
            longitude=longitude,
            last_location_update=at,
        )
        if not updated:
            return None
        return self.get(driver_id)

    @_db_call
    def increment_completed(self, driver_id: str) -> None:
        DriverAvailabilityRecord.objects.filter(pk=str(driver_id)).update(total_orders=F('total_orders') + 1)


class DjangoDriverLocator(GeoLookup):
    """
    Nearby-driver lookup over the driver_profiles table.

    Narrows the scan with a bounding box, then ranks by haversine distance.
    """

    @_db_call
    def find_nearby_drivers(self, location: Location, radius_km: float, limit: int) -> List[NearbyDriver]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(location.latitude, location.longitude, radius_km)

        online_drivers = DriverAvailabilityRecord.objects.filter(
            status=DriverStatus.ONLINE,
            latitude__isnull=False,
            longitude__isnull=False,
            latitude__gte=min_lat,
            latitude__lte=max_lat,
            longitude__gte=min_lon,
            longitude__lte=max_lon,
        )

        # Compute distance from pickup for each driver
        candidates: List[NearbyDriver] = []
        for record in online_drivers:
            distance = calculate_distance_km(location.latitude, location.longitude, record.latitude, record.longitude)
            # Only keep drivers inside the search radius
            if distance <= radius_km:
                candidates.append(NearbyDriver(
                    driver_id=record.driver_id,
                    distance_km=distance,
                    rating=record.rating,
                    total_orders=record.total_orders,
                ))

        # Sort closest → farthest
        candidates.sort(key=lambda item: item.distance_km)
        return candidates[:limit]
