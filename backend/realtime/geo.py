"""
Redis GEO-based nearby-driver lookup.

Online drivers are kept in one GEO set; a driver is added on every accepted
position while online and removed when going offline. Queries use GEORADIUS
sorted by distance. Redis failures surface as DependencyUnavailable.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import redis
from django.conf import settings

from services.order_lifecycle.exceptions import DependencyUnavailable
from services.order_lifecycle.types import Location, NearbyDriver
from services.storage.base import GeoLookup

logger = logging.getLogger(__name__)


# ---------------------- Configuration ----------------------

REDIS_GEO_CONFIG = {
    # Key names
    "DRIVERS_GEO_KEY": "dispatch:drivers:geo",   # GEOADD key for online driver positions
    "DRIVER_SEEN_PREFIX": "dispatch:driver:seen:",  # last position heartbeat per driver

    # TTL values (seconds)
    "DRIVER_SEEN_TTL": 120,     # Driver is skipped after 2 min without a position
}


# ---------------------- Redis Connection ----------------------

def get_redis_client() -> redis.Redis:
    """Get Redis client for GEO operations."""
    return redis.Redis.from_url(
        getattr(settings, 'REDIS_GEO_URL', settings.CELERY_BROKER_URL),
        decode_responses=True
    )


# ---------------------- Driver Locator ----------------------

class RedisDriverLocator(GeoLookup):
    """
    Redis GEO driver index.

    Provides:
    - Update driver location (GEOADD + heartbeat key with TTL)
    - Remove driver (ZREM)
    - Query nearby drivers (GEORADIUS)
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self._redis = redis_client
        self._config = REDIS_GEO_CONFIG

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    # ---------------------- Driver Location Updates ----------------------

    def update_driver_location(self, driver_id: str, lat: float, lon: float) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.geoadd(self._config["DRIVERS_GEO_KEY"], (lon, lat, str(driver_id)))
            pipe.set(
                f"{self._config['DRIVER_SEEN_PREFIX']}{driver_id}",
                "1",
                ex=self._config["DRIVER_SEEN_TTL"],
            )
            pipe.execute()
        except redis.RedisError as exc:
            logger.exception("Failed to update location of driver %s", driver_id)
            raise DependencyUnavailable(f"Geo index unavailable: {exc}") from exc

    def remove_driver(self, driver_id: str) -> None:
        try:
            self.client.zrem(self._config["DRIVERS_GEO_KEY"], str(driver_id))
            self.client.delete(f"{self._config['DRIVER_SEEN_PREFIX']}{driver_id}")
        except redis.RedisError as exc:
            logger.exception("Failed to remove driver %s", driver_id)
            raise DependencyUnavailable(f"Geo index unavailable: {exc}") from exc

    # ---------------------- Nearby Driver Queries ----------------------

    def find_nearby_drivers(self, location: Location, radius_km: float, limit: int) -> List[NearbyDriver]:
        try:
            results = self.client.georadius(
                self._config["DRIVERS_GEO_KEY"],
                location.longitude, location.latitude,
                radius_km,
                unit="km",
                withdist=True,
                count=limit * 2,  # Fetch more to skip stale entries
                sort="ASC",
            )

            drivers: List[NearbyDriver] = []
            for driver_id, distance in results:
                if not self.client.exists(f"{self._config['DRIVER_SEEN_PREFIX']}{driver_id}"):
                    continue
                drivers.append(NearbyDriver(driver_id=str(driver_id), distance_km=float(distance)))
                if len(drivers) >= limit:
                    break
            return drivers

        except redis.RedisError as exc:
            logger.exception("Failed to query nearby drivers")
            raise DependencyUnavailable(f"Geo index unavailable: {exc}") from exc
