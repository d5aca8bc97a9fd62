"""
Build the ranked candidate list for one offer round.

Uses the nearby-driver lookup around the pickup point and the driver
availability records to produce the drivers an order is offered to
(closest first).
"""

import logging
from typing import List

from services.order_lifecycle.types import DriverStatus, NearbyDriver, OrderSnapshot
from services.storage.base import DriverStore, GeoLookup

logger = logging.getLogger(__name__)


def build_candidates(
    order: OrderSnapshot,
    geo_lookup: GeoLookup,
    drivers: DriverStore,
    radius_km: float,
    limit: int,
) -> List[NearbyDriver]:
    """
    Build the ordered candidate list for one order.

    Args:
        order: pending order to find drivers for
        geo_lookup: nearby-driver index
        drivers: availability records, the source of truth for online/busy
        radius_km: search radius around the pickup point
        limit: maximum number of candidates

    Returns:
        List of NearbyDriver sorted by distance (closest first)
    """
    nearby = geo_lookup.find_nearby_drivers(order.pickup, radius_km, limit)

    # The geo index can lag behind status changes; keep only drivers that are online right now
    candidates: List[NearbyDriver] = []
    seen = set()
    for item in nearby:
        if item.driver_id in seen or item.driver_id == order.passenger_id:
            continue
        record = drivers.get(item.driver_id)
        if record is None or record.status != DriverStatus.ONLINE:
            continue
        if item.distance_km > radius_km:
            continue
        seen.add(item.driver_id)
        candidates.append(item)

    # Sort closest → farthest
    candidates.sort(key=lambda item: item.distance_km)
    candidates = candidates[:limit]

    logger.info(
        "Built %d candidate(s) for order %s (radius=%skm, %d returned by lookup)",
        len(candidates), order.order_id, radius_km, len(nearby),
    )
    return candidates
