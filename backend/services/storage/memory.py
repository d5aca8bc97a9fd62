"""
In-process implementations of the storage collaborators.

Writes to one key are serialized by a per-key lock; writes to different keys
never share a lock. Reads return the current immutable snapshot without locking.
"""

import threading
from contextlib import nullcontext
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from common.utils.geo import calculate_distance_km
from services.order_lifecycle.types import (
    DriverAvailability,
    DriverStatus,
    Location,
    NearbyDriver,
    NearbyOrder,
    OrderSnapshot,
    OrderStatus,
    TrackPoint,
)

from .base import DriverStore, GeoLookup, OrderStore


class _KeyedLocks:
    """Hands out one lock per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class InMemoryOrderStore(OrderStore):

    def __init__(self):
        self._orders: Dict[str, OrderSnapshot] = {}
        self._offers: Dict[str, List[tuple]] = {}
        self._tracks: Dict[str, List[TrackPoint]] = {}
        self._locks = _KeyedLocks()

    def atomic(self):
        return nullcontext()

    def on_commit(self, callback: Callable[[], Any]) -> None:
        callback()

    def insert(self, snapshot: OrderSnapshot) -> OrderSnapshot:
        with self._locks(snapshot.order_id):
            if snapshot.order_id in self._orders:
                raise ValueError(f"Order {snapshot.order_id} already exists")
            self._orders[snapshot.order_id] = snapshot
        return snapshot

    def get(self, order_id: str) -> Optional[OrderSnapshot]:
        return self._orders.get(str(order_id))

    def compare_and_set(
        self,
        order_id: str,
        expected_status: str,
        changes: Dict[str, Any],
        expected_round: Optional[int] = None,
    ) -> Optional[OrderSnapshot]:
        order_id = str(order_id)
        with self._locks(order_id):
            current = self._orders.get(order_id)
            if current is None or current.status != expected_status:
                return None
            if expected_round is not None and current.offer_round != expected_round:
                return None
            updated = replace(current, version=current.version + 1, **changes)
            self._orders[order_id] = updated
            return updated

    def _all(self) -> List[OrderSnapshot]:
        return list(self._orders.values())

    def list_for_passenger(self, passenger_id: str, status: Optional[str] = None) -> List[OrderSnapshot]:
        orders = [
            o for o in self._all()
            if o.passenger_id == passenger_id and (status is None or o.status == status)
        ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def list_for_driver(self, driver_id: str, status: Optional[str] = None) -> List[OrderSnapshot]:
        orders = [
            o for o in self._all()
            if o.driver_id == driver_id and (status is None or o.status == status)
        ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def current_for_driver(self, driver_id: str) -> Optional[OrderSnapshot]:
        for order in self.list_for_driver(driver_id):
            if order.status in OrderStatus.ASSIGNED:
                return order
        return None

    def pending_near(self, location: Location, radius_km: float, limit: int) -> List[NearbyOrder]:
        nearby = []
        for order in self._all():
            if order.status != OrderStatus.PENDING:
                continue
            distance = calculate_distance_km(
                location.latitude, location.longitude, order.pickup.latitude, order.pickup.longitude
            )
            if distance <= radius_km:
                nearby.append(NearbyOrder(order=order, distance_km=distance))

        nearby.sort(key=lambda item: item.distance_km)
        return nearby[:limit]

    def stale_offer_rounds(self, cutoff: datetime) -> List[OrderSnapshot]:
        stale = [
            o for o in self._all()
            if o.status == OrderStatus.PENDING and (o.offered_at or o.created_at) < cutoff
        ]
        return sorted(stale, key=lambda o: o.offered_at or o.created_at)

    def record_offers(self, order_id: str, offer_round: int, candidates: Sequence[NearbyDriver], sent_at: datetime) -> None:
        with self._locks(f"offers:{order_id}"):
            ledger = self._offers.setdefault(str(order_id), [])
            for rank, candidate in enumerate(candidates):
                ledger.append((offer_round, rank, candidate.driver_id, candidate.distance_km, sent_at))

    def offered_driver_ids(self, order_id: str, offer_round: Optional[int] = None) -> List[str]:
        ledger = self._offers.get(str(order_id), [])
        seen = []
        for round_, _, driver_id, _, _ in ledger:
            if offer_round is not None and round_ != offer_round:
                continue
            if driver_id not in seen:
                seen.append(driver_id)
        return seen

    def append_track_point(self, point: TrackPoint) -> TrackPoint:
        with self._locks(f"track:{point.order_id}"):
            self._tracks.setdefault(point.order_id, []).append(point)
        return point

    def track_points(self, order_id: str) -> List[TrackPoint]:
        points = list(self._tracks.get(str(order_id), []))
        return sorted(points, key=lambda p: p.timestamp)


class InMemoryDriverStore(DriverStore):

    def __init__(self):
        self._drivers: Dict[str, DriverAvailability] = {}
        self._locks = _KeyedLocks()

    def all(self) -> List[DriverAvailability]:
        return list(self._drivers.values())

    def get(self, driver_id: str) -> Optional[DriverAvailability]:
        return self._drivers.get(str(driver_id))

    def register(self, driver_id: str, **defaults) -> DriverAvailability:
        driver_id = str(driver_id)
        with self._locks(driver_id):
            record = self._drivers.get(driver_id)
            if record is None:
                record = self._drivers[driver_id] = DriverAvailability(driver_id=driver_id, **defaults)
            return record

    def compare_and_set_status(
        self,
        driver_id: str,
        expected: Iterable[str],
        new_status: str,
    ) -> Optional[DriverAvailability]:
        driver_id = str(driver_id)
        expected = set(expected)
        with self._locks(driver_id):
            record = self._drivers.get(driver_id)
            if record is None or record.status not in expected:
                return None
            record = self._drivers[driver_id] = replace(record, status=new_status)
            return record

    def update_position(self, driver_id: str, latitude: float, longitude: float, at: datetime) -> Optional[DriverAvailability]:
        driver_id = str(driver_id)
        with self._locks(driver_id):
            record = self._drivers.get(driver_id)
            if record is None:
                return None
            record = self._drivers[driver_id] = replace(
                record,
                latitude=latitude,
                longitude=longitude,
                last_location_update=at,
            )
            return record

    def increment_completed(self, driver_id: str) -> None:
        driver_id = str(driver_id)
        with self._locks(driver_id):
            record = self._drivers.get(driver_id)
            if record is not None:
                self._drivers[driver_id] = replace(record, total_orders=record.total_orders + 1)


class StoreBackedDriverLocator(GeoLookup):
    """Nearby-driver lookup that scans an in-memory driver store."""

    def __init__(self, drivers: InMemoryDriverStore):
        self._drivers = drivers

    def find_nearby_drivers(self, location: Location, radius_km: float, limit: int) -> List[NearbyDriver]:
        candidates = []
        for record in self._drivers.all():
            if record.status != DriverStatus.ONLINE or not record.has_position:
                continue
            distance = calculate_distance_km(
                location.latitude, location.longitude, record.latitude, record.longitude
            )
            if distance <= radius_km:
                candidates.append(NearbyDriver(
                    driver_id=record.driver_id,
                    distance_km=distance,
                    rating=record.rating,
                    total_orders=record.total_orders,
                ))

        candidates.sort(key=lambda item: item.distance_km)
        return candidates[:limit]
