"""
Django ORM implementation of the order store.

The compare-and-set is a single ``UPDATE ... WHERE id = %s AND status = %s``
(plus ``offer_round`` when given); the affected row count decides the winner.
Database failures surface as DependencyUnavailable.
"""

import functools
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db.models import F, Q
from django.db.models.functions import Coalesce

from common.utils.geo import bounding_box, calculate_distance_km
from services.order_lifecycle.exceptions import DependencyUnavailable
from services.order_lifecycle.types import (
    Location,
    NearbyDriver,
    NearbyOrder,
    OrderSnapshot,
    OrderStatus,
    TrackPoint,
)
from services.storage.base import OrderStore

from .models import Order, OrderOffer, TrackPoint as TrackPointRecord

logger = logging.getLogger(__name__)


def _db_call(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DatabaseError as exc:
            logger.exception("Order store %s failed", func.__name__)
            raise DependencyUnavailable(f"Order store unavailable: {exc}") from exc
    return wrapper


def order_to_snapshot(order: Order) -> OrderSnapshot:
    return OrderSnapshot(
        order_id=str(order.id),
        order_number=order.order_number,
        passenger_id=order.passenger_id,
        driver_id=order.driver_id,
        pickup=Location(
            latitude=order.pickup_latitude,
            longitude=order.pickup_longitude,
            address=order.pickup_address,
            poi_id=order.pickup_poi_id,
        ),
        dropoff=Location(
            latitude=order.dropoff_latitude,
            longitude=order.dropoff_longitude,
            address=order.dropoff_address,
            poi_id=order.dropoff_poi_id,
        ),
        order_type=order.order_type,
        service_type=order.service_type,
        status=order.status,
        scheduled_time=order.scheduled_time,
        created_at=order.created_at,
        accepted_at=order.accepted_at,
        arrived_at=order.arrived_at,
        started_at=order.started_at,
        completed_at=order.completed_at,
        cancelled_at=order.cancelled_at,
        estimated_distance_km=order.estimated_distance_km,
        estimated_duration_min=order.estimated_duration_min,
        estimated_price=order.estimated_price,
        actual_distance_km=order.actual_distance_km,
        actual_duration_min=order.actual_duration_min,
        final_price=order.final_price,
        cancelled_by=order.cancelled_by,
        cancel_reason=order.cancel_reason,
        passenger_note=order.passenger_note,
        offer_round=order.offer_round,
        offered_at=order.offered_at,
        version=order.version,
        updated_at=order.updated_at,
    )


def _to_track_point(record: TrackPointRecord) -> TrackPoint:
    return TrackPoint(
        order_id=str(record.order_id),
        driver_id=record.driver_id,
        latitude=record.latitude,
        longitude=record.longitude,
        timestamp=record.timestamp,
        received_at=record.received_at,
        accuracy=record.accuracy,
        speed=record.speed,
        bearing=record.bearing,
    )


class DjangoOrderStore(OrderStore):

    def atomic(self):
        return transaction.atomic()

    def on_commit(self, callback: Callable[[], Any]) -> None:
        transaction.on_commit(callback)

    @_db_call
    def insert(self, snapshot: OrderSnapshot) -> OrderSnapshot:
        Order.objects.create(
            id=snapshot.order_id,
            order_number=snapshot.order_number,
            passenger_id=snapshot.passenger_id,
            driver_id=snapshot.driver_id,
            pickup_latitude=snapshot.pickup.latitude,
            pickup_longitude=snapshot.pickup.longitude,
            pickup_address=snapshot.pickup.address,
            pickup_poi_id=snapshot.pickup.poi_id,
            dropoff_latitude=snapshot.dropoff.latitude,
            dropoff_longitude=snapshot.dropoff.longitude,
            dropoff_address=snapshot.dropoff.address,
            dropoff_poi_id=snapshot.dropoff.poi_id,
            order_type=snapshot.order_type,
            service_type=snapshot.service_type,
            status=snapshot.status,
            scheduled_time=snapshot.scheduled_time,
            created_at=snapshot.created_at,
            estimated_distance_km=snapshot.estimated_distance_km,
            estimated_duration_min=snapshot.estimated_duration_min,
            estimated_price=snapshot.estimated_price,
            passenger_note=snapshot.passenger_note,
            offer_round=snapshot.offer_round,
            offered_at=snapshot.offered_at,
            version=snapshot.version,
            updated_at=snapshot.updated_at,
        )
        return snapshot

    @_db_call
    def get(self, order_id: str) -> Optional[OrderSnapshot]:
        try:
            order = Order.objects.filter(pk=order_id).first()
        except ValidationError:
            # Not a UUID, so no such order
            return None
        return order_to_snapshot(order) if order is not None else None

    @_db_call
    def compare_and_set(
        self,
        order_id: str,
        expected_status: str,
        changes: Dict[str, Any],
        expected_round: Optional[int] = None,
    ) -> Optional[OrderSnapshot]:
        try:
            queryset = Order.objects.filter(pk=order_id, status=expected_status)
            if expected_round is not None:
                queryset = queryset.filter(offer_round=expected_round)

            with transaction.atomic():
                updated = queryset.update(version=F('version') + 1, **changes)
                if not updated:
                    return None
                return order_to_snapshot(Order.objects.get(pk=order_id))
        except ValidationError:
            return None

    @_db_call
    def list_for_passenger(self, passenger_id: str, status: Optional[str] = None) -> List[OrderSnapshot]:
        queryset = Order.objects.filter(passenger_id=passenger_id)
        if status:
            queryset = queryset.filter(status=status)
        return [order_to_snapshot(o) for o in queryset.order_by('-created_at')]

    @_db_call
    def list_for_driver(self, driver_id: str, status: Optional[str] = None) -> List[OrderSnapshot]:
        queryset = Order.objects.filter(driver_id=driver_id)
        if status:
            queryset = queryset.filter(status=status)
        return [order_to_snapshot(o) for o in queryset.order_by('-created_at')]

    @_db_call
    def current_for_driver(self, driver_id: str) -> Optional[OrderSnapshot]:
        order = (
            Order.objects
            .filter(driver_id=driver_id, status__in=OrderStatus.ASSIGNED)
            .order_by('-created_at')
            .first()
        )
        return order_to_snapshot(order) if order is not None else None

    @_db_call
    def pending_near(self, location: Location, radius_km: float, limit: int) -> List[NearbyOrder]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(location.latitude, location.longitude, radius_km)
        queryset = Order.objects.filter(
            status=OrderStatus.PENDING,
            pickup_latitude__gte=min_lat,
            pickup_latitude__lte=max_lat,
            pickup_longitude__gte=min_lon,
            pickup_longitude__lte=max_lon,
        )

        nearby: List[NearbyOrder] = []
        for order in queryset:
            distance = calculate_distance_km(
                location.latitude, location.longitude, order.pickup_latitude, order.pickup_longitude
            )
            if distance <= radius_km:
                nearby.append(NearbyOrder(order=order_to_snapshot(order), distance_km=distance))

        nearby.sort(key=lambda item: item.distance_km)
        return nearby[:limit]

    @_db_call
    def stale_offer_rounds(self, cutoff: datetime) -> List[OrderSnapshot]:
        queryset = (
            Order.objects
            .filter(status=OrderStatus.PENDING)
            .filter(Q(offered_at__lt=cutoff) | Q(offered_at__isnull=True, created_at__lt=cutoff))
            .order_by(Coalesce('offered_at', 'created_at'))
        )
        return [order_to_snapshot(o) for o in queryset]

    @_db_call
    def record_offers(self, order_id: str, offer_round: int, candidates: Sequence[NearbyDriver], sent_at: datetime) -> None:
        OrderOffer.objects.bulk_create([
            OrderOffer(
                order_id=order_id,
                driver_id=candidate.driver_id,
                offer_round=offer_round,
                rank=rank,
                distance_km=candidate.distance_km,
                sent_at=sent_at,
            )
            for rank, candidate in enumerate(candidates)
        ])

    @_db_call
    def offered_driver_ids(self, order_id: str, offer_round: Optional[int] = None) -> List[str]:
        queryset = OrderOffer.objects.filter(order_id=order_id)
        if offer_round is not None:
            queryset = queryset.filter(offer_round=offer_round)

        seen = []
        for driver_id in queryset.order_by('offer_round', 'rank').values_list('driver_id', flat=True):
            if driver_id not in seen:
                seen.append(driver_id)
        return seen

    @_db_call
    def append_track_point(self, point: TrackPoint) -> TrackPoint:
        record = TrackPointRecord.objects.create(
            order_id=point.order_id,
            driver_id=point.driver_id,
            latitude=point.latitude,
            longitude=point.longitude,
            accuracy=point.accuracy,
            speed=point.speed,
            bearing=point.bearing,
            timestamp=point.timestamp,
            received_at=point.received_at,
        )
        return _to_track_point(record)

    @_db_call
    def track_points(self, order_id: str) -> List[TrackPoint]:
        try:
            records = list(TrackPointRecord.objects.filter(order_id=order_id).order_by('timestamp', 'id'))
        except ValidationError:
            return []
        return [_to_track_point(r) for r in records]
