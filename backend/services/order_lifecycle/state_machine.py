"""
Order state machine.

This is the only writer of an order's status and lifecycle timestamps:

    pending -> accepted -> driver_arrived -> in_progress -> completed
    pending/accepted -> cancelled

Guards are evaluated against the persisted order, and every write is a
compare-and-set on the status that was read, so two callers racing on the same
order cannot both succeed. The loser gets PreconditionFailed and nothing is
written on its behalf.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from django.utils import timezone

from orders.serializers import CompleteOrderSerializer, CreateOrderSerializer
from services.storage.base import DriverStore, OrderStore
from .exceptions import InvalidInput, NotFound, PreconditionFailed, Unauthorized
from .types import (
    Caller,
    DriverStatus,
    Location,
    NearbyOrder,
    OrderSnapshot,
    OrderStatus,
    Role,
    TrackPoint,
)

logger = logging.getLogger(__name__)


# Target status -> statuses it may be entered from
TRANSITIONS = {
    OrderStatus.ACCEPTED: (OrderStatus.PENDING,),
    OrderStatus.DRIVER_ARRIVED: (OrderStatus.ACCEPTED,),
    OrderStatus.IN_PROGRESS: (OrderStatus.DRIVER_ARRIVED,),
    OrderStatus.COMPLETED: (OrderStatus.IN_PROGRESS,),
    OrderStatus.CANCELLED: (OrderStatus.PENDING, OrderStatus.ACCEPTED),
}

TIMESTAMP_FIELDS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.DRIVER_ARRIVED: "arrived_at",
    OrderStatus.IN_PROGRESS: "started_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

NO_DRIVERS_REASON = "no_drivers_available"


def generate_order_number(created_at: datetime, order_id: str) -> str:
    """Human-readable order number, e.g. DD20240101120000A1B2C3."""
    return f"DD{created_at:%Y%m%d%H%M%S}{order_id.replace('-', '')[:6].upper()}"


class OrderStateMachine:
    """Guarded transitions for trip orders over an injected store."""

    def __init__(
        self,
        orders: OrderStore,
        drivers: DriverStore,
        hub=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.orders = orders
        self.drivers = drivers
        self.hub = hub
        self._clock = clock or timezone.now

    def now(self) -> datetime:
        return self._clock()

    # ===================== Reads =====================

    def get(self, order_id: str) -> OrderSnapshot:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def orders_for_passenger(self, passenger_id: str, status: Optional[str] = None) -> List[OrderSnapshot]:
        return self.orders.list_for_passenger(str(passenger_id), status)

    def orders_for_driver(self, driver_id: str, status: Optional[str] = None) -> List[OrderSnapshot]:
        return self.orders.list_for_driver(str(driver_id), status)

    def current_order_for_driver(self, driver_id: str) -> Optional[OrderSnapshot]:
        return self.orders.current_for_driver(str(driver_id))

    def track_history(self, order_id: str) -> List[TrackPoint]:
        order = self.get(order_id)
        return self.orders.track_points(order.order_id)

    def pending_orders_near(self, location: Location, radius_km: float = 5.0, limit: int = 20) -> List[NearbyOrder]:
        """Open orders a driver at ``location`` could still claim, closest pickup first."""
        if radius_km <= 0 or limit <= 0:
            raise InvalidInput("Search radius and limit must be positive")
        return self.orders.pending_near(location, radius_km, limit)

    # ===================== Passenger Operations =====================

    def create(self, caller: Caller, payload: dict) -> OrderSnapshot:
        """
        Create a pending order for the calling passenger.

        Args:
            caller: authenticated passenger
            payload: pickup/dropoff coordinates and addresses, order and
                service type, optional schedule, estimates and note

        Raises:
            Unauthorized: caller is not a passenger
            InvalidInput: payload or passenger id invalid
        """
        if caller.role != Role.PASSENGER:
            raise Unauthorized("Only passengers can request a trip")
        if not caller.user_id or not str(caller.user_id).strip():
            raise InvalidInput("A valid passenger id is required")

        serializer = CreateOrderSerializer(data=payload)
        if not serializer.is_valid():
            raise InvalidInput("Invalid trip request", details=dict(serializer.errors))
        data = serializer.validated_data

        now = self._clock()
        order_id = str(uuid.uuid4())
        snapshot = OrderSnapshot(
            order_id=order_id,
            order_number=generate_order_number(now, order_id),
            passenger_id=str(caller.user_id),
            pickup=Location(
                latitude=data["pickup_latitude"],
                longitude=data["pickup_longitude"],
                address=data["pickup_address"],
                poi_id=data["pickup_poi_id"] or None,
            ),
            dropoff=Location(
                latitude=data["dropoff_latitude"],
                longitude=data["dropoff_longitude"],
                address=data["dropoff_address"],
                poi_id=data["dropoff_poi_id"] or None,
            ),
            created_at=now,
            updated_at=now,
            order_type=data["order_type"],
            service_type=data["service_type"],
            scheduled_time=data["scheduled_time"],
            estimated_distance_km=data["estimated_distance_km"],
            estimated_duration_min=data["estimated_duration_min"],
            estimated_price=data["estimated_price"],
            passenger_note=data["passenger_note"],
        )

        with self.orders.atomic():
            self.orders.insert(snapshot)
            self.orders.on_commit(lambda: self._publish(snapshot))

        logger.info("Created order %s (%s) for passenger %s", order_id, snapshot.order_number, caller.user_id)
        return snapshot

    def cancel(self, order_id: str, caller: Caller, reason: str = "") -> OrderSnapshot:
        """
        Cancel a pending or accepted order. Allowed for the passenger and the
        assigned driver; an assigned driver goes back online.
        """
        current = self.get(order_id)
        self._require_status(current, OrderStatus.CANCELLED)

        is_passenger = caller.user_id == current.passenger_id
        is_driver = current.driver_id is not None and caller.user_id == current.driver_id
        if not (is_passenger or is_driver):
            raise Unauthorized(f"{caller.user_id} cannot cancel order {current.order_id}")

        now = self._next_timestamp(current)
        changes = {
            "status": OrderStatus.CANCELLED,
            "cancelled_at": now,
            "cancelled_by": str(caller.user_id),
            "cancel_reason": reason or "",
            "updated_at": now,
        }
        updated = self._commit(current, changes, after=self._release_driver)
        logger.info("Order %s cancelled by %s", current.order_id, caller.user_id)
        return updated

    # ===================== Driver Operations =====================

    def accept(self, order_id: str, driver_id: str, offer_round: Optional[int] = None) -> OrderSnapshot:
        """
        Claim a pending order for ``driver_id``.

        The driver is reserved (online -> busy) and the order is written with a
        compare-and-set on ``status = pending`` (and on the offer round when
        given) inside one store transaction. Exactly one of several concurrent
        claims can succeed.

        Raises:
            NotFound: order or driver record missing
            PreconditionFailed: order no longer pending, offer round superseded,
                or driver not online
        """
        if not driver_id:
            raise InvalidInput("A driver id is required to accept an order")
        driver_id = str(driver_id)

        current = self.get(order_id)
        self._require_status(current, OrderStatus.ACCEPTED)
        if offer_round is not None and offer_round != current.offer_round:
            raise PreconditionFailed(
                f"Offer round {offer_round} of order {current.order_id} was superseded by round {current.offer_round}"
            )
        if current.passenger_id == driver_id:
            raise Unauthorized("A passenger cannot accept their own order")
        if self.drivers.get(driver_id) is None:
            raise NotFound(f"Driver {driver_id} not found", user_message="Driver profile not found.")

        now = self._next_timestamp(current)
        changes = {
            "status": OrderStatus.ACCEPTED,
            "driver_id": driver_id,
            "accepted_at": now,
            "updated_at": now,
        }

        with self.orders.atomic():
            reserved = self.drivers.compare_and_set_status(driver_id, {DriverStatus.ONLINE}, DriverStatus.BUSY)
            if reserved is None:
                self._reject_unavailable_driver(driver_id)

            updated = self.orders.compare_and_set(
                current.order_id, OrderStatus.PENDING, changes, expected_round=offer_round
            )
            if updated is None:
                self.drivers.compare_and_set_status(driver_id, {DriverStatus.BUSY}, DriverStatus.ONLINE)
                raise PreconditionFailed(f"Order {current.order_id} was claimed or cancelled concurrently")

            self.orders.on_commit(lambda: self._publish(updated))

        logger.info("Order %s accepted by driver %s", current.order_id, driver_id)
        return updated

    def mark_arrived(self, order_id: str, caller: Caller) -> OrderSnapshot:
        return self._driver_step(order_id, caller, OrderStatus.DRIVER_ARRIVED)

    def start_trip(self, order_id: str, caller: Caller) -> OrderSnapshot:
        return self._driver_step(order_id, caller, OrderStatus.IN_PROGRESS)

    def complete(
        self,
        order_id: str,
        caller: Caller,
        final_price: Decimal,
        actual_distance_km: Decimal,
        actual_duration_min: int,
    ) -> OrderSnapshot:
        """Finish the trip with the actuals; the driver goes back online."""
        current = self.get(order_id)
        self._require_status(current, OrderStatus.COMPLETED)
        self._require_assigned_driver(current, caller)

        serializer = CompleteOrderSerializer(data={
            "final_price": final_price,
            "actual_distance_km": actual_distance_km,
            "actual_duration_min": actual_duration_min,
        })
        if not serializer.is_valid():
            raise InvalidInput("Invalid trip actuals", details=dict(serializer.errors))

        now = self._next_timestamp(current)
        changes = {
            "status": OrderStatus.COMPLETED,
            "completed_at": now,
            "updated_at": now,
            **serializer.validated_data,
        }
        updated = self._commit(current, changes, after=self._finish_driver)
        logger.info("Order %s completed by driver %s", current.order_id, current.driver_id)
        return updated

    # ===================== Dispatch Operations =====================

    def stamp_offer_round(self, order_id: str, expected_round: int) -> OrderSnapshot:
        """
        Open the next offer round of a pending order.

        Claims naming an older round fail the compare-and-set from now on.
        """
        current = self.get(order_id)
        if current.status != OrderStatus.PENDING:
            raise PreconditionFailed(f"Order {current.order_id} is {current.status}, cannot open offers")
        if current.offer_round != expected_round:
            raise PreconditionFailed(f"Order {current.order_id} is already on offer round {current.offer_round}")

        now = self._next_timestamp(current)
        changes = {
            "offer_round": expected_round + 1,
            "offered_at": now,
            "updated_at": now,
        }
        return self._commit(current, changes, expected_round=expected_round)

    def expire(self, order_id: str, offer_round: int) -> OrderSnapshot:
        """Cancel a pending order that no driver claimed."""
        current = self.get(order_id)
        if current.status != OrderStatus.PENDING:
            raise PreconditionFailed(f"Order {current.order_id} is {current.status}, nothing to expire")

        now = self._next_timestamp(current)
        changes = {
            "status": OrderStatus.CANCELLED,
            "cancelled_at": now,
            "cancelled_by": Role.SYSTEM,
            "cancel_reason": NO_DRIVERS_REASON,
            "updated_at": now,
        }
        updated = self._commit(current, changes, expected_round=offer_round)
        logger.info("Order %s expired after %d offer round(s)", current.order_id, offer_round)
        return updated

    # ===================== Helper Functions =====================

    def _driver_step(self, order_id: str, caller: Caller, target: str) -> OrderSnapshot:
        current = self.get(order_id)
        self._require_status(current, target)
        self._require_assigned_driver(current, caller)

        now = self._next_timestamp(current)
        changes = {
            "status": target,
            TIMESTAMP_FIELDS[target]: now,
            "updated_at": now,
        }
        updated = self._commit(current, changes)
        logger.info("Order %s moved to %s", current.order_id, target)
        return updated

    def _commit(self, current: OrderSnapshot, changes: dict, after=None, expected_round=None) -> OrderSnapshot:
        with self.orders.atomic():
            updated = self.orders.compare_and_set(
                current.order_id, current.status, changes, expected_round=expected_round
            )
            if updated is None:
                raise PreconditionFailed(
                    f"Order {current.order_id} changed concurrently",
                    user_message="This order was just updated. Please refresh and try again.",
                )
            if after is not None:
                after(updated)
            self.orders.on_commit(lambda: self._publish(updated))
        return updated

    def _require_status(self, current: OrderSnapshot, target: str) -> None:
        if current.status in TRANSITIONS[target]:
            return
        if target == OrderStatus.ACCEPTED:
            raise PreconditionFailed(
                f"Order {current.order_id} is {current.status}",
                details={"status": current.status},
            )
        raise PreconditionFailed(
            f"Cannot move order {current.order_id} from {current.status} to {target}",
            details={"status": current.status},
            user_message=f"This order is already {current.status.replace('_', ' ')}.",
        )

    def _require_assigned_driver(self, current: OrderSnapshot, caller: Caller) -> None:
        if caller.role != Role.DRIVER or caller.user_id != current.driver_id:
            raise Unauthorized(f"{caller.user_id} is not the driver of order {current.order_id}")

    def _reject_unavailable_driver(self, driver_id: str) -> None:
        record = self.drivers.get(driver_id)
        if record is not None and record.status == DriverStatus.BUSY:
            raise PreconditionFailed(
                f"Driver {driver_id} is busy with another order",
                details={"driver_status": DriverStatus.BUSY},
                user_message="Finish your current trip before accepting another order.",
            )
        raise PreconditionFailed(
            f"Driver {driver_id} is not online",
            details={"driver_status": record.status if record is not None else None},
            user_message="Please go online before accepting orders.",
        )

    def _release_driver(self, order: OrderSnapshot) -> None:
        if order.driver_id:
            self.drivers.compare_and_set_status(order.driver_id, {DriverStatus.BUSY}, DriverStatus.ONLINE)

    def _finish_driver(self, order: OrderSnapshot) -> None:
        self._release_driver(order)
        self.drivers.increment_completed(order.driver_id)

    def _next_timestamp(self, current: OrderSnapshot) -> datetime:
        return max(self._clock(), current.latest_timestamp())

    def _publish(self, snapshot: OrderSnapshot) -> None:
        if self.hub is not None:
            self.hub.publish(snapshot)
