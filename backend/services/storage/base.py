"""Collaborator interfaces consumed by the state machine and the dispatch coordinator."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Optional, Sequence

from services.order_lifecycle.types import (
    DriverAvailability,
    Location,
    NearbyDriver,
    NearbyOrder,
    OrderSnapshot,
    TrackPoint,
)


class OrderStore(ABC):
    """
    Durable store for orders, the offer ledger and track points.

    ``compare_and_set`` is the only way to change an order. Implementations must
    make it atomic: the write happens only if the stored status (and offer round,
    when given) still match, and ``version``/``updated_at`` move with it.
    """

    @abstractmethod
    def atomic(self) -> ContextManager:
        """Context manager grouping several writes into one all-or-nothing unit."""

    @abstractmethod
    def on_commit(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` once the surrounding unit has committed."""

    @abstractmethod
    def insert(self, snapshot: OrderSnapshot) -> OrderSnapshot:
        ...

    @abstractmethod
    def get(self, order_id: str) -> Optional[OrderSnapshot]:
        ...

    @abstractmethod
    def compare_and_set(
        self,
        order_id: str,
        expected_status: str,
        changes: Dict[str, Any],
        expected_round: Optional[int] = None,
    ) -> Optional[OrderSnapshot]:
        """Apply ``changes`` if the guard holds; return the new snapshot or None."""

    @abstractmethod
    def list_for_passenger(self, passenger_id: str, status: Optional[str] = None) -> List[OrderSnapshot]:
        ...

    @abstractmethod
    def list_for_driver(self, driver_id: str, status: Optional[str] = None) -> List[OrderSnapshot]:
        ...

    @abstractmethod
    def current_for_driver(self, driver_id: str) -> Optional[OrderSnapshot]:
        """The order the driver is currently assigned to, if any."""

    @abstractmethod
    def pending_near(self, location: Location, radius_km: float, limit: int) -> List[NearbyOrder]:
        """Pending orders with a pickup within ``radius_km`` of ``location``, closest first."""

    @abstractmethod
    def stale_offer_rounds(self, cutoff: datetime) -> List[OrderSnapshot]:
        """
        Pending orders whose current offer round was opened before ``cutoff``.

        Orders that never had a round count from ``created_at``.
        """

    @abstractmethod
    def record_offers(self, order_id: str, offer_round: int, candidates: Sequence[NearbyDriver], sent_at: datetime) -> None:
        ...

    @abstractmethod
    def offered_driver_ids(self, order_id: str, offer_round: Optional[int] = None) -> List[str]:
        ...

    @abstractmethod
    def append_track_point(self, point: TrackPoint) -> TrackPoint:
        ...

    @abstractmethod
    def track_points(self, order_id: str) -> List[TrackPoint]:
        """Points of one order ordered by device timestamp."""


class DriverStore(ABC):
    """Driver availability records keyed by driver id."""

    @abstractmethod
    def get(self, driver_id: str) -> Optional[DriverAvailability]:
        ...

    @abstractmethod
    def register(self, driver_id: str, **defaults) -> DriverAvailability:
        """Return the record, creating an offline one if missing."""

    @abstractmethod
    def compare_and_set_status(
        self,
        driver_id: str,
        expected: Iterable[str],
        new_status: str,
    ) -> Optional[DriverAvailability]:
        """Set ``new_status`` if the current status is in ``expected``."""

    @abstractmethod
    def update_position(self, driver_id: str, latitude: float, longitude: float, at: datetime) -> Optional[DriverAvailability]:
        ...

    @abstractmethod
    def increment_completed(self, driver_id: str) -> None:
        ...


class GeoLookup(ABC):
    """Read-only nearby-driver index maintained outside the dispatch core."""

    @abstractmethod
    def find_nearby_drivers(self, location: Location, radius_km: float, limit: int) -> List[NearbyDriver]:
        """Drivers within ``radius_km`` of ``location``, closest first, at most ``limit``."""
