"""Value types shared by the dispatch services and the storage adapters."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple


class OrderStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    DRIVER_ARRIVED = "driver_arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    CHOICES = [
        (PENDING, "Pending"),
        (ACCEPTED, "Accepted"),
        (DRIVER_ARRIVED, "Driver Arrived"),
        (IN_PROGRESS, "In Progress"),
        (COMPLETED, "Completed"),
        (CANCELLED, "Cancelled"),
    ]

    # Statuses in which the order holds a driver
    ASSIGNED = frozenset({ACCEPTED, DRIVER_ARRIVED, IN_PROGRESS})


class OrderType:
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"

    CHOICES = [
        (IMMEDIATE, "Immediate"),
        (SCHEDULED, "Scheduled"),
    ]


class ServiceType:
    STANDARD = "standard"
    BUSINESS = "business"
    LONG_DISTANCE = "long_distance"

    CHOICES = [
        (STANDARD, "Standard"),
        (BUSINESS, "Business"),
        (LONG_DISTANCE, "Long Distance"),
    ]


class DriverStatus:
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"

    CHOICES = [
        (ONLINE, "Online"),
        (OFFLINE, "Offline"),
        (BUSY, "Busy"),
    ]


class Role:
    PASSENGER = "passenger"
    DRIVER = "driver"
    SYSTEM = "system"


@dataclass(frozen=True)
class Caller:
    """An already-authenticated caller, as supplied by the identity service."""
    user_id: str
    role: str


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    address: str = ""
    poi_id: Optional[str] = None


@dataclass(frozen=True)
class OrderSnapshot:
    """Full state of one order. Stores hand these out; fan-out delivers them."""
    order_id: str
    order_number: str
    passenger_id: str
    pickup: Location
    dropoff: Location
    created_at: datetime
    updated_at: datetime
    order_type: str = OrderType.IMMEDIATE
    service_type: str = ServiceType.STANDARD
    status: str = OrderStatus.PENDING
    driver_id: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    estimated_distance_km: Optional[Decimal] = None
    estimated_duration_min: Optional[int] = None
    estimated_price: Optional[Decimal] = None
    actual_distance_km: Optional[Decimal] = None
    actual_duration_min: Optional[int] = None
    final_price: Optional[Decimal] = None
    cancelled_by: Optional[str] = None
    cancel_reason: str = ""
    passenger_note: str = ""
    offer_round: int = 0
    offered_at: Optional[datetime] = None
    version: int = 1

    def lifecycle_timestamps(self) -> Tuple[Optional[datetime], ...]:
        """Timestamps in the order the lifecycle sets them."""
        return (
            self.created_at,
            self.accepted_at,
            self.arrived_at,
            self.started_at,
            self.completed_at,
        )

    def latest_timestamp(self) -> datetime:
        stamps = [ts for ts in self.lifecycle_timestamps() if ts is not None]
        stamps.append(self.updated_at)
        if self.cancelled_at is not None:
            stamps.append(self.cancelled_at)
        return max(stamps)


@dataclass(frozen=True)
class LocationFix:
    """One position reading from a device."""
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    bearing: Optional[float] = None


@dataclass(frozen=True)
class TrackPoint:
    order_id: str
    driver_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    received_at: datetime
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    bearing: Optional[float] = None


@dataclass(frozen=True)
class DriverAvailability:
    driver_id: str
    status: str = DriverStatus.OFFLINE
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_location_update: Optional[datetime] = None
    rating: Decimal = Decimal("5.00")
    total_orders: int = 0

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class NearbyDriver:
    """One row returned by the geo lookup, closest first."""
    driver_id: str
    distance_km: float
    rating: Decimal = Decimal("5.00")
    total_orders: int = 0


@dataclass(frozen=True)
class NearbyOrder:
    """A pending order and the distance from the searching driver to its pickup."""
    order: OrderSnapshot
    distance_km: float


@dataclass(frozen=True)
class CandidateSet:
    """Drivers offered an order in one offer round."""
    order_id: str
    offer_round: int
    drivers: Tuple[NearbyDriver, ...] = field(default_factory=tuple)
    expires_at: Optional[datetime] = None

    @property
    def driver_ids(self) -> Tuple[str, ...]:
        return tuple(d.driver_id for d in self.drivers)

    def __len__(self) -> int:
        return len(self.drivers)
