"""
Order lifecycle service - the order state machine.

This module handles:
    - Creating trip orders
    - Accepting orders (the claim race)
    - Driver arrival, trip start and completion
    - Cancelling and expiring orders
    - Querying orders and track history
"""

from .exceptions import (
    DependencyUnavailable,
    DispatchError,
    InvalidInput,
    NotFound,
    PreconditionFailed,
    Unauthorized,
)
from .state_machine import NO_DRIVERS_REASON, OrderStateMachine, generate_order_number
from .types import (
    Caller,
    CandidateSet,
    DriverAvailability,
    DriverStatus,
    Location,
    LocationFix,
    NearbyDriver,
    NearbyOrder,
    OrderSnapshot,
    OrderStatus,
    OrderType,
    Role,
    ServiceType,
    TrackPoint,
)

__all__ = [
    # State machine
    "OrderStateMachine",
    "generate_order_number",
    "NO_DRIVERS_REASON",
    # Types
    "Caller",
    "CandidateSet",
    "DriverAvailability",
    "DriverStatus",
    "Location",
    "LocationFix",
    "NearbyDriver",
    "NearbyOrder",
    "OrderSnapshot",
    "OrderStatus",
    "OrderType",
    "Role",
    "ServiceType",
    "TrackPoint",
    # Exceptions
    "DispatchError",
    "InvalidInput",
    "NotFound",
    "PreconditionFailed",
    "Unauthorized",
    "DependencyUnavailable",
]
