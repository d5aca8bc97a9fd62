"""
Driver matching and offer dispatch service.

This module handles:
    - Building the ranked candidate list for an order
    - Running offer rounds and delivering offers to drivers
    - Resolving claims and withdrawing offers from the drivers who lost
    - Re-offering or expiring orders nobody claimed
"""

from .coordinator import ClaimResult, DispatchCoordinator, TimeoutOutcome
from .offer_builder import build_candidates
from .offer_dispatch import OfferEvent, dispatch_offers, notify_no_drivers, withdraw_offers

__all__ = [
    "DispatchCoordinator",
    "ClaimResult",
    "TimeoutOutcome",
    "build_candidates",
    "OfferEvent",
    "dispatch_offers",
    "withdraw_offers",
    "notify_no_drivers",
]
