"""
Offer delivery and invalidation.

Offers go to each candidate's personal channel (``driver_<id>``). When an order
is taken, cancelled or expired, every driver still holding an offer for it is
told to drop it so stale offers disappear from their screens.
"""

import logging
from typing import Iterable, Optional, Sequence

from services.order_lifecycle.types import CandidateSet, NearbyDriver, OrderSnapshot

logger = logging.getLogger(__name__)


class OfferEvent:
    OFFER = "order_offer"
    TAKEN = "order_taken"
    CANCELLED = "order_cancelled"
    EXPIRED = "order_expired"
    NO_DRIVERS = "no_drivers"


def dispatch_offers(hub, order: OrderSnapshot, candidates: Sequence[NearbyDriver], candidate_set: CandidateSet) -> int:
    """
    Send the order to every candidate of the round.

    Returns:
        Number of drivers the offer was sent to
    """
    if hub is None:
        return 0

    expires_at = candidate_set.expires_at.isoformat() if candidate_set.expires_at else None
    for rank, candidate in enumerate(candidates):
        logger.debug(
            "Dispatching offer round %d of order %s to driver_%s",
            candidate_set.offer_round, order.order_id, candidate.driver_id,
        )
        hub.notify_driver(
            candidate.driver_id,
            OfferEvent.OFFER,
            order,
            "New trip request nearby.",
            offer_round=candidate_set.offer_round,
            rank=rank,
            distance_km=round(candidate.distance_km, 3),
            expires_at=expires_at,
        )
    return len(candidates)


def withdraw_offers(
    hub,
    order: OrderSnapshot,
    driver_ids: Iterable[str],
    event_type: str,
    message: str,
    exclude: Optional[str] = None,
) -> int:
    """Tell every offered driver (except ``exclude``) that the order is gone."""
    if hub is None:
        return 0

    notified = 0
    for driver_id in driver_ids:
        if driver_id == exclude:
            continue
        hub.notify_driver(driver_id, event_type, order, message)
        notified += 1

    logger.debug("Withdrew offers of order %s from %d driver(s) (%s)", order.order_id, notified, event_type)
    return notified


def notify_no_drivers(hub, order: OrderSnapshot, final: bool) -> None:
    if hub is None:
        return
    if final:
        message = "No drivers accepted your ride request. Please try again later."
    else:
        message = "No drivers nearby yet. Still searching..."
    logger.debug("Notifying passenger user_%s - no drivers available", order.passenger_id)
    hub.notify_passenger(order, OfferEvent.NO_DRIVERS, message, final=final)
