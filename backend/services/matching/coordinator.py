"""
Dispatch coordinator.

Runs offer rounds for pending orders:
1. Find nearby online drivers around the pickup point
2. Stamp a new offer round on the order and send it to every candidate
3. First successful claim wins; the other candidates are told the order is gone
4. If nobody claims within the window, run another round, up to the limit,
   then expire the order

Offer rounds are stamped on the order row itself, so a claim naming an old
round (or racing a cancellation) loses the same compare-and-set as any other
stale claim.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from services.order_lifecycle.exceptions import DispatchError, PreconditionFailed
from services.order_lifecycle.state_machine import OrderStateMachine
from services.order_lifecycle.types import Caller, CandidateSet, OrderSnapshot, OrderStatus
from services.storage.base import GeoLookup
from .offer_builder import build_candidates
from .offer_dispatch import OfferEvent, dispatch_offers, notify_no_drivers, withdraw_offers

logger = logging.getLogger(__name__)

# (order_id, offer_round, countdown_seconds)
ExpiryScheduler = Callable[[str, int, float], None]


class TimeoutOutcome:
    STALE = "stale"
    REOFFERED = "reoffered"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of one driver's attempt to claim an order."""
    success: bool
    order: Optional[OrderSnapshot] = None
    error: Optional[DispatchError] = None

    @property
    def message(self) -> str:
        if self.error is not None:
            return self.error.user_message
        return ""


class DispatchCoordinator:

    def __init__(
        self,
        state_machine: OrderStateMachine,
        geo_lookup: GeoLookup,
        hub=None,
        search_radius_km: float = 5.0,
        max_candidates: int = 10,
        offer_window_seconds: float = 20,
        max_offer_rounds: int = 3,
        scheduler: Optional[ExpiryScheduler] = None,
    ):
        self.state_machine = state_machine
        self.geo_lookup = geo_lookup
        self.hub = hub if hub is not None else state_machine.hub
        self.search_radius_km = search_radius_km
        self.max_candidates = max_candidates
        self.offer_window_seconds = offer_window_seconds
        self.max_offer_rounds = max_offer_rounds
        self.scheduler = scheduler

    @property
    def orders(self):
        return self.state_machine.orders

    # ===================== Offer Rounds =====================

    def open_for_offers(self, order_id: str, expected_round: Optional[int] = None) -> CandidateSet:
        """
        Run one offer round for a pending order.

        Args:
            order_id: order to offer
            expected_round: round the caller believes is current; used by the
                timeout path so two handlers of the same timer cannot both
                open a round

        Returns:
            CandidateSet of the new round (possibly empty)

        Raises:
            NotFound: order missing
            PreconditionFailed: order not pending, or the round moved on
            DependencyUnavailable: geo lookup or store failed; no round opened
        """
        order = self.state_machine.get(order_id)
        if order.status != OrderStatus.PENDING:
            raise PreconditionFailed(f"Order {order.order_id} is {order.status}, cannot open offers")
        if expected_round is None:
            expected_round = order.offer_round
        elif expected_round != order.offer_round:
            raise PreconditionFailed(
                f"Order {order.order_id} is on round {order.offer_round}, expected {expected_round}"
            )

        candidates = build_candidates(
            order,
            self.geo_lookup,
            self.state_machine.drivers,
            self.search_radius_km,
            self.max_candidates,
        )

        with self.orders.atomic():
            stamped = self.state_machine.stamp_offer_round(order.order_id, expected_round)
            candidate_set = CandidateSet(
                order_id=stamped.order_id,
                offer_round=stamped.offer_round,
                drivers=tuple(candidates),
                expires_at=stamped.offered_at + timedelta(seconds=self.offer_window_seconds),
            )
            self.orders.record_offers(stamped.order_id, stamped.offer_round, candidates, stamped.offered_at)
            self.orders.on_commit(lambda: self._announce_round(stamped, candidate_set))

        self._schedule_expiry(candidate_set)
        logger.info(
            "Opened offer round %d for order %s with %d candidate(s)",
            candidate_set.offer_round, candidate_set.order_id, len(candidate_set),
        )
        return candidate_set

    def attempt_claim(self, order_id: str, driver_id: str, offer_round: Optional[int] = None) -> ClaimResult:
        """
        Forward a driver's claim to the state machine.

        A lost race is an expected outcome and comes back as an unsuccessful
        ClaimResult; any other failure propagates.
        """
        try:
            order = self.state_machine.accept(order_id, driver_id, offer_round=offer_round)
        except PreconditionFailed as exc:
            logger.info("Claim of order %s by driver %s rejected: %s", order_id, driver_id, exc.message)
            return ClaimResult(success=False, error=exc)

        losers = self.orders.offered_driver_ids(order.order_id, order.offer_round)
        withdraw_offers(
            self.hub, order, losers, OfferEvent.TAKEN,
            "This order has been accepted by another driver.",
            exclude=order.driver_id,
        )
        if self.hub is not None:
            self.hub.notify_passenger(order, "order_accepted", "A driver accepted your order.")
        return ClaimResult(success=True, order=order)

    def handle_offer_timeout(self, order_id: str, offer_round: int) -> str:
        """
        React to the end of an offer window.

        Stale timers (order no longer pending, or a newer round already opened)
        are ignored. Otherwise the order is offered again until
        ``max_offer_rounds`` rounds were used, then expired.
        """
        order = self.orders.get(order_id)
        if order is None or order.status != OrderStatus.PENDING or order.offer_round != offer_round:
            logger.debug("Ignoring stale offer timer for order %s round %s", order_id, offer_round)
            return TimeoutOutcome.STALE

        if offer_round >= self.max_offer_rounds:
            return self._expire(order)

        try:
            candidate_set = self.open_for_offers(order.order_id, expected_round=offer_round)
        except PreconditionFailed:
            logger.debug("Order %s moved on while re-offering round %s", order_id, offer_round)
            return TimeoutOutcome.STALE

        if offer_round > 0:
            withdraw_offers(
                self.hub,
                order,
                [d for d in self.orders.offered_driver_ids(order.order_id, offer_round)
                 if d not in candidate_set.driver_ids],
                OfferEvent.EXPIRED,
                "Your ride offer has timed out.",
            )
        return TimeoutOutcome.REOFFERED

    def sweep_offer_timeouts(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """
        Handle every pending order whose offer window has passed.

        Returns:
            (reoffered_count, expired_count)
        """
        now = now or self.state_machine.now()
        cutoff = now - timedelta(seconds=self.offer_window_seconds)

        reoffered = expired = 0
        for order in self.orders.stale_offer_rounds(cutoff):
            try:
                outcome = self.handle_offer_timeout(order.order_id, order.offer_round)
            except DispatchError as exc:
                logger.warning("Could not handle offer timeout of order %s: %s", order.order_id, exc.message)
                continue
            if outcome == TimeoutOutcome.REOFFERED:
                reoffered += 1
            elif outcome == TimeoutOutcome.EXPIRED:
                expired += 1

        if reoffered or expired:
            logger.info("Offer sweep: %d re-offered, %d expired", reoffered, expired)
        return reoffered, expired

    # ===================== Cancellation =====================

    def cancel(self, order_id: str, caller: Caller, reason: str = "") -> OrderSnapshot:
        """Cancel through the state machine and withdraw every outstanding offer."""
        order = self.state_machine.cancel(order_id, caller, reason)

        holders = self.orders.offered_driver_ids(order.order_id)
        if order.driver_id and order.driver_id not in holders:
            holders.append(order.driver_id)
        withdraw_offers(
            self.hub, order, holders, OfferEvent.CANCELLED,
            "This order has been cancelled.",
            exclude=caller.user_id,
        )
        if self.hub is not None and caller.user_id != order.passenger_id:
            self.hub.notify_passenger(order, OfferEvent.CANCELLED, "Your driver cancelled the trip.")
        return order

    # ===================== Helper Functions =====================

    def _expire(self, order: OrderSnapshot) -> str:
        try:
            expired = self.state_machine.expire(order.order_id, order.offer_round)
        except PreconditionFailed:
            logger.debug("Order %s left pending before it could expire", order.order_id)
            return TimeoutOutcome.STALE

        withdraw_offers(
            self.hub, expired, self.orders.offered_driver_ids(expired.order_id, expired.offer_round),
            OfferEvent.EXPIRED, "Your ride offer has timed out.",
        )
        notify_no_drivers(self.hub, expired, final=True)
        return TimeoutOutcome.EXPIRED

    def _announce_round(self, order: OrderSnapshot, candidate_set: CandidateSet) -> None:
        if len(candidate_set):
            dispatch_offers(self.hub, order, candidate_set.drivers, candidate_set)
        else:
            notify_no_drivers(self.hub, order, final=False)

    def _schedule_expiry(self, candidate_set: CandidateSet) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler(candidate_set.order_id, candidate_set.offer_round, self.offer_window_seconds)
        except Exception:
            # The periodic sweep picks the round up if the timer could not be queued
            logger.exception(
                "Could not schedule expiry of order %s round %d",
                candidate_set.order_id, candidate_set.offer_round,
            )
