"""Celery tasks for order dispatch background processing."""

import logging

from celery import shared_task

from services.order_lifecycle.exceptions import DependencyUnavailable, DispatchError

logger = logging.getLogger(__name__)


@shared_task(
    autoretry_for=(DependencyUnavailable,),
    retry_backoff=True,
    max_retries=3,
)
def expire_offer_round_task(order_id: str, offer_round: int):
    """
    Close one offer round once its window has passed.

    Scheduled (with a countdown) when the round is opened. If the order was
    claimed, cancelled or re-offered in the meantime the timer is stale and
    nothing happens; otherwise the order is offered again or expired.
    """
    from services.wiring import get_services

    try:
        outcome = get_services().coordinator.handle_offer_timeout(order_id, offer_round)
    except DependencyUnavailable:
        raise
    except DispatchError as exc:
        logger.warning("Offer timeout of order %s round %s failed: %s", order_id, offer_round, exc.message)
        return None

    logger.info("Offer round %s of order %s closed: %s", offer_round, order_id, outcome)
    return outcome


@shared_task
def sweep_offer_timeouts():
    """Periodic safety net for rounds whose timer was lost (Celery beat)."""
    from services.wiring import get_services

    reoffered, expired = get_services().coordinator.sweep_offer_timeouts()
    return {"reoffered": reoffered, "expired": expired}
