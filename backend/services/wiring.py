"""
Composition root.

Builds the dispatch services from Django settings. Everything below takes its
collaborators through the constructor; this module is the only place that
reads settings and picks implementations.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.utils.module_loading import import_string

from drivers.services import DriverAvailabilityService
from realtime.fanout import OrderEventHub
from realtime.geo import RedisDriverLocator
from services.matching.coordinator import DispatchCoordinator
from services.order_lifecycle.state_machine import OrderStateMachine
from services.storage.base import DriverStore, GeoLookup, OrderStore
from services.storage.memory import StoreBackedDriverLocator
from services.tracking import LocationFilter, LocationTracker

logger = logging.getLogger(__name__)


DEFAULTS = {
    "DISPATCH_ORDER_STORE": "orders.store.DjangoOrderStore",
    "DISPATCH_DRIVER_STORE": "drivers.store.DjangoDriverStore",
    "DISPATCH_GEO_LOOKUP": "drivers.store.DjangoDriverLocator",
    "DISPATCH_EVENT_TRANSPORT": "realtime.transport.ChannelLayerTransport",
    "DISPATCH_SEARCH_RADIUS_KM": 5.0,
    "DISPATCH_MAX_CANDIDATES": 10,
    "DISPATCH_OFFER_WINDOW_SECONDS": 20,
    "DISPATCH_MAX_OFFER_ROUNDS": 3,
    "DISPATCH_SCHEDULE_OFFER_EXPIRY": True,
    "DISPATCH_SUBSCRIBER_BUFFER_SIZE": 64,
    "DISPATCH_LOCATION_MIN_INTERVAL_SECONDS": 3.0,
    "DISPATCH_LOCATION_MIN_DISTANCE_METERS": 10.0,
    "DISPATCH_LOCATION_MAX_ACCURACY_METERS": 100.0,
}


def dispatch_setting(name: str):
    return getattr(settings, name, DEFAULTS[name])


@dataclass
class DispatchServices:
    orders: OrderStore
    drivers: DriverStore
    geo_lookup: GeoLookup
    hub: OrderEventHub
    state_machine: OrderStateMachine
    coordinator: DispatchCoordinator
    tracker: LocationTracker
    availability: DriverAvailabilityService


def schedule_offer_expiry(order_id: str, offer_round: int, countdown: float) -> None:
    """Queue the Celery task that closes one offer round."""
    from orders.tasks import expire_offer_round_task
    expire_offer_round_task.apply_async((order_id, offer_round), countdown=countdown)


def _build_geo_lookup(path: str, drivers: DriverStore) -> GeoLookup:
    geo_class = import_string(path)
    if issubclass(geo_class, StoreBackedDriverLocator):
        return geo_class(drivers)
    return geo_class()


def build_services(
    orders: Optional[OrderStore] = None,
    drivers: Optional[DriverStore] = None,
    geo_lookup: Optional[GeoLookup] = None,
    hub: Optional[OrderEventHub] = None,
    clock=None,
) -> DispatchServices:
    """Build the full service graph; explicit arguments override settings."""
    orders = orders or import_string(dispatch_setting("DISPATCH_ORDER_STORE"))()
    drivers = drivers or import_string(dispatch_setting("DISPATCH_DRIVER_STORE"))()
    geo_lookup = geo_lookup or _build_geo_lookup(dispatch_setting("DISPATCH_GEO_LOOKUP"), drivers)

    if hub is None:
        transport_path = dispatch_setting("DISPATCH_EVENT_TRANSPORT")
        transport = import_string(transport_path)() if transport_path else None
        hub = OrderEventHub(transport, buffer_size=dispatch_setting("DISPATCH_SUBSCRIBER_BUFFER_SIZE"))

    state_machine = OrderStateMachine(orders, drivers, hub=hub, clock=clock)
    coordinator = DispatchCoordinator(
        state_machine,
        geo_lookup,
        hub=hub,
        search_radius_km=dispatch_setting("DISPATCH_SEARCH_RADIUS_KM"),
        max_candidates=dispatch_setting("DISPATCH_MAX_CANDIDATES"),
        offer_window_seconds=dispatch_setting("DISPATCH_OFFER_WINDOW_SECONDS"),
        max_offer_rounds=dispatch_setting("DISPATCH_MAX_OFFER_ROUNDS"),
        scheduler=schedule_offer_expiry if dispatch_setting("DISPATCH_SCHEDULE_OFFER_EXPIRY") else None,
    )
    location_filter = LocationFilter(
        min_interval_seconds=dispatch_setting("DISPATCH_LOCATION_MIN_INTERVAL_SECONDS"),
        min_distance_meters=dispatch_setting("DISPATCH_LOCATION_MIN_DISTANCE_METERS"),
        max_accuracy_meters=dispatch_setting("DISPATCH_LOCATION_MAX_ACCURACY_METERS"),
    )
    tracker = LocationTracker(location_filter, orders, drivers, hub=hub, clock=clock)
    availability = DriverAvailabilityService(
        drivers,
        tracker=tracker,
        geo_index=geo_lookup if isinstance(geo_lookup, RedisDriverLocator) else None,
    )

    logger.debug(
        "Built dispatch services: orders=%s drivers=%s geo=%s",
        type(orders).__name__, type(drivers).__name__, type(geo_lookup).__name__,
    )
    return DispatchServices(
        orders=orders,
        drivers=drivers,
        geo_lookup=geo_lookup,
        hub=hub,
        state_machine=state_machine,
        coordinator=coordinator,
        tracker=tracker,
        availability=availability,
    )


# ---------------------- Singleton Instance ----------------------

_services: Optional[DispatchServices] = None
_services_lock = threading.Lock()


def get_services() -> DispatchServices:
    """Get the process-wide DispatchServices instance."""
    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                _services = build_services()
    return _services


def reset_services() -> None:
    global _services
    with _services_lock:
        _services = None
