"""
Storage collaborators for the dispatch services.

    - base.py: interfaces the services depend on (OrderStore, DriverStore, GeoLookup)
    - memory.py: in-process implementations (tests, single-process deployments)

Django ORM implementations live in orders.store and drivers.store,
the Redis GEO lookup in realtime.geo.
"""

from .base import OrderStore, DriverStore, GeoLookup
from .memory import InMemoryOrderStore, InMemoryDriverStore, StoreBackedDriverLocator

__all__ = [
    "OrderStore",
    "DriverStore",
    "GeoLookup",
    "InMemoryOrderStore",
    "InMemoryDriverStore",
    "StoreBackedDriverLocator",
]
