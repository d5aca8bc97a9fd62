"""In-memory collaborators and builders shared by the service tests."""

from datetime import datetime, timedelta, timezone as dt_timezone
from types import SimpleNamespace

from realtime.fanout import EventTransport, OrderEventHub
from services.matching.coordinator import DispatchCoordinator
from services.order_lifecycle.exceptions import DependencyUnavailable
from services.order_lifecycle.state_machine import OrderStateMachine
from services.order_lifecycle.types import Caller, DriverStatus, Role
from services.storage.base import GeoLookup
from services.storage.memory import InMemoryDriverStore, InMemoryOrderStore, StoreBackedDriverLocator
from services.tracking import LocationFilter, LocationTracker

PICKUP = (39.90, 116.40)
DROPOFF = (39.99, 116.31)


class FakeClock:
	"""Settable clock; starts at a fixed UTC instant."""

	def __init__(self, start=None):
		self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=dt_timezone.utc)

	def __call__(self):
		return self.now

	def advance(self, seconds=0, **kwargs):
		self.now = self.now + timedelta(seconds=seconds, **kwargs)
		return self.now


class RecordingTransport(EventTransport):
	"""Transport that keeps everything it was asked to send."""

	def __init__(self):
		self.snapshots = []
		self.locations = []
		self.driver_events = []
		self.passenger_events = []

	def publish_snapshot(self, snapshot):
		self.snapshots.append(snapshot)

	def publish_location(self, point):
		self.locations.append(point)

	def send_to_driver(self, driver_id, event_type, snapshot, message="", **extra):
		self.driver_events.append((driver_id, event_type, snapshot, message, extra))

	def send_to_passenger(self, snapshot, event_type, message="", **extra):
		self.passenger_events.append((snapshot.passenger_id, event_type, snapshot, message, extra))

	def drivers_sent(self, event_type):
		return [event[0] for event in self.driver_events if event[1] == event_type]

	def passenger_event_types(self):
		return [event[1] for event in self.passenger_events]


class FailingTransport(EventTransport):

	def publish_snapshot(self, snapshot):
		raise RuntimeError("transport down")

	def publish_location(self, point):
		raise RuntimeError("transport down")

	def send_to_driver(self, driver_id, event_type, snapshot, message="", **extra):
		raise RuntimeError("transport down")

	def send_to_passenger(self, snapshot, event_type, message="", **extra):
		raise RuntimeError("transport down")


class FailingGeoLookup(GeoLookup):

	def __init__(self):
		self.calls = 0

	def find_nearby_drivers(self, location, radius_km, limit):
		self.calls += 1
		raise DependencyUnavailable("geo lookup timed out")


def passenger(user_id="passenger-1"):
	return Caller(user_id=user_id, role=Role.PASSENGER)


def driver(user_id):
	return Caller(user_id=user_id, role=Role.DRIVER)


def order_payload(**overrides):
	payload = {
		"pickup_latitude": PICKUP[0],
		"pickup_longitude": PICKUP[1],
		"pickup_address": "Tiananmen Square",
		"dropoff_latitude": DROPOFF[0],
		"dropoff_longitude": DROPOFF[1],
		"dropoff_address": "Zhongguancun",
		"estimated_distance_km": "12.50",
		"estimated_duration_min": 30,
		"estimated_price": "88.00",
	}
	payload.update(overrides)
	return payload


def add_driver(drivers, driver_id, latitude=PICKUP[0], longitude=PICKUP[1], status=DriverStatus.ONLINE):
	return drivers.register(driver_id, status=status, latitude=latitude, longitude=longitude)


def build_dispatch(clock=None, geo_lookup=None, transport=None, scheduler=None, **coordinator_kwargs):
	"""Wire the dispatch services over in-memory stores."""
	clock = clock or FakeClock()
	transport = transport if transport is not None else RecordingTransport()
	orders = InMemoryOrderStore()
	drivers = InMemoryDriverStore()
	geo_lookup = geo_lookup or StoreBackedDriverLocator(drivers)
	hub = OrderEventHub(transport, buffer_size=16)

	state_machine = OrderStateMachine(orders, drivers, hub=hub, clock=clock)
	coordinator = DispatchCoordinator(state_machine, geo_lookup, hub=hub, scheduler=scheduler, **coordinator_kwargs)
	tracker = LocationTracker(LocationFilter(), orders, drivers, hub=hub, clock=clock)

	return SimpleNamespace(
		clock=clock,
		transport=transport,
		orders=orders,
		drivers=drivers,
		geo_lookup=geo_lookup,
		hub=hub,
		state_machine=state_machine,
		coordinator=coordinator,
		tracker=tracker,
	)
