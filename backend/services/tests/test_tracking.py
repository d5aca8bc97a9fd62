from datetime import timedelta

from django.test import SimpleTestCase

from common.utils import calculate_distance, wgs84_to_gcj02
from services.order_lifecycle import LocationFix
from services.tracking import LocationFilter

from .helpers import FakeClock, add_driver, build_dispatch, driver, order_payload, passenger

# Near Beijing one metre north is about 0.000009 degrees of latitude
LAT, LON = 39.9, 116.4
TWO_METRES = 0.000018
FIFTY_METRES = 0.00045


class LocationFilterTests(SimpleTestCase):
	def setUp(self):
		self.clock = FakeClock()
		self.filter = LocationFilter()

	def fix(self, seconds=0, north=0.0, accuracy=5.0, latitude=LAT, longitude=LON):
		return LocationFix(
			latitude=latitude + north,
			longitude=longitude,
			timestamp=self.clock.now + timedelta(seconds=seconds),
			accuracy=accuracy,
		)

	def test_first_fix_always_published(self):
		self.assertIsNotNone(self.filter.offer('d1', self.fix()))
		self.assertIsNotNone(self.filter.offer('d2', self.fix()))
		self.assertEqual(self.filter.published, 2)

	def test_soon_and_close_is_suppressed(self):
		self.filter.offer('d1', self.fix())

		self.assertIsNone(self.filter.offer('d1', self.fix(seconds=1, north=TWO_METRES)))
		self.assertEqual(self.filter.suppressed, 1)

	def test_later_but_close_is_published(self):
		self.filter.offer('d1', self.fix())

		self.assertIsNotNone(self.filter.offer('d1', self.fix(seconds=5, north=TWO_METRES)))

	def test_soon_but_far_is_published(self):
		self.filter.offer('d1', self.fix())

		self.assertIsNotNone(self.filter.offer('d1', self.fix(seconds=1, north=FIFTY_METRES)))

	def test_throttle_measured_from_last_published(self):
		self.filter.offer('d1', self.fix())
		self.filter.offer('d1', self.fix(seconds=1, north=TWO_METRES))
		self.filter.offer('d1', self.fix(seconds=2, north=TWO_METRES * 2))

		published = self.filter.offer('d1', self.fix(seconds=3, north=TWO_METRES * 2))

		self.assertIsNotNone(published)
		self.assertEqual(self.filter.suppressed, 2)

	def test_accuracy_gate(self):
		self.assertIsNone(self.filter.offer('d1', self.fix(accuracy=150.0)))
		self.assertIsNone(self.filter.offer('d1', self.fix(accuracy=-1.0)))
		self.assertEqual(self.filter.rejected, 2)
		self.assertIsNone(self.filter.last_published('d1'))

		self.assertIsNotNone(self.filter.offer('d1', self.fix(accuracy=100.0)))
		self.assertIsNotNone(self.filter.offer('d2', self.fix(accuracy=None)))

	def test_published_fix_is_in_map_datum(self):
		published = self.filter.offer('d1', self.fix())

		self.assertEqual((published.latitude, published.longitude), wgs84_to_gcj02(LAT, LON))
		self.assertGreater(calculate_distance(LAT, LON, published.latitude, published.longitude), 100)

	def test_fix_outside_region_unchanged(self):
		published = self.filter.offer('d1', self.fix(latitude=48.8566, longitude=2.3522))

		self.assertEqual((published.latitude, published.longitude), (48.8566, 2.3522))

	def test_forget_resets_throttle(self):
		self.filter.offer('d1', self.fix())
		self.filter.forget('d1')

		self.assertIsNotNone(self.filter.offer('d1', self.fix(seconds=1, north=TWO_METRES)))


class LocationTrackerTests(SimpleTestCase):
	def setUp(self):
		self.env = build_dispatch()
		add_driver(self.env.drivers, 'd1')
		add_driver(self.env.drivers, 'd2')
		self.order = self.env.state_machine.create(passenger(), order_payload())

	def raw(self, seconds=0, north=0.0, **extra):
		fix = {
			'latitude': LAT + north,
			'longitude': LON,
			'timestamp': (self.env.clock.now + timedelta(seconds=seconds)).isoformat(),
			'accuracy': 6.5,
		}
		fix.update(extra)
		return fix

	def test_malformed_fix_is_counted(self):
		with self.assertLogs('services.tracking.tracker', level='WARNING'):
			result = self.env.tracker.submit_fix('d1', {'latitude': 'north', 'longitude': LON})

		self.assertIsNone(result)
		self.assertEqual(self.env.tracker.malformed, 1)
		self.assertIsNone(self.env.drivers.get('d1').last_location_update)

	def test_idle_driver_updates_position_only(self):
		published = self.env.tracker.submit_fix('d1', self.raw())

		record = self.env.drivers.get('d1')
		self.assertEqual((record.latitude, record.longitude), (published.latitude, published.longitude))
		self.assertEqual(record.last_location_update, self.env.clock.now)
		self.assertEqual(self.env.state_machine.track_history(self.order.order_id), [])
		self.assertEqual(self.env.transport.locations, [])

	def test_assigned_driver_builds_track(self):
		self.env.state_machine.accept(self.order.order_id, 'd1')

		self.env.tracker.submit_fix('d1', self.raw())
		self.env.tracker.submit_fix('d1', self.raw(seconds=1, north=TWO_METRES))
		self.env.tracker.submit_fix('d1', self.raw(seconds=4, north=FIFTY_METRES))

		points = self.env.state_machine.track_history(self.order.order_id)
		self.assertEqual(len(points), 2)
		self.assertEqual(points[0].driver_id, 'd1')
		self.assertEqual(points[0].accuracy, 6.5)
		self.assertEqual(self.env.transport.locations, points)

	def test_fix_for_someone_elses_order_not_tracked(self):
		self.env.state_machine.accept(self.order.order_id, 'd1')

		self.env.tracker.submit_fix('d2', self.raw(), order_id=self.order.order_id)

		self.assertEqual(self.env.state_machine.track_history(self.order.order_id), [])

	def test_track_sorted_by_device_time(self):
		self.env.state_machine.accept(self.order.order_id, 'd1')

		self.env.tracker.submit_fix('d1', self.raw(seconds=10), order_id=self.order.order_id)
		self.env.tracker.submit_fix('d1', self.raw(seconds=5, north=FIFTY_METRES), order_id=self.order.order_id)

		points = self.env.state_machine.track_history(self.order.order_id)
		self.assertEqual(len(points), 2)
		self.assertLess(points[0].timestamp, points[1].timestamp)

	def test_no_track_after_trip_ends(self):
		me = driver('d1')
		machine = self.env.state_machine
		machine.accept(self.order.order_id, 'd1')
		machine.cancel(self.order.order_id, me)

		self.env.tracker.submit_fix('d1', self.raw())

		self.assertEqual(machine.track_history(self.order.order_id), [])
