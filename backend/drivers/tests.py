from unittest.mock import MagicMock

from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from services.order_lifecycle import Caller, DriverStatus, InvalidInput, Location, PreconditionFailed, Role
from services.wiring import get_services, reset_services

from .models import DriverAvailability
from .services import DriverAvailabilityService
from .store import DjangoDriverLocator, DjangoDriverStore

PICKUP = Location(39.9087, 116.3975)


def place(driver_id, north_km, status=DriverStatus.ONLINE):
	return DriverAvailability.objects.create(
		driver_id=driver_id,
		status=status,
		latitude=PICKUP.latitude + north_km / 111.2,
		longitude=PICKUP.longitude,
	)


class DjangoDriverStoreTests(TestCase):
	def setUp(self):
		self.store = DjangoDriverStore()

	def test_register_creates_offline_record_once(self):
		record = self.store.register('d1')
		self.assertEqual(record.status, DriverStatus.OFFLINE)

		self.store.compare_and_set_status('d1', {DriverStatus.OFFLINE}, DriverStatus.ONLINE)
		self.assertEqual(self.store.register('d1').status, DriverStatus.ONLINE)
		self.assertEqual(DriverAvailability.objects.count(), 1)

	def test_compare_and_set_status(self):
		self.store.register('d1', status=DriverStatus.ONLINE)

		self.assertIsNone(self.store.compare_and_set_status('d1', {DriverStatus.BUSY}, DriverStatus.ONLINE))
		busy = self.store.compare_and_set_status('d1', {DriverStatus.ONLINE}, DriverStatus.BUSY)
		self.assertEqual(busy.status, DriverStatus.BUSY)
		self.assertIsNone(self.store.compare_and_set_status('ghost', {DriverStatus.ONLINE}, DriverStatus.BUSY))

	def test_update_position_and_completed_count(self):
		self.store.register('d1')
		now = timezone.now()

		record = self.store.update_position('d1', 39.91, 116.40, now)
		self.store.increment_completed('d1')
		self.store.increment_completed('d1')

		self.assertEqual((record.latitude, record.longitude), (39.91, 116.40))
		self.assertEqual(record.last_location_update, now)
		self.assertEqual(self.store.get('d1').total_orders, 2)
		self.assertIsNone(self.store.update_position('ghost', 1.0, 1.0, now))


class DjangoDriverLocatorTests(TestCase):
	def test_online_drivers_within_radius_closest_first(self):
		place('far', 4.0)
		place('near', 0.3)
		place('mid', 2.0)
		place('outside', 8.0)
		place('offline', 0.1, status=DriverStatus.OFFLINE)
		place('busy', 0.1, status=DriverStatus.BUSY)

		found = DjangoDriverLocator().find_nearby_drivers(PICKUP, 5.0, 10)

		self.assertEqual([d.driver_id for d in found], ['near', 'mid', 'far'])
		self.assertAlmostEqual(found[0].distance_km, 0.3, delta=0.01)

	def test_limit(self):
		for index in range(5):
			place('d%d' % index, 0.2 * (index + 1))

		found = DjangoDriverLocator().find_nearby_drivers(PICKUP, 5.0, 2)

		self.assertEqual([d.driver_id for d in found], ['d0', 'd1'])


class DriverAvailabilityServiceTests(TestCase):
	def setUp(self):
		self.store = DjangoDriverStore()
		self.tracker = MagicMock()
		self.geo_index = MagicMock()
		self.service = DriverAvailabilityService(self.store, tracker=self.tracker, geo_index=self.geo_index)

	def test_online_offline_toggle(self):
		self.assertEqual(self.service.go_online('d1').status, DriverStatus.ONLINE)
		self.assertEqual(self.service.go_online('d1').status, DriverStatus.ONLINE)
		self.assertEqual(self.service.go_offline('d1').status, DriverStatus.OFFLINE)
		self.geo_index.remove_driver.assert_called_once_with('d1')

	def test_busy_driver_cannot_toggle(self):
		self.store.register('d1', status=DriverStatus.BUSY)

		with self.assertRaises(PreconditionFailed) as ctx:
			self.service.go_offline('d1')
		self.assertEqual(ctx.exception.user_message, 'Finish the current trip before going offline.')

		with self.assertRaises(PreconditionFailed):
			self.service.go_online('d1')
		self.assertEqual(self.store.get('d1').status, DriverStatus.BUSY)

	def test_missing_driver_id(self):
		with self.assertRaises(InvalidInput):
			self.service.go_online('  ')

	def test_report_location_updates_geo_index_when_online(self):
		self.service.go_online('d1')
		self.tracker.submit_fix.return_value = MagicMock(latitude=39.91, longitude=116.40)

		self.service.report_location('d1', {'latitude': 39.9, 'longitude': 116.4})

		self.tracker.submit_fix.assert_called_once_with('d1', {'latitude': 39.9, 'longitude': 116.4}, order_id=None)
		self.geo_index.update_driver_location.assert_called_once_with('d1', 39.91, 116.40)

	def test_suppressed_fix_leaves_geo_index_alone(self):
		self.service.go_online('d1')
		self.tracker.submit_fix.return_value = None

		self.assertIsNone(self.service.report_location('d1', {}))
		self.geo_index.update_driver_location.assert_not_called()


class DriverApiTests(TestCase):
	def setUp(self):
		reset_services()
		token = AccessToken()
		token['user_id'] = 'd1'
		token['role'] = 'driver'
		self.client = APIClient()
		self.client.credentials(HTTP_AUTHORIZATION='Bearer %s' % token)

	def tearDown(self):
		reset_services()

	def test_status_roundtrip(self):
		self.assertEqual(self.client.get('/api/driver/status/').data['status'], 'offline')

		response = self.client.put('/api/driver/status/', {'status': 'online'}, format='json')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['status'], 'online')
		self.assertEqual(DriverAvailability.objects.get(pk='d1').status, 'online')

	def test_busy_cannot_be_set_by_driver(self):
		response = self.client.put('/api/driver/status/', {'status': 'busy'}, format='json')

		self.assertEqual(response.status_code, 400)

	def test_location_updates_position(self):
		self.client.put('/api/driver/status/', {'status': 'online'}, format='json')

		response = self.client.post('/api/driver/location/', {
			'latitude': 39.9087,
			'longitude': 116.3975,
			'timestamp': timezone.now().isoformat(),
			'accuracy': 12,
		}, format='json')

		self.assertTrue(response.data['published'])
		record = DriverAvailability.objects.get(pk='d1')
		self.assertEqual(record.latitude, response.data['latitude'])
		self.assertIsNotNone(record.last_location_update)

	def test_malformed_location(self):
		response = self.client.post('/api/driver/location/', {'latitude': 'here'}, format='json')

		self.assertEqual(response.status_code, 200)
		self.assertFalse(response.data['published'])

	def test_no_current_order(self):
		self.assertEqual(self.client.get('/api/driver/current-order/').status_code, 404)

	def test_passenger_token_rejected(self):
		token = AccessToken()
		token['user_id'] = 'p1'
		token['role'] = 'passenger'
		client = APIClient()
		client.credentials(HTTP_AUTHORIZATION='Bearer %s' % token)

		self.assertEqual(client.get('/api/driver/status/').status_code, 403)

	def _pending_order(self, north_km):
		return get_services().state_machine.create(Caller('p-%s' % north_km, Role.PASSENGER), {
			'pickup_latitude': PICKUP.latitude + north_km / 111.2,
			'pickup_longitude': PICKUP.longitude,
			'dropoff_latitude': 39.9834,
			'dropoff_longitude': 116.3066,
		})

	def test_pending_orders_near_given_point(self):
		near = self._pending_order(1)
		farther = self._pending_order(4)
		self._pending_order(25)

		response = self.client.get('/api/driver/pending-orders/', {
			'latitude': PICKUP.latitude,
			'longitude': PICKUP.longitude,
		})

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['count'], 2)
		self.assertEqual(response.data['radius_km'], 5.0)
		self.assertEqual(
			[item['order']['order_id'] for item in response.data['orders']],
			[near.order_id, farther.order_id],
		)
		self.assertAlmostEqual(response.data['orders'][0]['distance_km'], 1.0, delta=0.05)

	def test_pending_orders_default_to_last_known_position(self):
		place('d1', 0)
		near = self._pending_order(2)

		response = self.client.get('/api/driver/pending-orders/', {'radius_km': 3})

		self.assertEqual(response.status_code, 200)
		self.assertEqual([item['order']['order_id'] for item in response.data['orders']], [near.order_id])

	def test_pending_orders_need_a_position(self):
		response = self.client.get('/api/driver/pending-orders/')

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['message'], 'Share your location to see nearby orders.')

	def test_pending_orders_need_both_coordinates(self):
		response = self.client.get('/api/driver/pending-orders/', {'latitude': PICKUP.latitude})

		self.assertEqual(response.status_code, 400)
