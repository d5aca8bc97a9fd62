import uuid
from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from drivers.models import DriverAvailability
from realtime.fanout import OrderEventHub
from services.order_lifecycle import Caller, Location, OrderStatus, Role
from services.wiring import build_services, reset_services

from .models import Order, OrderOffer
from .tasks import expire_offer_round_task, sweep_offer_timeouts

PICKUP = (39.9087, 116.3975)


def order_payload(**overrides):
	payload = {
		'pickup_latitude': PICKUP[0],
		'pickup_longitude': PICKUP[1],
		'pickup_address': 'Tiananmen Square',
		'dropoff_latitude': 39.9834,
		'dropoff_longitude': 116.3066,
		'dropoff_address': 'Zhongguancun',
		'estimated_distance_km': '12.50',
		'estimated_price': '88.00',
	}
	payload.update(overrides)
	return payload


def client_for(user_id, role):
	token = AccessToken()
	token['user_id'] = user_id
	token['role'] = role
	client = APIClient()
	client.credentials(HTTP_AUTHORIZATION='Bearer %s' % token)
	return client


def online_driver(driver_id, north_km=0.5):
	return DriverAvailability.objects.create(
		driver_id=driver_id,
		status='online',
		latitude=PICKUP[0] + north_km / 111.2,
		longitude=PICKUP[1],
	)


class DjangoOrderStoreTests(TestCase):
	def setUp(self):
		self.services = build_services(hub=OrderEventHub())
		self.store = self.services.orders
		self.machine = self.services.state_machine
		online_driver('d1')
		online_driver('d2', north_km=1.0)
		self.order = self.machine.create(Caller('p1', Role.PASSENGER), order_payload())

	def test_insert_and_get_roundtrip(self):
		stored = self.store.get(self.order.order_id)

		self.assertEqual(stored.order_number, self.order.order_number)
		self.assertEqual(stored.pickup.address, 'Tiananmen Square')
		self.assertEqual(stored.estimated_price, Decimal('88.00'))
		self.assertEqual(stored.status, OrderStatus.PENDING)
		self.assertEqual(stored.version, 1)

	def test_unknown_or_malformed_ids(self):
		self.assertIsNone(self.store.get(str(uuid.uuid4())))
		self.assertIsNone(self.store.get('not-a-uuid'))
		self.assertIsNone(self.store.compare_and_set('not-a-uuid', OrderStatus.PENDING, {'status': OrderStatus.CANCELLED}))

	def test_compare_and_set_checks_status_and_round(self):
		self.assertIsNone(self.store.compare_and_set(
			self.order.order_id, OrderStatus.ACCEPTED, {'status': OrderStatus.COMPLETED}
		))
		self.assertIsNone(self.store.compare_and_set(
			self.order.order_id, OrderStatus.PENDING, {'offer_round': 5}, expected_round=3
		))

		updated = self.store.compare_and_set(
			self.order.order_id, OrderStatus.PENDING, {'offer_round': 1}, expected_round=0
		)
		self.assertEqual(updated.offer_round, 1)
		self.assertEqual(updated.version, 2)

	def test_claim_reserves_driver(self):
		accepted = self.machine.accept(self.order.order_id, 'd1')

		self.assertEqual(accepted.driver_id, 'd1')
		self.assertEqual(DriverAvailability.objects.get(pk='d1').status, 'busy')
		self.assertEqual(self.store.current_for_driver('d1').order_id, self.order.order_id)
		self.assertEqual(len(self.store.list_for_passenger('p1', OrderStatus.ACCEPTED)), 1)

	def test_offer_ledger(self):
		self.services.coordinator.open_for_offers(self.order.order_id)

		self.assertEqual(self.store.offered_driver_ids(self.order.order_id, 1), ['d1', 'd2'])
		self.assertEqual(OrderOffer.objects.filter(order_id=self.order.order_id).count(), 2)
		self.assertEqual(OrderOffer.objects.get(order_id=self.order.order_id, driver_id='d2').rank, 1)

	def test_stale_offer_rounds(self):
		self.services.coordinator.open_for_offers(self.order.order_id)
		never_offered = self.machine.create(Caller('p2', Role.PASSENGER), order_payload())
		now = timezone.now()

		self.assertEqual(self.store.stale_offer_rounds(now - timedelta(seconds=20)), [])

		Order.objects.filter(pk=self.order.order_id).update(offered_at=now - timedelta(seconds=60))
		Order.objects.filter(pk=never_offered.order_id).update(created_at=now - timedelta(seconds=90))

		stale = self.store.stale_offer_rounds(now - timedelta(seconds=20))
		self.assertEqual([o.order_id for o in stale], [never_offered.order_id, self.order.order_id])

	def test_pending_near_closest_pickup_first(self):
		farther = self.machine.create(Caller('p2', Role.PASSENGER), order_payload(pickup_latitude=PICKUP[0] + 3 / 111.2))
		self.machine.create(Caller('p3', Role.PASSENGER), order_payload(pickup_latitude=PICKUP[0] + 30 / 111.2))
		taken = self.machine.create(Caller('p4', Role.PASSENGER), order_payload())
		self.machine.accept(taken.order_id, 'd1')

		nearby = self.store.pending_near(Location(*PICKUP), 5.0, 10)

		self.assertEqual([n.order.order_id for n in nearby], [self.order.order_id, farther.order_id])
		self.assertAlmostEqual(nearby[0].distance_km, 0.0, places=3)
		self.assertAlmostEqual(nearby[1].distance_km, 3.0, delta=0.05)
		self.assertEqual(len(self.store.pending_near(Location(*PICKUP), 5.0, 1)), 1)


class OrderApiTests(TestCase):
	def setUp(self):
		reset_services()
		self.passenger = client_for('p1', 'passenger')
		self.driver_one = client_for('d1', 'driver')
		self.driver_two = client_for('d2', 'driver')
		online_driver('d1')
		online_driver('d2', north_km=1.0)

	def tearDown(self):
		reset_services()

	def create_order(self):
		response = self.passenger.post('/api/orders/', order_payload(), format='json')
		self.assertEqual(response.status_code, 201)
		return response.data['order']['order_id']

	def test_requires_token(self):
		response = APIClient().get('/api/orders/')

		self.assertEqual(response.status_code, 401)

	def test_create_opens_first_offer_round(self):
		response = self.passenger.post('/api/orders/', order_payload(), format='json')

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['order']['status'], 'pending')
		self.assertEqual(response.data['order']['offer_round'], 1)
		self.assertEqual(response.data['candidates'], 2)
		self.assertRegex(response.data['order']['order_number'], r'^DD\d{14}[0-9A-F]{6}$')

	def test_create_with_invalid_payload(self):
		response = self.passenger.post('/api/orders/', order_payload(dropoff_longitude=500), format='json')

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['code'], 'invalid_input')
		self.assertIn('dropoff_longitude', response.data['errors'])
		self.assertFalse(Order.objects.exists())

	def test_driver_cannot_create_order(self):
		response = self.driver_one.post('/api/orders/', order_payload(), format='json')

		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['code'], 'unauthorized')

	def test_first_claim_wins(self):
		order_id = self.create_order()

		first = self.driver_one.post('/api/orders/%s/accept/' % order_id, {'offer_round': 1}, format='json')
		second = self.driver_two.post('/api/orders/%s/accept/' % order_id, {'offer_round': 1}, format='json')

		self.assertEqual(first.status_code, 200)
		self.assertEqual(first.data['driver_id'], 'd1')
		self.assertEqual(second.status_code, 409)
		self.assertEqual(second.data['code'], 'precondition_failed')
		self.assertTrue(second.data['retryable'])
		self.assertEqual(DriverAvailability.objects.get(pk='d2').status, 'online')

	def test_passenger_cannot_accept(self):
		order_id = self.create_order()

		response = self.passenger.post('/api/orders/%s/accept/' % order_id)

		self.assertEqual(response.status_code, 403)

	def test_bad_offer_round(self):
		order_id = self.create_order()

		response = self.driver_one.post('/api/orders/%s/accept/' % order_id, {'offer_round': 'latest'}, format='json')

		self.assertEqual(response.status_code, 400)

	def test_trip_lifecycle(self):
		order_id = self.create_order()
		self.driver_one.post('/api/orders/%s/accept/' % order_id)

		self.assertEqual(self.driver_one.post('/api/orders/%s/arrive/' % order_id).data['status'], 'driver_arrived')
		self.assertEqual(self.driver_one.post('/api/orders/%s/start/' % order_id).data['status'], 'in_progress')
		response = self.driver_one.post('/api/orders/%s/complete/' % order_id, {
			'final_price': '95.00',
			'actual_distance_km': '12.8',
			'actual_duration_min': 25,
		}, format='json')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['status'], 'completed')
		self.assertEqual(response.data['final_price'], '95.00')
		record = DriverAvailability.objects.get(pk='d1')
		self.assertEqual(record.status, 'online')
		self.assertEqual(record.total_orders, 1)

		history = self.driver_one.get('/api/driver/history/')
		self.assertEqual(history.data['count'], 1)
		self.assertEqual(history.data['orders'][0]['order_id'], order_id)

		driven = self.driver_one.get('/api/orders/', {'status': 'completed'})
		self.assertEqual([o['order_id'] for o in driven.data['orders']], [order_id])
		self.assertEqual(self.driver_two.get('/api/orders/').data['count'], 0)

	def test_other_driver_cannot_progress_trip(self):
		order_id = self.create_order()
		self.driver_one.post('/api/orders/%s/accept/' % order_id)

		response = self.driver_two.post('/api/orders/%s/arrive/' % order_id)

		self.assertEqual(response.status_code, 403)

	def test_skipping_a_step_conflicts(self):
		order_id = self.create_order()
		self.driver_one.post('/api/orders/%s/accept/' % order_id)

		response = self.driver_one.post('/api/orders/%s/start/' % order_id)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['message'], 'This order is already accepted.')

	def test_passenger_cancel(self):
		order_id = self.create_order()

		response = self.passenger.post('/api/orders/%s/cancel/' % order_id, {'reason': 'changed plans'}, format='json')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['status'], 'cancelled')
		self.assertEqual(response.data['cancelled_by'], 'p1')
		self.assertEqual(response.data['cancel_reason'], 'changed plans')

		again = self.passenger.post('/api/orders/%s/cancel/' % order_id)
		self.assertEqual(again.status_code, 409)

	def test_stranger_cannot_cancel_or_view(self):
		order_id = self.create_order()
		stranger = client_for('p2', 'passenger')

		self.assertEqual(stranger.post('/api/orders/%s/cancel/' % order_id).status_code, 403)
		self.assertEqual(stranger.get('/api/orders/%s/' % order_id).status_code, 403)

	def test_unknown_order(self):
		self.assertEqual(self.passenger.get('/api/orders/%s/' % uuid.uuid4()).status_code, 404)
		self.assertEqual(self.passenger.get('/api/orders/nope/').status_code, 404)

	def test_order_lists_and_current(self):
		order_id = self.create_order()

		listed = self.passenger.get('/api/orders/')
		self.assertEqual(listed.data['count'], 1)
		self.assertEqual(self.driver_one.get('/api/orders/').data['count'], 0)

		current = self.passenger.get('/api/orders/current/')
		self.assertTrue(current.data['has_active_order'])
		self.assertEqual(current.data['order']['order_id'], order_id)

		self.passenger.post('/api/orders/%s/cancel/' % order_id)
		self.assertFalse(self.passenger.get('/api/orders/current/').data['has_active_order'])

	def test_driver_track_visible_to_passenger(self):
		order_id = self.create_order()
		self.driver_one.post('/api/orders/%s/accept/' % order_id)

		response = self.driver_one.post('/api/driver/location/', {
			'latitude': PICKUP[0],
			'longitude': PICKUP[1],
			'timestamp': timezone.now().isoformat(),
			'accuracy': 5,
		}, format='json')
		self.assertTrue(response.data['published'])

		track = self.passenger.get('/api/orders/%s/track/' % order_id)
		self.assertEqual(track.status_code, 200)
		self.assertEqual(track.data['count'], 1)
		self.assertEqual(track.data['points'][0]['driver_id'], 'd1')


class OfferTimeoutTaskTests(TestCase):
	def setUp(self):
		reset_services()
		online_driver('d1')
		self.services = build_services(hub=OrderEventHub())
		self.order = self.services.state_machine.create(Caller('p1', Role.PASSENGER), order_payload())
		self.services.coordinator.open_for_offers(self.order.order_id)

	def tearDown(self):
		reset_services()

	def test_expire_task_reoffers(self):
		outcome = expire_offer_round_task(self.order.order_id, 1)

		self.assertEqual(outcome, 'reoffered')
		self.assertEqual(Order.objects.get(pk=self.order.order_id).offer_round, 2)

	def test_expire_task_ignores_stale_round(self):
		expire_offer_round_task(self.order.order_id, 1)

		self.assertEqual(expire_offer_round_task(self.order.order_id, 1), 'stale')

	def test_expire_task_unknown_order(self):
		self.assertEqual(expire_offer_round_task(str(uuid.uuid4()), 1), 'stale')

	def test_sweep_task_expires_last_round(self):
		Order.objects.filter(pk=self.order.order_id).update(
			offer_round=3,
			offered_at=timezone.now() - timedelta(seconds=60),
		)

		self.assertEqual(sweep_offer_timeouts(), {'reoffered': 0, 'expired': 1})

		order = Order.objects.get(pk=self.order.order_id)
		self.assertEqual(order.status, 'cancelled')
		self.assertEqual(order.cancelled_by, 'system')
		self.assertEqual(order.cancel_reason, 'no_drivers_available')

	def test_process_offer_timeouts_command(self):
		Order.objects.filter(pk=self.order.order_id).update(offered_at=timezone.now() - timedelta(seconds=60))
		out = StringIO()

		call_command('process_offer_timeouts', stdout=out)

		self.assertIn('Re-offered 1 order(s)', out.getvalue())
		self.assertEqual(Order.objects.get(pk=self.order.order_id).offer_round, 2)
