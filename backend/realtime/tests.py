from datetime import datetime, timezone as dt_timezone
from unittest.mock import AsyncMock, MagicMock, patch

import redis
from asgiref.sync import sync_to_async
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.test import SimpleTestCase, TransactionTestCase
from rest_framework_simplejwt.exceptions import InvalidToken
from rest_framework_simplejwt.tokens import AccessToken

from services.order_lifecycle import (
	Caller,
	DependencyUnavailable,
	DriverStatus,
	Location,
	OrderSnapshot,
	Role,
)
from services.storage.memory import InMemoryDriverStore, InMemoryOrderStore, StoreBackedDriverLocator
from services.wiring import build_services

from .auth import CallerUser, caller_from_raw_token
from .fanout import OrderEventHub
from .geo import REDIS_GEO_CONFIG, RedisDriverLocator
from .middleware import JWTCallerMiddleware
from .routing import websocket_urlpatterns
from .transport import ChannelLayerTransport

PICKUP = (39.9087, 116.3975)


def token_for(user_id, role):
	token = AccessToken()
	token['user_id'] = user_id
	if role is not None:
		token['role'] = role
	return str(token)


def snapshot():
	now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=dt_timezone.utc)
	return OrderSnapshot(
		order_id='order-1',
		order_number='DD20240101120000ABCDEF',
		passenger_id='p1',
		pickup=Location(*PICKUP),
		dropoff=Location(39.98, 116.31),
		created_at=now,
		updated_at=now,
	)


class CallerAuthTests(SimpleTestCase):
	def test_token_claims_become_caller(self):
		caller = caller_from_raw_token(token_for('d1', 'driver'))

		self.assertEqual(caller, Caller('d1', Role.DRIVER))
		user = CallerUser(caller)
		self.assertTrue(user.is_authenticated)
		self.assertEqual((user.id, user.role), ('d1', 'driver'))

	def test_token_without_role_rejected(self):
		with self.assertRaises(InvalidToken):
			caller_from_raw_token(token_for('d1', None))

	def test_system_role_not_accepted_from_tokens(self):
		with self.assertRaises(InvalidToken):
			caller_from_raw_token(token_for('system', 'system'))


class ChannelLayerTransportTests(SimpleTestCase):
	def setUp(self):
		self.layer = MagicMock()
		self.layer.group_send = AsyncMock()
		self.transport = ChannelLayerTransport(self.layer)

	def test_snapshot_goes_to_order_group(self):
		self.transport.publish_snapshot(snapshot())

		group, payload = self.layer.group_send.call_args[0]
		self.assertEqual(group, 'order_order-1')
		self.assertEqual(payload['type'], 'order_snapshot')
		self.assertEqual(payload['order']['order_number'], 'DD20240101120000ABCDEF')

	def test_offer_goes_to_driver_group(self):
		self.transport.send_to_driver('d1', 'order_offer', snapshot(), 'New trip request nearby.', offer_round=1)

		group, payload = self.layer.group_send.call_args[0]
		self.assertEqual(group, 'driver_d1')
		self.assertEqual(payload['type'], 'order_offer')
		self.assertEqual(payload['offer_round'], 1)
		self.assertEqual(payload['message'], 'New trip request nearby.')

	def test_passenger_event_goes_to_user_group(self):
		self.transport.send_to_passenger(snapshot(), 'no_drivers', 'Still searching', final=False)

		group, payload = self.layer.group_send.call_args[0]
		self.assertEqual(group, 'user_p1')
		self.assertFalse(payload['final'])


class RedisDriverLocatorTests(SimpleTestCase):
	def setUp(self):
		self.client = MagicMock()
		self.locator = RedisDriverLocator(self.client)

	def test_nearby_skips_drivers_without_heartbeat(self):
		self.client.georadius.return_value = [['d1', 0.42], ['stale', 0.9], ['d2', 1.7]]
		self.client.exists.side_effect = lambda key: not key.endswith('stale')

		found = self.locator.find_nearby_drivers(Location(*PICKUP), 5.0, 10)

		self.assertEqual([d.driver_id for d in found], ['d1', 'd2'])
		self.assertEqual(found[1].distance_km, 1.7)
		args, kwargs = self.client.georadius.call_args
		self.assertEqual(args[0], REDIS_GEO_CONFIG['DRIVERS_GEO_KEY'])
		self.assertEqual((args[1], args[2]), (PICKUP[1], PICKUP[0]))
		self.assertEqual(kwargs['unit'], 'km')
		self.assertEqual(kwargs['sort'], 'ASC')

	def test_nearby_respects_limit(self):
		self.client.georadius.return_value = [['d%d' % i, 0.1 * i] for i in range(6)]
		self.client.exists.return_value = True

		self.assertEqual(len(self.locator.find_nearby_drivers(Location(*PICKUP), 5.0, 2)), 2)

	def test_update_location_sets_heartbeat(self):
		pipe = self.client.pipeline.return_value

		self.locator.update_driver_location('d1', 39.9, 116.4)

		pipe.geoadd.assert_called_once_with(REDIS_GEO_CONFIG['DRIVERS_GEO_KEY'], (116.4, 39.9, 'd1'))
		pipe.set.assert_called_once_with(
			REDIS_GEO_CONFIG['DRIVER_SEEN_PREFIX'] + 'd1', '1', ex=REDIS_GEO_CONFIG['DRIVER_SEEN_TTL']
		)
		pipe.execute.assert_called_once_with()

	def test_redis_failure_is_dependency_unavailable(self):
		self.client.georadius.side_effect = redis.ConnectionError('connection refused')

		with self.assertLogs('realtime.geo', level='ERROR'):
			with self.assertRaises(DependencyUnavailable):
				self.locator.find_nearby_drivers(Location(*PICKUP), 5.0, 10)


class OrderConsumerTests(TransactionTestCase):
	def setUp(self):
		drivers = InMemoryDriverStore()
		self.services = build_services(
			orders=InMemoryOrderStore(),
			drivers=drivers,
			geo_lookup=StoreBackedDriverLocator(drivers),
			hub=OrderEventHub(ChannelLayerTransport()),
		)
		drivers.register('d1', status=DriverStatus.ONLINE, latitude=PICKUP[0] + 0.004, longitude=PICKUP[1])
		self.order = self.services.state_machine.create(Caller('p1', Role.PASSENGER), {
			'pickup_latitude': PICKUP[0],
			'pickup_longitude': PICKUP[1],
			'dropoff_latitude': 39.9834,
			'dropoff_longitude': 116.3066,
		})
		self.application = JWTCallerMiddleware(URLRouter(websocket_urlpatterns))
		patcher = patch('realtime.consumers.order_consumer._services', return_value=self.services)
		patcher.start()
		self.addCleanup(patcher.stop)

	async def connect(self, user_id, role):
		communicator = WebsocketCommunicator(self.application, '/ws/orders/?token=%s' % token_for(user_id, role))
		connected, _ = await communicator.connect()
		self.assertTrue(connected)
		welcome = await communicator.receive_json_from()
		self.assertEqual(welcome['type'], 'connection_established')
		return communicator

	async def test_connection_without_token_is_closed(self):
		communicator = WebsocketCommunicator(self.application, '/ws/orders/')
		connected, _ = await communicator.connect()

		self.assertFalse(connected)

	async def test_connection_with_bad_token_is_closed(self):
		communicator = WebsocketCommunicator(self.application, '/ws/orders/?token=garbage')
		connected, _ = await communicator.connect()

		self.assertFalse(connected)

	async def test_subscribe_sends_current_snapshot(self):
		passenger = await self.connect('p1', 'passenger')

		await passenger.send_json_to({'type': 'subscribe', 'order_id': self.order.order_id})
		message = await passenger.receive_json_from()

		self.assertEqual(message['type'], 'order_snapshot')
		self.assertEqual(message['order']['order_id'], self.order.order_id)
		self.assertEqual(message['order']['status'], 'pending')
		await passenger.disconnect()

	async def test_stranger_cannot_subscribe(self):
		stranger = await self.connect('p2', 'passenger')

		await stranger.send_json_to({'type': 'subscribe', 'order_id': self.order.order_id})
		message = await stranger.receive_json_from()

		self.assertEqual(message['type'], 'error')
		self.assertEqual(message['code'], 'unauthorized')
		await stranger.disconnect()

	async def test_passenger_cannot_send_location(self):
		passenger = await self.connect('p1', 'passenger')

		await passenger.send_json_to({'type': 'location', 'latitude': 39.9, 'longitude': 116.4})
		message = await passenger.receive_json_from()

		self.assertEqual(message['code'], 'unauthorized')
		await passenger.disconnect()

	async def test_offer_and_claim_over_websocket(self):
		passenger = await self.connect('p1', 'passenger')
		await passenger.send_json_to({'type': 'subscribe', 'order_id': self.order.order_id})
		await passenger.receive_json_from()
		driver = await self.connect('d1', 'driver')

		await sync_to_async(self.services.coordinator.open_for_offers)(self.order.order_id)

		offer = await driver.receive_json_from()
		self.assertEqual(offer['type'], 'order_offer')
		self.assertEqual(offer['offer_round'], 1)
		self.assertEqual(offer['order']['order_id'], self.order.order_id)
		stamped = await passenger.receive_json_from()
		self.assertEqual(stamped['order']['offer_round'], 1)

		await driver.send_json_to({'type': 'claim', 'order_id': self.order.order_id, 'offer_round': 1})
		result = await driver.receive_json_from()
		self.assertEqual(result['type'], 'claim_result')
		self.assertTrue(result['success'])
		self.assertEqual(result['order']['driver_id'], 'd1')

		accepted = await passenger.receive_json_from()
		self.assertEqual(accepted['type'], 'order_snapshot')
		self.assertEqual(accepted['order']['status'], 'accepted')
		notice = await passenger.receive_json_from()
		self.assertEqual(notice['type'], 'order_accepted')

		await driver.send_json_to({
			'type': 'location',
			'latitude': PICKUP[0] + 0.002,
			'longitude': PICKUP[1],
			'timestamp': '2024-01-01T12:00:05Z',
			'accuracy': 5,
		})
		ack = await driver.receive_json_from()
		self.assertEqual(ack, {'type': 'location_ack', 'published': True})
		position = await passenger.receive_json_from()
		self.assertEqual(position['type'], 'driver_location')
		self.assertEqual(position['location']['driver_id'], 'd1')

		await driver.disconnect()
		await passenger.disconnect()

	async def test_losing_claim_reports_reason(self):
		await sync_to_async(self.services.state_machine.cancel)(self.order.order_id, Caller('p1', Role.PASSENGER))
		driver = await self.connect('d1', 'driver')

		await driver.send_json_to({'type': 'claim', 'order_id': self.order.order_id})
		result = await driver.receive_json_from()

		self.assertFalse(result['success'])
		self.assertEqual(result['message'], 'This order is no longer available.')
		self.assertIsNone(result['order'])
		await driver.disconnect()
