import threading
from datetime import datetime, timedelta, timezone as dt_timezone

from django.test import SimpleTestCase

from realtime.fanout import OrderEventHub, OrderSnapshotView
from services.order_lifecycle import Location, OrderSnapshot, OrderStatus

from .helpers import FailingTransport, RecordingTransport

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=dt_timezone.utc)


def snapshot(version=1, order_id='order-1', status=OrderStatus.PENDING, seconds=0):
	return OrderSnapshot(
		order_id=order_id,
		order_number='DD20240101120000ABCDEF',
		passenger_id='passenger-1',
		pickup=Location(39.90, 116.40),
		dropoff=Location(39.99, 116.31),
		created_at=BASE_TIME,
		updated_at=BASE_TIME + timedelta(seconds=seconds),
		status=status,
		version=version,
	)


class OrderEventHubTests(SimpleTestCase):
	def setUp(self):
		self.transport = RecordingTransport()
		self.hub = OrderEventHub(self.transport, buffer_size=3)

	def test_subscribers_receive_their_order_only(self):
		mine = self.hub.subscribe('order-1')
		other = self.hub.subscribe('order-2')

		delivered = self.hub.publish(snapshot())

		self.assertEqual(delivered, 1)
		self.assertEqual(mine.get(timeout=0.1).order_id, 'order-1')
		self.assertIsNone(other.get(timeout=0.01))
		self.assertEqual(len(self.transport.snapshots), 1)

	def test_slow_subscriber_drops_oldest(self):
		subscription = self.hub.subscribe('order-1')

		for version in range(1, 6):
			self.hub.publish(snapshot(version=version, seconds=version))

		self.assertEqual([s.version for s in subscription.drain()], [3, 4, 5])
		self.assertEqual(subscription.dropped, 2)

	def test_publish_never_blocks_on_full_buffer(self):
		slow = self.hub.subscribe('order-1', buffer_size=1)
		fast = self.hub.subscribe('order-1', buffer_size=10)

		for version in range(1, 5):
			self.hub.publish(snapshot(version=version, seconds=version))

		self.assertEqual(len(fast.drain()), 4)
		self.assertEqual([s.version for s in slow.drain()], [4])

	def test_closed_subscription_is_removed(self):
		subscription = self.hub.subscribe('order-1')
		self.assertEqual(self.hub.subscriber_count('order-1'), 1)

		subscription.close()

		self.assertEqual(self.hub.subscriber_count('order-1'), 0)
		self.assertEqual(self.hub.publish(snapshot()), 0)
		self.assertIsNone(subscription.get(timeout=0.01))

	def test_context_manager_closes(self):
		with self.hub.subscribe('order-1') as subscription:
			self.hub.publish(snapshot())
		self.assertTrue(subscription.closed)

	def test_iteration_ends_on_close(self):
		subscription = self.hub.subscribe('order-1')
		received = []
		got_both = threading.Event()

		def consume():
			for item in subscription:
				received.append(item.version)
				if len(received) == 2:
					got_both.set()

		worker = threading.Thread(target=consume)
		worker.start()
		self.hub.publish(snapshot(version=1))
		self.hub.publish(snapshot(version=2, seconds=1))
		self.assertTrue(got_both.wait(timeout=2))
		subscription.close()
		worker.join(timeout=2)

		self.assertFalse(worker.is_alive())
		self.assertEqual(received, [1, 2])

	def test_transport_failure_does_not_break_publish(self):
		hub = OrderEventHub(FailingTransport())
		subscription = hub.subscribe('order-1')

		with self.assertLogs('realtime.fanout', level='ERROR'):
			delivered = hub.publish(snapshot())
			hub.notify_driver('d1', 'order_offer', snapshot())

		self.assertEqual(delivered, 1)
		self.assertIsNotNone(subscription.get(timeout=0.1))

	def test_hub_without_transport(self):
		hub = OrderEventHub()
		subscription = hub.subscribe('order-1')

		hub.publish(snapshot())
		hub.notify_passenger(snapshot(), 'order_accepted')

		self.assertEqual(len(subscription.drain()), 1)

	def test_driver_and_passenger_events_forwarded(self):
		self.hub.notify_driver('d1', 'order_offer', snapshot(), 'New trip request nearby.', rank=0)
		self.hub.notify_passenger(snapshot(), 'no_drivers', 'Still searching', final=False)

		self.assertEqual(self.transport.driver_events[0][0], 'd1')
		self.assertEqual(self.transport.driver_events[0][4], {'rank': 0})
		self.assertEqual(self.transport.passenger_events[0][1], 'no_drivers')
		self.assertEqual(self.transport.passenger_events[0][4], {'final': False})


class OrderSnapshotViewTests(SimpleTestCase):
	def test_redelivery_is_idempotent(self):
		view = OrderSnapshotView('order-1')

		self.assertTrue(view.apply(snapshot(version=1)))
		self.assertTrue(view.apply(snapshot(version=2, seconds=5)))
		self.assertFalse(view.apply(snapshot(version=2, seconds=5)))
		self.assertFalse(view.apply(snapshot(version=1)))

		self.assertEqual(view.current.version, 2)
		self.assertEqual(view.applied, 2)

	def test_other_orders_ignored(self):
		view = OrderSnapshotView('order-1', snapshot(version=1))

		self.assertFalse(view.apply(snapshot(version=9, order_id='order-2')))
		self.assertEqual(view.current.version, 1)
