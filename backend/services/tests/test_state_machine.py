import re
import threading
from decimal import Decimal

from django.test import SimpleTestCase

from services.order_lifecycle import (
	Caller,
	DriverStatus,
	InvalidInput,
	Location,
	NotFound,
	OrderStatus,
	PreconditionFailed,
	Role,
	Unauthorized,
)
from services.order_lifecycle.state_machine import NO_DRIVERS_REASON

from .helpers import PICKUP, add_driver, build_dispatch, driver, order_payload, passenger


class OrderCreationTests(SimpleTestCase):
	def setUp(self):
		self.env = build_dispatch()
		self.machine = self.env.state_machine

	def test_create_returns_pending_order(self):
		order = self.machine.create(passenger(), order_payload(passenger_note='Two bags'))

		self.assertEqual(order.status, OrderStatus.PENDING)
		self.assertEqual(order.passenger_id, 'passenger-1')
		self.assertIsNone(order.driver_id)
		self.assertEqual(order.offer_round, 0)
		self.assertEqual(order.created_at, self.env.clock.now)
		self.assertEqual(order.estimated_price, Decimal('88.00'))
		self.assertEqual(order.passenger_note, 'Two bags')
		self.assertRegex(order.order_number, r'^DD\d{14}[0-9A-F]{6}$')
		self.assertTrue(order.order_number.startswith('DD20240101120000'))
		self.assertEqual(self.env.orders.get(order.order_id), order)

	def test_create_publishes_snapshot(self):
		order = self.machine.create(passenger(), order_payload())

		self.assertEqual(self.env.transport.snapshots, [order])

	def test_driver_cannot_create_order(self):
		with self.assertRaises(Unauthorized):
			self.machine.create(driver('driver-1'), order_payload())

	def test_invalid_coordinates_rejected(self):
		with self.assertRaises(InvalidInput) as ctx:
			self.machine.create(passenger(), order_payload(pickup_latitude=123.0))

		self.assertIn('pickup_latitude', ctx.exception.details)
		self.assertEqual(self.env.transport.snapshots, [])

	def test_scheduled_order_needs_time(self):
		with self.assertRaises(InvalidInput):
			self.machine.create(passenger(), order_payload(order_type='scheduled'))

	def test_blank_passenger_id_rejected(self):
		with self.assertRaises(InvalidInput):
			self.machine.create(Caller(user_id='  ', role=Role.PASSENGER), order_payload())

	def test_get_unknown_order(self):
		with self.assertRaises(NotFound):
			self.machine.get('no-such-order')


class OrderLifecycleTests(SimpleTestCase):
	def setUp(self):
		self.env = build_dispatch()
		self.machine = self.env.state_machine
		self.drivers = self.env.drivers
		add_driver(self.drivers, 'driver-1')
		self.order = self.machine.create(passenger(), order_payload())

	def test_accept_assigns_driver_and_reserves_them(self):
		self.env.clock.advance(5)
		accepted = self.machine.accept(self.order.order_id, 'driver-1')

		self.assertEqual(accepted.status, OrderStatus.ACCEPTED)
		self.assertEqual(accepted.driver_id, 'driver-1')
		self.assertEqual(accepted.accepted_at, self.env.clock.now)
		self.assertEqual(accepted.version, self.order.version + 1)
		self.assertEqual(self.drivers.get('driver-1').status, DriverStatus.BUSY)

	def test_full_trip(self):
		order_id = self.order.order_id
		me = driver('driver-1')

		self.machine.accept(order_id, 'driver-1')
		self.env.clock.advance(60)
		self.machine.mark_arrived(order_id, me)
		self.env.clock.advance(60)
		self.machine.start_trip(order_id, me)
		self.env.clock.advance(600)
		done = self.machine.complete(order_id, me, Decimal('92.50'), Decimal('13.1'), 11)

		self.assertEqual(done.status, OrderStatus.COMPLETED)
		self.assertEqual(done.final_price, Decimal('92.50'))
		self.assertEqual(done.actual_distance_km, Decimal('13.10'))
		self.assertEqual(done.actual_duration_min, 11)
		stamps = done.lifecycle_timestamps()
		self.assertNotIn(None, stamps)
		self.assertEqual(list(stamps), sorted(stamps))

		record = self.drivers.get('driver-1')
		self.assertEqual(record.status, DriverStatus.ONLINE)
		self.assertEqual(record.total_orders, 1)

		statuses = [s.status for s in self.env.transport.snapshots]
		self.assertEqual(statuses, [
			OrderStatus.PENDING,
			OrderStatus.ACCEPTED,
			OrderStatus.DRIVER_ARRIVED,
			OrderStatus.IN_PROGRESS,
			OrderStatus.COMPLETED,
		])

	def test_steps_cannot_be_skipped(self):
		self.machine.accept(self.order.order_id, 'driver-1')

		with self.assertRaises(PreconditionFailed) as ctx:
			self.machine.start_trip(self.order.order_id, driver('driver-1'))
		self.assertEqual(ctx.exception.user_message, 'This order is already accepted.')

		with self.assertRaises(PreconditionFailed):
			self.machine.complete(self.order.order_id, driver('driver-1'), Decimal('1'), Decimal('1'), 1)

	def test_only_assigned_driver_moves_trip(self):
		add_driver(self.drivers, 'driver-2')
		self.machine.accept(self.order.order_id, 'driver-1')

		with self.assertRaises(Unauthorized):
			self.machine.mark_arrived(self.order.order_id, driver('driver-2'))
		with self.assertRaises(Unauthorized):
			self.machine.mark_arrived(self.order.order_id, passenger())

	def test_status_checked_before_caller(self):
		self.machine.cancel(self.order.order_id, passenger(), 'changed plans')

		with self.assertRaises(PreconditionFailed):
			self.machine.mark_arrived(self.order.order_id, driver('stranger'))

	def test_accept_taken_order_fails(self):
		add_driver(self.drivers, 'driver-2')
		self.machine.accept(self.order.order_id, 'driver-1')

		with self.assertRaises(PreconditionFailed) as ctx:
			self.machine.accept(self.order.order_id, 'driver-2')

		self.assertEqual(ctx.exception.user_message, 'This order is no longer available.')
		self.assertTrue(ctx.exception.retryable)
		self.assertEqual(self.drivers.get('driver-2').status, DriverStatus.ONLINE)
		self.assertEqual(self.machine.get(self.order.order_id).driver_id, 'driver-1')

	def test_offline_driver_cannot_accept(self):
		add_driver(self.drivers, 'driver-2', status=DriverStatus.OFFLINE)

		with self.assertRaises(PreconditionFailed) as ctx:
			self.machine.accept(self.order.order_id, 'driver-2')

		self.assertEqual(ctx.exception.user_message, 'Please go online before accepting orders.')
		self.assertEqual(self.machine.get(self.order.order_id).status, OrderStatus.PENDING)

	def test_driver_on_another_trip_cannot_accept(self):
		self.machine.accept(self.order.order_id, 'driver-1')
		second = self.machine.create(passenger('passenger-2'), order_payload())

		with self.assertRaises(PreconditionFailed) as ctx:
			self.machine.accept(second.order_id, 'driver-1')

		self.assertEqual(ctx.exception.user_message, 'Finish your current trip before accepting another order.')
		self.assertEqual(ctx.exception.details, {'driver_status': DriverStatus.BUSY})
		self.assertEqual(self.machine.get(second.order_id).status, OrderStatus.PENDING)
		self.assertEqual(self.drivers.get('driver-1').status, DriverStatus.BUSY)

	def test_unknown_driver_cannot_accept(self):
		with self.assertRaises(NotFound) as ctx:
			self.machine.accept(self.order.order_id, 'ghost')

		self.assertEqual(ctx.exception.user_message, 'Driver profile not found.')

	def test_passenger_cannot_accept_own_order(self):
		add_driver(self.drivers, 'passenger-1')

		with self.assertRaises(Unauthorized):
			self.machine.accept(self.order.order_id, 'passenger-1')

	def test_accept_with_superseded_round(self):
		self.machine.stamp_offer_round(self.order.order_id, 0)
		self.machine.stamp_offer_round(self.order.order_id, 1)

		with self.assertRaises(PreconditionFailed):
			self.machine.accept(self.order.order_id, 'driver-1', offer_round=1)

		accepted = self.machine.accept(self.order.order_id, 'driver-1', offer_round=2)
		self.assertEqual(accepted.offer_round, 2)

	def test_passenger_cancels_pending_order(self):
		cancelled = self.machine.cancel(self.order.order_id, passenger(), 'changed plans')

		self.assertEqual(cancelled.status, OrderStatus.CANCELLED)
		self.assertEqual(cancelled.cancelled_by, 'passenger-1')
		self.assertEqual(cancelled.cancel_reason, 'changed plans')
		self.assertIsNotNone(cancelled.cancelled_at)

	def test_driver_cancel_releases_driver(self):
		self.machine.accept(self.order.order_id, 'driver-1')

		cancelled = self.machine.cancel(self.order.order_id, driver('driver-1'), 'car trouble')

		self.assertEqual(cancelled.cancelled_by, 'driver-1')
		self.assertEqual(self.drivers.get('driver-1').status, DriverStatus.ONLINE)

	def test_stranger_cannot_cancel(self):
		with self.assertRaises(Unauthorized):
			self.machine.cancel(self.order.order_id, passenger('passenger-2'))

	def test_cannot_cancel_after_arrival(self):
		self.machine.accept(self.order.order_id, 'driver-1')
		self.machine.mark_arrived(self.order.order_id, driver('driver-1'))

		with self.assertRaises(PreconditionFailed):
			self.machine.cancel(self.order.order_id, passenger())

	def test_terminal_orders_stay_terminal(self):
		self.machine.cancel(self.order.order_id, passenger())

		with self.assertRaises(PreconditionFailed):
			self.machine.accept(self.order.order_id, 'driver-1')
		with self.assertRaises(PreconditionFailed):
			self.machine.cancel(self.order.order_id, passenger())
		self.assertEqual(self.machine.get(self.order.order_id).status, OrderStatus.CANCELLED)
		self.assertEqual(self.drivers.get('driver-1').status, DriverStatus.ONLINE)

	def test_timestamps_never_go_backwards(self):
		self.env.clock.advance(-120)
		accepted = self.machine.accept(self.order.order_id, 'driver-1')
		self.env.clock.advance(-60)
		arrived = self.machine.mark_arrived(self.order.order_id, driver('driver-1'))

		self.assertGreaterEqual(accepted.accepted_at, self.order.created_at)
		self.assertGreaterEqual(arrived.arrived_at, accepted.accepted_at)

	def test_negative_actuals_rejected(self):
		me = driver('driver-1')
		self.machine.accept(self.order.order_id, 'driver-1')
		self.machine.mark_arrived(self.order.order_id, me)
		self.machine.start_trip(self.order.order_id, me)

		with self.assertRaises(InvalidInput):
			self.machine.complete(self.order.order_id, me, Decimal('-1'), Decimal('3'), 10)
		self.assertEqual(self.machine.get(self.order.order_id).status, OrderStatus.IN_PROGRESS)

	def test_expire_cancels_as_system(self):
		stamped = self.machine.stamp_offer_round(self.order.order_id, 0)

		expired = self.machine.expire(self.order.order_id, stamped.offer_round)

		self.assertEqual(expired.status, OrderStatus.CANCELLED)
		self.assertEqual(expired.cancelled_by, Role.SYSTEM)
		self.assertEqual(expired.cancel_reason, NO_DRIVERS_REASON)

	def test_expire_with_old_round_fails(self):
		self.machine.stamp_offer_round(self.order.order_id, 0)
		self.machine.stamp_offer_round(self.order.order_id, 1)

		with self.assertRaises(PreconditionFailed):
			self.machine.expire(self.order.order_id, 1)

	def test_stamp_offer_round(self):
		self.env.clock.advance(3)
		stamped = self.machine.stamp_offer_round(self.order.order_id, 0)

		self.assertEqual(stamped.offer_round, 1)
		self.assertEqual(stamped.offered_at, self.env.clock.now)
		with self.assertRaises(PreconditionFailed):
			self.machine.stamp_offer_round(self.order.order_id, 0)

	def test_driver_order_queries(self):
		self.machine.accept(self.order.order_id, 'driver-1')

		self.assertEqual(self.machine.current_order_for_driver('driver-1').order_id, self.order.order_id)
		self.assertEqual(len(self.machine.orders_for_driver('driver-1')), 1)
		self.assertEqual(len(self.machine.orders_for_passenger('passenger-1', OrderStatus.ACCEPTED)), 1)
		self.assertEqual(self.machine.orders_for_passenger('passenger-1', OrderStatus.PENDING), [])


class PendingOrderSearchTests(SimpleTestCase):
	def setUp(self):
		self.env = build_dispatch()
		self.machine = self.env.state_machine
		self.here = Location(*PICKUP)

	def _order_at(self, user_id, latitude):
		return self.machine.create(passenger(user_id), order_payload(pickup_latitude=latitude))

	def test_closest_pickup_first_within_radius(self):
		far = self._order_at('p-far', PICKUP[0] + 0.03)
		near = self._order_at('p-near', PICKUP[0] + 0.005)
		self._order_at('p-outside', PICKUP[0] + 0.2)

		results = self.machine.pending_orders_near(self.here, radius_km=5)

		self.assertEqual([r.order.order_id for r in results], [near.order_id, far.order_id])
		self.assertAlmostEqual(results[0].distance_km, 0.556, delta=0.01)

	def test_claimed_and_cancelled_orders_are_not_listed(self):
		add_driver(self.env.drivers, 'driver-1')
		taken = self._order_at('p1', PICKUP[0])
		cancelled = self._order_at('p2', PICKUP[0])
		still_open = self._order_at('p3', PICKUP[0])
		self.machine.accept(taken.order_id, 'driver-1')
		self.machine.cancel(cancelled.order_id, passenger('p2'))

		results = self.machine.pending_orders_near(self.here)

		self.assertEqual([r.order.order_id for r in results], [still_open.order_id])

	def test_limit_applies(self):
		for index in range(4):
			self._order_at('p%d' % index, PICKUP[0] + 0.001 * index)

		self.assertEqual(len(self.machine.pending_orders_near(self.here, limit=2)), 2)

	def test_non_positive_radius_rejected(self):
		with self.assertRaises(InvalidInput):
			self.machine.pending_orders_near(self.here, radius_km=0)


class ConcurrentClaimTests(SimpleTestCase):
	def setUp(self):
		self.env = build_dispatch()
		self.machine = self.env.state_machine

	def _race(self, calls):
		barrier = threading.Barrier(len(calls))
		results = [None] * len(calls)

		def run(index, call):
			barrier.wait()
			try:
				results[index] = call()
			except PreconditionFailed as exc:
				results[index] = exc

		threads = [threading.Thread(target=run, args=(i, call)) for i, call in enumerate(calls)]
		for thread in threads:
			thread.start()
		for thread in threads:
			thread.join()
		return results

	def test_at_most_one_driver_wins(self):
		driver_ids = ['driver-%d' % i for i in range(8)]
		for driver_id in driver_ids:
			add_driver(self.env.drivers, driver_id)
		order = self.machine.create(passenger(), order_payload())

		results = self._race([
			(lambda d=driver_id: self.machine.accept(order.order_id, d)) for driver_id in driver_ids
		])

		winners = [r for r in results if not isinstance(r, PreconditionFailed)]
		self.assertEqual(len(winners), 1)
		final = self.machine.get(order.order_id)
		self.assertEqual(final.driver_id, winners[0].driver_id)

		busy = [d.driver_id for d in self.env.drivers.all() if d.status == DriverStatus.BUSY]
		self.assertEqual(busy, [final.driver_id])

	def test_accept_racing_cancel(self):
		add_driver(self.env.drivers, 'driver-1')
		order = self.machine.create(passenger(), order_payload())

		self._race([
			lambda: self.machine.accept(order.order_id, 'driver-1'),
			lambda: self.machine.cancel(order.order_id, passenger()),
		])

		final = self.machine.get(order.order_id)
		self.assertIn(final.status, (OrderStatus.ACCEPTED, OrderStatus.CANCELLED))
		if final.status == OrderStatus.CANCELLED:
			self.assertEqual(self.env.drivers.get('driver-1').status, DriverStatus.ONLINE)
		else:
			self.assertEqual(self.env.drivers.get('driver-1').status, DriverStatus.BUSY)

	def test_one_driver_cannot_take_two_orders(self):
		add_driver(self.env.drivers, 'driver-1')
		first = self.machine.create(passenger('passenger-1'), order_payload())
		second = self.machine.create(passenger('passenger-2'), order_payload())

		results = self._race([
			lambda: self.machine.accept(first.order_id, 'driver-1'),
			lambda: self.machine.accept(second.order_id, 'driver-1'),
		])

		winners = [r for r in results if not isinstance(r, PreconditionFailed)]
		self.assertEqual(len(winners), 1)
		assigned = [
			o for o in (self.machine.get(first.order_id), self.machine.get(second.order_id))
			if o.driver_id == 'driver-1'
		]
		self.assertEqual(len(assigned), 1)
