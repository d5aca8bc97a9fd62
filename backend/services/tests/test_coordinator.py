from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

from django.test import SimpleTestCase

from services.matching import OfferEvent, TimeoutOutcome
from services.order_lifecycle import (
	DependencyUnavailable,
	DriverStatus,
	Location,
	NotFound,
	OrderStatus,
	PreconditionFailed,
	Role,
)

from .helpers import PICKUP, FailingGeoLookup, add_driver, build_dispatch, driver, order_payload, passenger


def near(km_north):
	"""Point roughly ``km_north`` kilometres north of the pickup."""
	return PICKUP[0] + km_north / 111.2, PICKUP[1]


class OfferRoundTests(SimpleTestCase):
	def setUp(self):
		self.env = build_dispatch()
		self.coordinator = self.env.coordinator
		for driver_id, km in (('far', 3.0), ('near', 0.5), ('mid', 1.5), ('outside', 12.0)):
			add_driver(self.env.drivers, driver_id, *near(km))
		add_driver(self.env.drivers, 'offline', *near(0.2), status=DriverStatus.OFFLINE)
		self.order = self.env.state_machine.create(passenger(), order_payload())

	def test_candidates_ranked_by_distance_within_radius(self):
		candidate_set = self.coordinator.open_for_offers(self.order.order_id)

		self.assertEqual(candidate_set.offer_round, 1)
		self.assertEqual(candidate_set.driver_ids, ('near', 'mid', 'far'))
		distances = [c.distance_km for c in candidate_set.drivers]
		self.assertEqual(distances, sorted(distances))
		self.assertLess(distances[-1], self.coordinator.search_radius_km)

	def test_round_stamped_on_order(self):
		self.env.clock.advance(2)
		candidate_set = self.coordinator.open_for_offers(self.order.order_id)

		order = self.env.state_machine.get(self.order.order_id)
		self.assertEqual(order.offer_round, 1)
		self.assertEqual(order.offered_at, self.env.clock.now)
		self.assertEqual(candidate_set.expires_at, order.offered_at + timedelta(seconds=20))
		self.assertEqual(self.env.orders.offered_driver_ids(order.order_id, 1), ['near', 'mid', 'far'])

	def test_candidates_capped(self):
		self.coordinator.max_candidates = 2

		candidate_set = self.coordinator.open_for_offers(self.order.order_id)

		self.assertEqual(candidate_set.driver_ids, ('near', 'mid'))

	def test_busy_driver_not_offered(self):
		self.env.drivers.compare_and_set_status('near', {DriverStatus.ONLINE}, DriverStatus.BUSY)

		candidate_set = self.coordinator.open_for_offers(self.order.order_id)

		self.assertNotIn('near', candidate_set.driver_ids)

	def test_offers_sent_to_each_candidate(self):
		self.coordinator.open_for_offers(self.order.order_id)

		offers = [e for e in self.env.transport.driver_events if e[1] == OfferEvent.OFFER]
		self.assertEqual([e[0] for e in offers], ['near', 'mid', 'far'])
		driver_id, _, snapshot, message, extra = offers[0]
		self.assertEqual(snapshot.offer_round, 1)
		self.assertEqual(message, 'New trip request nearby.')
		self.assertEqual(extra['offer_round'], 1)
		self.assertEqual(extra['rank'], 0)
		self.assertIsNotNone(extra['expires_at'])

	def test_empty_round_tells_passenger(self):
		for record in self.env.drivers.all():
			self.env.drivers.compare_and_set_status(record.driver_id, {DriverStatus.ONLINE}, DriverStatus.OFFLINE)

		candidate_set = self.coordinator.open_for_offers(self.order.order_id)

		self.assertEqual(len(candidate_set), 0)
		self.assertEqual(self.env.state_machine.get(self.order.order_id).offer_round, 1)
		passenger_id, event_type, _, _, extra = self.env.transport.passenger_events[-1]
		self.assertEqual(passenger_id, 'passenger-1')
		self.assertEqual(event_type, OfferEvent.NO_DRIVERS)
		self.assertFalse(extra['final'])

	def test_cannot_open_offers_for_taken_order(self):
		self.env.state_machine.accept(self.order.order_id, 'near')

		with self.assertRaises(PreconditionFailed):
			self.coordinator.open_for_offers(self.order.order_id)

	def test_geo_failure_opens_no_round(self):
		env = build_dispatch(geo_lookup=FailingGeoLookup())
		order = env.state_machine.create(passenger(), order_payload())

		with self.assertRaises(DependencyUnavailable):
			env.coordinator.open_for_offers(order.order_id)

		self.assertEqual(env.state_machine.get(order.order_id).offer_round, 0)
		self.assertEqual(env.orders.offered_driver_ids(order.order_id), [])

	def test_expiry_scheduled_per_round(self):
		scheduler = MagicMock()
		env = build_dispatch(scheduler=scheduler)
		order = env.state_machine.create(passenger(), order_payload())

		env.coordinator.open_for_offers(order.order_id)

		scheduler.assert_called_once_with(order.order_id, 1, 20)

	def test_scheduler_failure_does_not_fail_round(self):
		scheduler = MagicMock(side_effect=RuntimeError('broker down'))
		env = build_dispatch(scheduler=scheduler)
		order = env.state_machine.create(passenger(), order_payload())

		with self.assertLogs('services.matching.coordinator', level='ERROR'):
			candidate_set = env.coordinator.open_for_offers(order.order_id)

		self.assertEqual(candidate_set.offer_round, 1)


class ClaimTests(SimpleTestCase):
	def setUp(self):
		self.env = build_dispatch()
		self.coordinator = self.env.coordinator
		for driver_id, km in (('d1', 0.5), ('d2', 1.0), ('d3', 2.0)):
			add_driver(self.env.drivers, driver_id, *near(km))
		self.order = self.env.state_machine.create(passenger(), order_payload())
		self.coordinator.open_for_offers(self.order.order_id)

	def test_claim_wins_and_losers_are_told(self):
		result = self.coordinator.attempt_claim(self.order.order_id, 'd2', offer_round=1)

		self.assertTrue(result.success)
		self.assertEqual(result.order.driver_id, 'd2')
		self.assertEqual(result.message, '')
		self.assertEqual(sorted(self.env.transport.drivers_sent(OfferEvent.TAKEN)), ['d1', 'd3'])
		self.assertIn('order_accepted', self.env.transport.passenger_event_types())

	def test_second_claim_loses(self):
		self.coordinator.attempt_claim(self.order.order_id, 'd1', offer_round=1)

		result = self.coordinator.attempt_claim(self.order.order_id, 'd2', offer_round=1)

		self.assertFalse(result.success)
		self.assertEqual(result.message, 'This order is no longer available.')
		self.assertEqual(self.env.drivers.get('d2').status, DriverStatus.ONLINE)

	def test_claim_for_old_round_loses(self):
		self.coordinator.handle_offer_timeout(self.order.order_id, 1)

		result = self.coordinator.attempt_claim(self.order.order_id, 'd1', offer_round=1)

		self.assertFalse(result.success)
		self.assertEqual(self.env.state_machine.get(self.order.order_id).status, OrderStatus.PENDING)

	def test_claim_of_unknown_order_propagates(self):
		with self.assertRaises(NotFound):
			self.coordinator.attempt_claim('missing', 'd1')


class OfferTimeoutTests(SimpleTestCase):
	def setUp(self):
		self.env = build_dispatch(max_offer_rounds=2)
		self.coordinator = self.env.coordinator
		for driver_id, km in (('d1', 0.5), ('d2', 1.0)):
			add_driver(self.env.drivers, driver_id, *near(km))
		self.order = self.env.state_machine.create(passenger(), order_payload())
		self.coordinator.open_for_offers(self.order.order_id)

	def test_timeout_reoffers(self):
		self.env.drivers.compare_and_set_status('d2', {DriverStatus.ONLINE}, DriverStatus.OFFLINE)
		self.env.clock.advance(20)

		outcome = self.coordinator.handle_offer_timeout(self.order.order_id, 1)

		self.assertEqual(outcome, TimeoutOutcome.REOFFERED)
		self.assertEqual(self.env.state_machine.get(self.order.order_id).offer_round, 2)
		self.assertEqual(self.env.orders.offered_driver_ids(self.order.order_id, 2), ['d1'])
		self.assertEqual(self.env.transport.drivers_sent(OfferEvent.EXPIRED), ['d2'])

	def test_duplicate_timer_is_ignored(self):
		self.coordinator.handle_offer_timeout(self.order.order_id, 1)

		outcome = self.coordinator.handle_offer_timeout(self.order.order_id, 1)

		self.assertEqual(outcome, TimeoutOutcome.STALE)
		self.assertEqual(self.env.state_machine.get(self.order.order_id).offer_round, 2)

	def test_timer_after_claim_is_ignored(self):
		self.coordinator.attempt_claim(self.order.order_id, 'd1')

		outcome = self.coordinator.handle_offer_timeout(self.order.order_id, 1)

		self.assertEqual(outcome, TimeoutOutcome.STALE)
		self.assertEqual(self.env.state_machine.get(self.order.order_id).status, OrderStatus.ACCEPTED)

	def test_expires_after_last_round(self):
		self.coordinator.handle_offer_timeout(self.order.order_id, 1)

		outcome = self.coordinator.handle_offer_timeout(self.order.order_id, 2)

		self.assertEqual(outcome, TimeoutOutcome.EXPIRED)
		order = self.env.state_machine.get(self.order.order_id)
		self.assertEqual(order.status, OrderStatus.CANCELLED)
		self.assertEqual(order.cancelled_by, Role.SYSTEM)
		self.assertEqual(sorted(self.env.transport.drivers_sent(OfferEvent.EXPIRED)), ['d1', 'd2'])
		_, event_type, _, _, extra = self.env.transport.passenger_events[-1]
		self.assertEqual(event_type, OfferEvent.NO_DRIVERS)
		self.assertTrue(extra['final'])

	def test_sweep_handles_overdue_orders(self):
		fresh = self.env.state_machine.create(passenger('passenger-2'), order_payload())
		self.env.clock.advance(21)
		self.coordinator.handle_offer_timeout(self.order.order_id, 1)
		self.env.clock.advance(21)

		reoffered, expired = self.coordinator.sweep_offer_timeouts()

		self.assertEqual((reoffered, expired), (1, 1))
		self.assertEqual(self.env.state_machine.get(self.order.order_id).status, OrderStatus.CANCELLED)
		self.assertEqual(self.env.state_machine.get(fresh.order_id).offer_round, 1)

	def test_sweep_skips_recent_rounds(self):
		self.env.clock.advance(5)

		self.assertEqual(self.coordinator.sweep_offer_timeouts(), (0, 0))


class CancellationTests(SimpleTestCase):
	def setUp(self):
		self.env = build_dispatch()
		self.coordinator = self.env.coordinator
		for driver_id, km in (('d1', 0.5), ('d2', 1.0)):
			add_driver(self.env.drivers, driver_id, *near(km))
		self.order = self.env.state_machine.create(passenger(), order_payload())
		self.coordinator.open_for_offers(self.order.order_id)

	def test_passenger_cancel_withdraws_offers(self):
		cancelled = self.coordinator.cancel(self.order.order_id, passenger(), 'changed plans')

		self.assertEqual(cancelled.status, OrderStatus.CANCELLED)
		self.assertEqual(sorted(self.env.transport.drivers_sent(OfferEvent.CANCELLED)), ['d1', 'd2'])

	def test_driver_cancel_tells_passenger(self):
		self.coordinator.attempt_claim(self.order.order_id, 'd1')

		self.coordinator.cancel(self.order.order_id, driver('d1'), 'flat tyre')

		self.assertEqual(self.env.transport.drivers_sent(OfferEvent.CANCELLED), ['d2'])
		_, event_type, _, message, _ = self.env.transport.passenger_events[-1]
		self.assertEqual(event_type, OfferEvent.CANCELLED)
		self.assertEqual(message, 'Your driver cancelled the trip.')
		self.assertEqual(self.env.drivers.get('d1').status, DriverStatus.ONLINE)


class DispatchScenarioTests(SimpleTestCase):
	def test_trip_from_request_to_completion(self):
		env = build_dispatch()
		for driver_id, km in (('d1', 0.4), ('d2', 0.8), ('d3', 1.6)):
			add_driver(env.drivers, driver_id, *near(km))

		order = env.state_machine.create(passenger(), order_payload())
		subscription = env.hub.subscribe(order.order_id)
		candidate_set = env.coordinator.open_for_offers(order.order_id)
		self.assertEqual(candidate_set.driver_ids, ('d1', 'd2', 'd3'))

		first = env.coordinator.attempt_claim(order.order_id, 'd3', offer_round=1)
		second = env.coordinator.attempt_claim(order.order_id, 'd1', offer_round=1)
		self.assertTrue(first.success)
		self.assertFalse(second.success)
		self.assertEqual(second.message, 'This order is no longer available.')
		self.assertEqual(env.drivers.get('d1').status, DriverStatus.ONLINE)

		retry_order = env.state_machine.create(passenger('passenger-2'), order_payload())
		refreshed = env.state_machine.pending_orders_near(Location(*near(0.4)))
		self.assertEqual([n.order.order_id for n in refreshed], [retry_order.order_id])
		retry_round = env.coordinator.open_for_offers(retry_order.order_id)
		self.assertEqual(retry_round.driver_ids, ('d1', 'd2'))
		retry = env.coordinator.attempt_claim(retry_order.order_id, 'd1', offer_round=retry_round.offer_round)
		self.assertTrue(retry.success)
		self.assertEqual(retry.order.driver_id, 'd1')

		me = driver('d3')
		env.clock.advance(30)
		env.tracker.submit_fix('d3', {
			'latitude': PICKUP[0] + 0.01,
			'longitude': PICKUP[1],
			'timestamp': env.clock.now,
			'accuracy': 8.0,
		})
		env.state_machine.mark_arrived(order.order_id, me)
		env.clock.advance(30)
		env.state_machine.start_trip(order.order_id, me)
		env.clock.advance(30)
		env.tracker.submit_fix('d3', {
			'latitude': PICKUP[0] + 0.03,
			'longitude': PICKUP[1] - 0.02,
			'timestamp': env.clock.now,
			'accuracy': 8.0,
		})
		env.clock.advance(600)
		env.state_machine.complete(order.order_id, me, Decimal('95.00'), Decimal('12.80'), 14)

		self.assertEqual(len(env.state_machine.track_history(order.order_id)), 2)
		self.assertEqual(len(env.transport.locations), 2)

		statuses = [s.status for s in subscription.drain()]
		self.assertEqual(statuses, [
			OrderStatus.PENDING,
			OrderStatus.ACCEPTED,
			OrderStatus.DRIVER_ARRIVED,
			OrderStatus.IN_PROGRESS,
			OrderStatus.COMPLETED,
		])
		self.assertEqual(env.drivers.get('d3').status, DriverStatus.ONLINE)
		self.assertEqual(env.drivers.get('d1').status, DriverStatus.BUSY)
		self.assertEqual(env.state_machine.current_order_for_driver('d1').order_id, retry_order.order_id)
