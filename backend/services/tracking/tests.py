import math

from django.test import SimpleTestCase

from common.utils.geo import EARTH_RADIUS_KM, InvalidCoordinateError, Point, distance_km
from services.order_lifecycle import EventBus, Order, OrderKind, OrderStateMachine, OrderStatus
from services.tracking import (
    InMemoryLocationFeed,
    NoSampleAvailableError,
    PositionSample,
    PositionSmoother,
    SessionClosedError,
    StaleSampleError,
    TrackingManager,
    TrackingSession,
    TrackingSnapshot,
    ease_out_cubic,
)

KM_PER_DEGREE = EARTH_RADIUS_KM * math.pi / 180.0
PICKUP = Point(0.0, 0.0)
DESTINATION = Point(10.0 / KM_PER_DEGREE, 0.0)


def north(km):
    return Point(km / KM_PER_DEGREE, 0.0)


def sample(position, observed_at, heading=0.0, driver_id="drv-1"):
    return PositionSample(
        entity_id=driver_id,
        lat=position[0],
        lng=position[1],
        heading_degrees=heading,
        observed_at=observed_at,
    )


def make_order(status=OrderStatus.DRIVER_ASSIGNED):
    return Order(
        kind=OrderKind.DELIVERY,
        service_tier="flash",
        pickup_point=PICKUP,
        destination_point=DESTINATION,
        status=status,
        assigned_driver_id="drv-1",
    )


class PositionSampleTests(SimpleTestCase):
    def test_validates_and_normalizes(self):
        s = sample((1.0, 2.0), 10, heading=-90)
        self.assertEqual(s.heading_degrees, 270.0)
        self.assertEqual(s.observed_at, 10.0)
        self.assertEqual(s.position, Point(1.0, 2.0))

    def test_rejects_invalid_values(self):
        with self.assertRaises(InvalidCoordinateError):
            sample((91.0, 0.0), 0)
        with self.assertRaises(InvalidCoordinateError):
            sample((0.0, 0.0), float("nan"))
        with self.assertRaises(InvalidCoordinateError):
            sample((0.0, 0.0), 0, heading=float("inf"))


class PositionSmootherTests(SimpleTestCase):
    def setUp(self):
        self.smoother = PositionSmoother("drv-1")

    def test_no_sample_yet(self):
        self.assertFalse(self.smoother.has_sample)
        with self.assertRaises(NoSampleAvailableError):
            self.smoother.tick(0.0)

    def test_single_sample_is_returned_verbatim(self):
        only = sample((12.34, 56.78), 1.0, heading=45.0)
        self.smoother.push_sample(only, now=0.0)

        for now in (0.0, 0.3, 5.0, 1000.0):
            frame = self.smoother.tick(now)
            self.assertEqual((frame.lat, frame.lng, frame.heading_degrees), (12.34, 56.78, 45.0))
            self.assertFalse(frame.is_interpolated)

    def test_duration_scales_with_distance(self):
        origin = sample(PICKUP, 0)
        self.assertAlmostEqual(self.smoother.duration_for(origin, sample(north(0.1), 1)), 0.5, places=6)
        self.assertAlmostEqual(self.smoother.duration_for(origin, sample(north(0.2), 1)), 1.0, places=6)
        self.assertEqual(self.smoother.duration_for(origin, sample(north(0.01), 1)), 0.5)
        self.assertEqual(self.smoother.duration_for(origin, sample(north(5), 1)), 2.0)

    def test_heading_turns_through_shorter_arc(self):
        self.smoother.push_sample(sample(PICKUP, 0.0, heading=350.0), now=0.0)
        self.smoother.push_sample(sample(north(0.4), 1.0, heading=10.0), now=1.0)

        for now in (1.1, 1.5, 2.0, 2.5, 2.9):
            frame = self.smoother.tick(now)
            self.assertTrue(frame.is_interpolated)
            offset = (frame.heading_degrees - 350.0) % 360.0
            self.assertGreater(offset, 0.0)
            self.assertLess(offset, 20.0)

        mid = self.smoother.tick(2.0)
        self.assertAlmostEqual(mid.heading_degrees, 7.5, places=6)

    def test_interpolation_is_monotonic_and_never_overshoots(self):
        target = sample(north(0.4), 1.0, heading=90.0)
        self.smoother.push_sample(sample(PICKUP, 0.0), now=0.0)
        self.smoother.push_sample(target, now=0.0)

        previous_fraction = 0.0
        previous_distance = distance_km(PICKUP, target.position)
        for step in range(0, 31):
            now = step * 0.1
            fraction = self.smoother.fraction(now)
            frame = self.smoother.tick(now)
            remaining = distance_km(frame.position, target.position)

            self.assertGreaterEqual(fraction, previous_fraction)
            self.assertLessEqual(fraction, 1.0)
            self.assertLessEqual(remaining, previous_distance + 1e-12)
            self.assertLessEqual(frame.lat, target.lat)
            previous_fraction, previous_distance = fraction, remaining

        final = self.smoother.tick(3.0)
        self.assertEqual(final.position, target.position)
        self.assertFalse(final.is_interpolated)

    def test_ease_out_cubic(self):
        self.assertEqual(ease_out_cubic(0.0), 0.0)
        self.assertEqual(ease_out_cubic(1.0), 1.0)
        self.assertEqual(ease_out_cubic(0.5), 0.875)

    def test_tick_before_push_time_is_clamped(self):
        self.smoother.push_sample(sample(PICKUP, 0.0), now=0.0)
        self.smoother.push_sample(sample(north(0.4), 1.0), now=10.0)
        self.assertEqual(self.smoother.fraction(5.0), 0.0)
        self.assertEqual(self.smoother.tick(5.0).lat, 0.0)

    def test_out_of_order_sample_is_rejected_without_side_effects(self):
        newest = sample(north(1), 5.0)
        self.smoother.push_sample(sample(PICKUP, 4.0), now=0.0)
        self.smoother.push_sample(newest, now=1.0)
        before = self.smoother.tick(1.5)

        for observed_at in (3.0, 5.0):
            with self.subTest(observed_at=observed_at):
                with self.assertRaises(StaleSampleError):
                    self.smoother.push_sample(sample(north(2), observed_at), now=1.2)

        self.assertIs(self.smoother.latest_sample, newest)
        self.assertEqual(self.smoother.tick(1.5), before)

    def test_rejects_other_entity(self):
        with self.assertRaises(ValueError):
            self.smoother.push_sample(sample(PICKUP, 0.0, driver_id="drv-2"))

    def test_crossing_antimeridian(self):
        self.smoother.push_sample(sample((0.0, 179.9), 0.0), now=0.0)
        self.smoother.push_sample(sample((0.0, -179.9), 1.0), now=0.0)
        for now in (0.1, 0.5, 1.0, 1.5):
            frame = self.smoother.tick(now)
            self.assertGreaterEqual(abs(frame.lng), 179.9)

    def test_uses_injected_clock(self):
        now = [0.0]
        smoother = PositionSmoother("drv-1", clock=lambda: now[0])
        smoother.push_sample(sample(PICKUP, 0.0))
        smoother.push_sample(sample(north(0.4), 1.0))
        now[0] = 1.0
        self.assertAlmostEqual(smoother.fraction(), 0.5, places=6)

    def test_reset(self):
        self.smoother.push_sample(sample(PICKUP, 0.0), now=0.0)
        self.smoother.reset()
        self.assertFalse(self.smoother.has_sample)

    def test_invalid_configuration(self):
        with self.assertRaises(ValueError):
            PositionSmoother("drv-1", min_duration_s=2.0, max_duration_s=1.0)
        with self.assertRaises(ValueError):
            PositionSmoother("drv-1", reference_speed_kmh=0)


class TrackingSessionTests(SimpleTestCase):
    def setUp(self):
        self.order = make_order()
        self.session = TrackingSession(self.order, "drv-1", clock=lambda: 0.0)

    def test_snapshot_before_first_sample(self):
        snapshot = self.session.snapshot(now=0.0)
        self.assertIsNone(snapshot.frame)
        self.assertTrue(snapshot.is_stale)
        self.assertIsNone(snapshot.distance_remaining_km)
        self.assertIsNone(snapshot.eta_minutes)
        self.assertEqual(snapshot.order_status, "driver_assigned")

    def test_tick_without_sample_raises(self):
        with self.assertRaises(NoSampleAvailableError):
            self.session.tick(0.0)

    def test_derived_fields_at_pickup(self):
        self.assertTrue(self.session.push_sample(sample(PICKUP, 1.0), now=0.0))
        snapshot = self.session.snapshot(now=0.0)

        self.assertAlmostEqual(snapshot.distance_remaining_km, 10.0, places=6)
        self.assertAlmostEqual(snapshot.eta_minutes, 20.0, places=6)
        self.assertAlmostEqual(snapshot.progress_fraction, 0.0, places=6)
        self.assertFalse(snapshot.is_stale)
        self.assertEqual(snapshot.last_sample_at, 0.0)

    def test_progress_halfway(self):
        self.session.push_sample(sample(north(5), 1.0), now=0.0)
        snapshot = self.session.snapshot(now=0.0)
        self.assertAlmostEqual(snapshot.progress_fraction, 0.5, places=6)
        self.assertAlmostEqual(snapshot.eta_minutes, 10.0, places=6)

    def test_eta_uses_configured_speed(self):
        session = TrackingSession(self.order, "drv-1", assumed_speed_kmh=60.0)
        session.push_sample(sample(PICKUP, 1.0), now=0.0)
        self.assertAlmostEqual(session.snapshot(now=0.0).eta_minutes, 10.0, places=6)

    def test_staleness_keeps_last_frame(self):
        self.session.push_sample(sample(north(2), 1.0), now=0.0)

        fresh = self.session.snapshot(now=30.0)
        stale = self.session.snapshot(now=30.5)

        self.assertFalse(fresh.is_stale)
        self.assertTrue(stale.is_stale)
        self.assertEqual(stale.frame, fresh.frame)
        self.assertAlmostEqual(stale.distance_remaining_km, 8.0, places=6)

    def test_stale_sample_is_ignored(self):
        received = []
        self.session.subscribe(received.append)
        self.session.push_sample(sample(north(1), 10.0), now=0.0)

        self.assertFalse(self.session.push_sample(sample(north(2), 9.0), now=1.0))
        self.assertEqual(len(received), 1)
        self.assertEqual(self.session.snapshot(now=1.0).last_sample_at, 0.0)

    def test_subscribers_receive_snapshots(self):
        received = []
        unsubscribe = self.session.subscribe(received.append)

        self.session.push_sample(sample(PICKUP, 1.0), now=0.0)
        unsubscribe()
        self.session.push_sample(sample(north(1), 2.0), now=1.0)

        self.assertEqual(len(received), 1)
        self.assertIsInstance(received[0], TrackingSnapshot)
        self.assertEqual(received[0].as_dict()["order_id"], self.order.order_id)

    def test_failing_subscriber_is_isolated(self):
        def broken(snapshot):
            raise RuntimeError("render failed")

        self.session.subscribe(broken)
        with self.assertLogs("services.tracking.session", level="ERROR"):
            self.assertTrue(self.session.push_sample(sample(PICKUP, 1.0), now=0.0))

    def test_rejects_samples_for_other_driver(self):
        with self.assertRaises(ValueError):
            self.session.push_sample(sample(PICKUP, 1.0, driver_id="drv-2"), now=0.0)

    def test_cancelled_order_closes_session(self):
        self.session.push_sample(sample(PICKUP, 1.0), now=0.0)
        OrderStateMachine().cancel(self.order, "customer_request")

        self.assertTrue(self.session.is_closed)
        with self.assertRaises(SessionClosedError):
            self.session.push_sample(sample(north(1), 2.0), now=1.0)
        with self.assertRaises(SessionClosedError):
            self.session.tick(1.0)
        self.assertEqual(self.session.snapshot(now=1.0).order_status, "cancelled")

    def test_delivered_status_completes_progress(self):
        self.session.push_sample(sample(north(9.9), 1.0), now=0.0)
        self.session.sync_status(OrderStatus.DELIVERED)

        snapshot = self.session.snapshot(now=0.0)
        self.assertEqual(snapshot.progress_fraction, 1.0)
        self.assertEqual(snapshot.distance_remaining_km, 0.0)
        self.assertEqual(snapshot.eta_minutes, 0.0)
        self.assertTrue(self.session.is_closed)

    def test_explicit_close(self):
        self.session.close()
        with self.assertRaises(SessionClosedError):
            self.session.push_sample(sample(PICKUP, 1.0), now=0.0)

    def test_snapshot_as_dict_rounds(self):
        self.session.push_sample(sample(north(1), 1.0), now=0.0)
        data = self.session.snapshot(now=0.0).as_dict()
        self.assertEqual(data["distance_remaining_km"], 9.0)
        self.assertEqual(data["eta_minutes"], 18.0)
        self.assertEqual(data["frame"]["is_interpolated"], False)


class LocationFeedTests(SimpleTestCase):
    def test_publish_reaches_only_matching_driver(self):
        feed = InMemoryLocationFeed()
        seen = []
        unsubscribe = feed.subscribe("drv-1", seen.append)
        feed.subscribe("drv-2", lambda s: self.fail("wrong driver"))

        self.assertEqual(feed.publish(sample(PICKUP, 1.0)), 1)
        unsubscribe()
        self.assertEqual(feed.publish(sample(PICKUP, 2.0)), 0)
        self.assertEqual(len(seen), 1)
        self.assertEqual(feed.subscriber_count("drv-1"), 0)


class TrackingManagerTests(SimpleTestCase):
    def setUp(self):
        self.bus = EventBus()
        self.feed = InMemoryLocationFeed()
        self.orders = {}
        self.snapshots = []
        self.manager = TrackingManager(
            self.feed,
            event_bus=self.bus,
            order_loader=self.orders.__getitem__,
            snapshot_listener=self.snapshots.append,
            clock=lambda: 0.0,
        )
        self.machine = OrderStateMachine(publisher=self.bus)

    def make_confirmed_order(self):
        order = Order(
            kind=OrderKind.DELIVERY,
            service_tier="flash",
            pickup_point=PICKUP,
            destination_point=DESTINATION,
            status=OrderStatus.CONFIRMED,
        )
        self.orders[order.order_id] = order
        return order

    def test_lifecycle_opens_feeds_and_closes_session(self):
        order = self.make_confirmed_order()

        self.machine.assign_driver(order, "drv-1")
        session = self.manager.get_session(order.order_id)
        self.assertIsNotNone(session)
        self.assertEqual(session.driver_id, "drv-1")
        self.assertEqual(self.feed.subscriber_count("drv-1"), 1)

        self.assertEqual(self.feed.publish(sample(PICKUP, 1.0)), 1)
        self.assertEqual(len(self.snapshots), 1)
        self.assertAlmostEqual(self.snapshots[0].distance_remaining_km, 10.0, places=6)

        self.machine.mark_picked_up(order)
        self.assertEqual(session.snapshot().order_status, "picked_up")

        self.machine.mark_in_transit(order)
        self.machine.mark_delivered(order)
        self.assertIsNone(self.manager.get_session(order.order_id))
        self.assertEqual(self.feed.subscriber_count("drv-1"), 0)
        self.assertTrue(session.is_closed)
        self.assertEqual(self.manager.open_sessions(), [])

    def test_cancellation_closes_session(self):
        order = self.make_confirmed_order()
        self.machine.assign_driver(order, "drv-1")
        session = self.manager.get_session(order.order_id)

        self.machine.cancel(order, "driver_unavailable")

        self.assertTrue(session.is_closed)
        self.assertIsNone(self.manager.get_session(order.order_id))

    def test_feed_closes_session_for_terminal_order(self):
        order = make_order()
        session = self.manager.open_session(order)
        order.status = OrderStatus.CANCELLED

        self.feed.publish(sample(PICKUP, 1.0))

        self.assertTrue(session.is_closed)
        self.assertIsNone(self.manager.get_session(order.order_id))

    def test_open_session_is_idempotent(self):
        order = make_order()
        first = self.manager.open_session(order)
        self.assertIs(self.manager.open_session(order), first)
        self.assertEqual(self.feed.subscriber_count("drv-1"), 1)

    def test_open_session_rejects_unassigned_or_finished(self):
        with self.assertRaises(SessionClosedError):
            self.manager.open_session(make_order(status=OrderStatus.DELIVERED))
        unassigned = make_order(status=OrderStatus.CONFIRMED)
        unassigned.assigned_driver_id = None
        with self.assertRaises(ValueError):
            self.manager.open_session(unassigned)

    def test_ignores_non_domain_events(self):
        self.assertIsNone(self.manager.handle_event("not an event"))
        self.assertEqual(self.manager.open_sessions(), [])
