from unittest.mock import Mock

from django.test import SimpleTestCase

from common.utils.geo import EARTH_RADIUS_KM, Point
from services.matching import (
    DispatchAttempt,
    DispatchEngine,
    DispatchOutcome,
    DriverCandidate,
    InMemoryCandidateSource,
    InvalidOrderStatusError,
    NoCompatibleVehicleClassError,
    SearchExhaustedError,
    compatible_vehicle_classes,
    rank_candidates,
    search_radii,
)
from services.order_lifecycle import (
    DomainEvent,
    EventBus,
    Order,
    OrderKind,
    OrderStateMachine,
    OrderStatus,
    TerminalStateError,
)

KM_PER_DEGREE = EARTH_RADIUS_KM * 3.141592653589793 / 180.0
PICKUP = Point(0.0, 0.0)


def north(km):
    return Point(km / KM_PER_DEGREE, 0.0)


def east(km):
    return Point(0.0, km / KM_PER_DEGREE)


def make_order(kind=OrderKind.DELIVERY, tier="flash", status=OrderStatus.PENDING):
    return Order(
        kind=kind,
        service_tier=tier,
        pickup_point=PICKUP,
        destination_point=north(10),
        status=status,
    )


def driver(driver_id, position, vehicle_class="moto", rating=4.5, is_available=True):
    return DriverCandidate(
        driver_id=driver_id,
        position=position,
        vehicle_class=vehicle_class,
        rating=rating,
        is_available=is_available,
    )


class UnfilteredSource(InMemoryCandidateSource):
    """Returns every driver it knows about, whatever the query."""

    def search(self, center, radius_km, vehicle_class):
        self.search_calls.append((tuple(center), radius_km, vehicle_class))
        return list(self._drivers.values())


class ContestedSource(InMemoryCandidateSource):
    """Refuses reservations for drivers already taken by another dispatcher."""

    def __init__(self, candidates, taken):
        super().__init__(candidates)
        self.taken = set(taken)

    def reserve(self, driver_id, order_id):
        if driver_id in self.taken:
            return False
        return super().reserve(driver_id, order_id)


class VehicleClassTests(SimpleTestCase):
    def test_delivery_tiers(self):
        self.assertEqual(compatible_vehicle_classes(OrderKind.DELIVERY, "flash"), ("moto",))
        self.assertEqual(compatible_vehicle_classes("delivery", "Flex"), ("standard",))
        self.assertEqual(compatible_vehicle_classes("delivery", "maxicharge"), ("truck",))

    def test_transport_tiers_accept_next_class_up(self):
        self.assertEqual(compatible_vehicle_classes(OrderKind.TRANSPORT, "eco"), ("eco", "standard"))

    def test_unknown_tier(self):
        with self.assertRaises(NoCompatibleVehicleClassError):
            compatible_vehicle_classes(OrderKind.TRANSPORT, "flash")


class SearchRadiiTests(SimpleTestCase):
    def test_default_rings(self):
        self.assertEqual(search_radii(5, 25, 5), [5.0, 10.0, 15.0, 20.0, 25.0])

    def test_cap_not_on_step(self):
        self.assertEqual(search_radii(5, 12, 5), [5.0, 10.0])

    def test_float_steps_reach_cap(self):
        self.assertEqual(len(search_radii(0.1, 0.3, 0.1)), 3)

    def test_strictly_increasing_arithmetic(self):
        radii = search_radii(2.5, 40, 2.5)
        steps = {round(b - a, 9) for a, b in zip(radii, radii[1:])}
        self.assertEqual(steps, {2.5})
        self.assertLessEqual(radii[-1], 40)

    def test_invalid_arguments(self):
        for args in [(0, 25, 5), (5, 25, 0), (5, -1, 5), (30, 25, 5)]:
            with self.subTest(args=args):
                with self.assertRaises(ValueError):
                    search_radii(*args)


class RankingTests(SimpleTestCase):
    def test_nearest_first_then_rating_then_id(self):
        ranked = rank_candidates(PICKUP, [
            driver("far", north(4)),
            driver("b-low", east(2), rating=4.1),
            driver("a-high", east(-2), rating=4.9),
            driver("c-high", north(2), rating=4.9),
        ])
        self.assertEqual([c.driver_id for c, _ in ranked], ["a-high", "c-high", "b-low", "far"])


class DispatchEngineTests(SimpleTestCase):
    def setUp(self):
        self.bus = EventBus()
        self.published = []
        self.bus.subscribe(self.published.append)
        self.machine = OrderStateMachine(publisher=self.bus)
        self.engine = DispatchEngine(self.machine, publisher=self.bus)

    def attempts(self):
        return [e for e in self.published if isinstance(e, DispatchAttempt)]

    def test_match_within_first_radius(self):
        order = make_order()
        source = InMemoryCandidateSource([driver("drv-1", north(3))])

        attempt = self.engine.dispatch(order, source, initial_radius_km=5, max_radius_km=25, radius_step_km=5)

        self.assertIs(attempt.outcome, DispatchOutcome.MATCHED)
        self.assertTrue(attempt.matched)
        self.assertEqual(attempt.driver_id, "drv-1")
        self.assertEqual(attempt.radius_km, 5.0)
        self.assertEqual(attempt.attempt_count, 1)
        self.assertEqual(attempt.candidate_count, 1)
        self.assertEqual(order.status, OrderStatus.DRIVER_ASSIGNED)
        self.assertEqual(order.assigned_driver_id, "drv-1")
        self.assertIsNotNone(order.assigned_at)
        self.assertIsNotNone(order.confirmed_at)
        self.assertEqual(source.reserved_by("drv-1"), order.order_id)
        self.assertIs(attempt.raise_for_outcome(), attempt)
        self.assertEqual(
            [e.to_status for e in self.published if isinstance(e, DomainEvent)],
            [OrderStatus.CONFIRMED, OrderStatus.DRIVER_ASSIGNED],
        )

    def test_exhausted_beyond_max_radius(self):
        order = make_order()
        source = InMemoryCandidateSource([driver("drv-far", north(30))])

        attempt = self.engine.dispatch(order, source, initial_radius_km=5, max_radius_km=25, radius_step_km=5)

        self.assertIs(attempt.outcome, DispatchOutcome.EXHAUSTED)
        self.assertEqual(attempt.radii_km, (5.0, 10.0, 15.0, 20.0, 25.0))
        self.assertEqual(attempt.attempt_count, 5)
        self.assertEqual(attempt.radius_km, 25.0)
        self.assertIsNone(attempt.driver_id)
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertIsNone(order.assigned_at)
        self.assertIsNone(source.reserved_by("drv-far"))
        with self.assertRaises(SearchExhaustedError) as ctx:
            attempt.raise_for_outcome()
        self.assertIs(ctx.exception.attempt, attempt)

    def test_radius_grows_until_a_driver_is_found(self):
        order = make_order()
        source = InMemoryCandidateSource([driver("drv-12", north(12))])

        attempt = self.engine.dispatch(order, source)

        self.assertEqual(attempt.radii_km, (5.0, 10.0, 15.0))
        self.assertEqual(attempt.attempt_count, 3)
        self.assertEqual([call[1] for call in source.search_calls], [5.0, 10.0, 15.0])
        self.assertEqual(self.published[-1], attempt)

    def test_nearest_compatible_driver_wins(self):
        order = make_order(kind=OrderKind.TRANSPORT, tier="eco")
        source = InMemoryCandidateSource([
            driver("premium-close", north(0.5), vehicle_class="premium"),
            driver("standard-mid", north(1.5), vehicle_class="standard"),
            driver("eco-far", north(2.5), vehicle_class="eco"),
            driver("eco-off", north(1.0), vehicle_class="eco", is_available=False),
        ])

        attempt = self.engine.dispatch(order, source)

        self.assertEqual(attempt.driver_id, "standard-mid")
        self.assertEqual(
            sorted(call[2] for call in source.search_calls),
            ["eco", "standard"],
        )

    def test_rating_breaks_distance_ties_deterministically(self):
        candidates = [
            driver("west", east(-2), rating=4.2),
            driver("east", east(2), rating=4.8),
        ]
        for _ in range(5):
            order = make_order()
            attempt = self.engine.dispatch(order, InMemoryCandidateSource(candidates))
            self.assertEqual(attempt.driver_id, "east")

    def test_engine_refilters_external_results(self):
        order = make_order()
        source = UnfilteredSource([
            driver("offline", north(1), is_available=False),
            driver("wrong-class", north(1.5), vehicle_class="truck"),
            driver("outside", north(7)),
            driver("ok", north(4)),
        ])

        attempt = self.engine.dispatch(order, source, initial_radius_km=5, max_radius_km=5)

        self.assertEqual(attempt.driver_id, "ok")
        self.assertEqual(attempt.candidate_count, 1)

    def test_refused_reservation_falls_through_to_next_candidate(self):
        order = make_order()
        source = ContestedSource(
            [driver("taken", north(1)), driver("free", north(2))],
            taken={"taken"},
        )

        with self.assertLogs("services.matching.dispatch_engine", level="WARNING"):
            attempt = self.engine.dispatch(order, source)

        self.assertEqual(attempt.driver_id, "free")
        self.assertEqual(attempt.reservation_failures, 1)
        self.assertEqual(order.assigned_driver_id, "free")

    def test_all_reservations_refused_exhausts(self):
        order = make_order()
        source = ContestedSource([driver("taken", north(1))], taken={"taken"})

        attempt = self.engine.dispatch(order, source, initial_radius_km=5, max_radius_km=10)

        self.assertIs(attempt.outcome, DispatchOutcome.EXHAUSTED)
        self.assertEqual(attempt.reservation_failures, 1)
        self.assertEqual(order.status, OrderStatus.PENDING)

    def test_driver_reserved_by_other_order_is_skipped(self):
        source = InMemoryCandidateSource([driver("drv-1", north(1)), driver("drv-2", north(3))])
        first = make_order()
        second = make_order()

        self.assertEqual(self.engine.dispatch(first, source).driver_id, "drv-1")
        self.assertEqual(self.engine.dispatch(second, source).driver_id, "drv-2")

    def test_confirmed_orders_are_dispatchable(self):
        order = make_order(status=OrderStatus.CONFIRMED)
        attempt = self.engine.dispatch(order, InMemoryCandidateSource([driver("drv-1", north(1))]))
        self.assertTrue(attempt.matched)

    def test_rejects_orders_not_awaiting_dispatch(self):
        for status in (OrderStatus.DRIVER_ASSIGNED, OrderStatus.DELIVERED, OrderStatus.CANCELLED):
            with self.subTest(status=status):
                source = InMemoryCandidateSource([driver("drv-1", north(1))])
                with self.assertRaises(InvalidOrderStatusError):
                    self.engine.dispatch(make_order(status=status), source)
                self.assertEqual(source.search_calls, [])

    def test_unknown_tier_fails_before_searching(self):
        source = InMemoryCandidateSource()
        with self.assertRaises(NoCompatibleVehicleClassError):
            self.engine.dispatch(make_order(tier="hovercraft"), source)
        self.assertEqual(source.search_calls, [])

    def test_reservation_released_when_assignment_fails(self):
        machine = Mock()
        machine.transition.side_effect = TerminalStateError("Order was cancelled")
        engine = DispatchEngine(machine)
        order = make_order()
        source = InMemoryCandidateSource([driver("drv-1", north(1))])

        with self.assertRaises(TerminalStateError):
            engine.dispatch(order, source)

        self.assertIsNone(source.reserved_by("drv-1"))

    def test_expand_search_continues_attempt_counter(self):
        order = make_order()
        source = InMemoryCandidateSource([driver("drv-far", north(28))])

        first = self.engine.dispatch(order, source, initial_radius_km=5, max_radius_km=25, radius_step_km=5)
        second = self.engine.expand_search(order, source, first, radius_step_km=5)

        self.assertIs(first.outcome, DispatchOutcome.EXHAUSTED)
        self.assertTrue(second.matched)
        self.assertEqual(second.radii_km, (30.0,))
        self.assertEqual(second.attempt_count, 6)
        self.assertEqual(order.assigned_driver_id, "drv-far")
        self.assertEqual(len(self.attempts()), 2)

    def test_expand_search_up_to_new_cap(self):
        order = make_order()
        source = InMemoryCandidateSource()
        first = self.engine.dispatch(order, source, initial_radius_km=5, max_radius_km=10)

        second = self.engine.expand_search(order, source, first, radius_step_km=5, max_radius_km=25)

        self.assertEqual(second.radii_km, (15.0, 20.0, 25.0))
        self.assertEqual(second.attempt_count, 5)

    def test_expand_search_rejects_foreign_attempt(self):
        order = make_order()
        other = DispatchAttempt(
            order_id="someone-else", radius_km=5.0, candidate_count=0,
            outcome=DispatchOutcome.EXHAUSTED, elapsed_seconds=0.0,
        )
        with self.assertRaises(ValueError):
            self.engine.expand_search(order, InMemoryCandidateSource(), other)

    def test_elapsed_seconds_uses_injected_clock(self):
        ticks = iter([100.0, 100.25])
        engine = DispatchEngine(self.machine, clock=lambda: next(ticks))
        attempt = engine.dispatch(make_order(), InMemoryCandidateSource(), max_radius_km=5)
        self.assertEqual(attempt.elapsed_seconds, 0.25)
        self.assertEqual(attempt.as_dict()["outcome"], "exhausted")


class InMemoryCandidateSourceTests(SimpleTestCase):
    def test_reserve_is_idempotent_per_order(self):
        source = InMemoryCandidateSource([driver("drv-1", north(1))])
        self.assertTrue(source.reserve("drv-1", "order-a"))
        self.assertTrue(source.reserve("drv-1", "order-a"))
        self.assertFalse(source.reserve("drv-1", "order-b"))

    def test_release_only_by_holder(self):
        source = InMemoryCandidateSource([driver("drv-1", north(1))])
        source.reserve("drv-1", "order-a")
        self.assertFalse(source.release("drv-1", "order-b"))
        self.assertTrue(source.release("drv-1", "order-a"))
        self.assertTrue(source.reserve("drv-1", "order-b"))

    def test_unavailable_or_unknown_driver(self):
        source = InMemoryCandidateSource([driver("drv-off", north(1), is_available=False)])
        self.assertFalse(source.reserve("drv-off", "order-a"))
        self.assertFalse(source.reserve("nobody", "order-a"))
