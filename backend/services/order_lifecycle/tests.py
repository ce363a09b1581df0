import threading
from datetime import datetime, timedelta, timezone

from django.test import SimpleTestCase

from services.order_lifecycle import (
    CancellationReason,
    DomainEvent,
    EventBus,
    InvalidTransitionError,
    MissingReasonError,
    Order,
    OrderKind,
    OrderStateMachine,
    OrderStatus,
    TerminalStateError,
    allowed_targets,
    resolve_cancellation_reason,
)

START = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class StepClock:
    """Returns START, START+1s, START+2s, ..."""

    def __init__(self):
        self.calls = 0

    def __call__(self):
        value = START + timedelta(seconds=self.calls)
        self.calls += 1
        return value


class RecordingRepository:
    def __init__(self, fail=False):
        self.saved = []
        self.fail = fail

    def save_order(self, order):
        if self.fail:
            raise RuntimeError("database unavailable")
        self.saved.append((order.order_id, order.status))


def make_order(status=OrderStatus.PENDING, **kwargs):
    return Order(
        kind=OrderKind.DELIVERY,
        service_tier="flash",
        pickup_point=(28.6139, 77.2090),
        destination_point=(28.5245, 77.1855),
        status=status,
        **kwargs,
    )


class OrderValueTests(SimpleTestCase):
    def test_defaults(self):
        order = make_order()
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(len(order.order_id), 32)
        self.assertIsNotNone(order.created_at)
        self.assertEqual(order.status_changed_at, order.created_at)

    def test_coerces_strings(self):
        order = Order(kind="transport", service_tier="eco", pickup_point=("1", "2"),
                      destination_point=(3, 4), status="confirmed")
        self.assertIs(order.kind, OrderKind.TRANSPORT)
        self.assertIs(order.status, OrderStatus.CONFIRMED)
        self.assertEqual(order.pickup_point.lat, 1.0)

    def test_to_dict_is_json_ready(self):
        data = make_order().to_dict()
        self.assertEqual(data["status"], "pending")
        self.assertEqual(data["kind"], "delivery")
        self.assertEqual(data["pickup_point"], {"lat": 28.6139, "lng": 77.2090})
        self.assertIsInstance(data["created_at"], str)
        self.assertIsNone(data["delivered_at"])


class TransitionTableTests(SimpleTestCase):
    def test_forward_edges_and_cancel(self):
        self.assertEqual(
            allowed_targets(OrderStatus.PENDING),
            {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
        )
        self.assertEqual(
            allowed_targets("in_transit"),
            {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
        )
        self.assertEqual(allowed_targets(OrderStatus.DELIVERED), frozenset())


class OrderStateMachineTests(SimpleTestCase):
    def setUp(self):
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(self.events.append)
        self.machine = OrderStateMachine(publisher=self.bus, clock=StepClock())

    def test_full_happy_path_stamps_every_timestamp(self):
        order = make_order()
        self.machine.confirm(order)
        self.machine.assign_driver(order, "drv-1")
        self.machine.mark_picked_up(order)
        self.machine.mark_in_transit(order)
        self.machine.mark_delivered(order)

        self.assertEqual(order.status, OrderStatus.DELIVERED)
        self.assertEqual(order.assigned_driver_id, "drv-1")
        self.assertEqual(order.confirmed_at, START)
        self.assertEqual(order.assigned_at, START + timedelta(seconds=1))
        self.assertEqual(order.picked_up_at, START + timedelta(seconds=2))
        self.assertEqual(order.in_transit_at, START + timedelta(seconds=3))
        self.assertEqual(order.delivered_at, START + timedelta(seconds=4))
        self.assertEqual(order.updated_at, order.delivered_at)
        self.assertEqual(
            [(e.from_status, e.to_status) for e in self.events],
            [
                (OrderStatus.PENDING, OrderStatus.CONFIRMED),
                (OrderStatus.CONFIRMED, OrderStatus.DRIVER_ASSIGNED),
                (OrderStatus.DRIVER_ASSIGNED, OrderStatus.PICKED_UP),
                (OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT),
                (OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED),
            ],
        )

    def test_event_carries_actor_time_and_metadata(self):
        order = make_order(status=OrderStatus.CONFIRMED)
        self.machine.transition(order, "driver_assigned", "dispatcher", {"radius_km": 5.0}, driver_id="drv-9")

        event = self.events[0]
        self.assertIsInstance(event, DomainEvent)
        self.assertEqual(event.order_id, order.order_id)
        self.assertEqual(event.actor, "dispatcher")
        self.assertEqual(event.at, order.assigned_at)
        self.assertEqual(event.metadata, {"radius_km": 5.0, "driver_id": "drv-9"})
        self.assertEqual(event.as_dict()["to_status"], "driver_assigned")

    def test_illegal_edge_leaves_order_untouched(self):
        order = make_order()
        with self.assertRaises(InvalidTransitionError):
            self.machine.transition(order, OrderStatus.DELIVERED)
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertIsNone(order.delivered_at)
        self.assertEqual(self.events, [])

    def test_pending_can_not_skip_to_driver_assigned(self):
        order = make_order()
        with self.assertRaises(InvalidTransitionError):
            self.machine.transition(order, OrderStatus.DRIVER_ASSIGNED, driver_id="drv-1")

    def test_unknown_status_string(self):
        with self.assertRaises(InvalidTransitionError):
            self.machine.transition(make_order(), "teleported")

    def test_assignment_requires_driver(self):
        order = make_order(status=OrderStatus.CONFIRMED)
        with self.assertRaises(InvalidTransitionError):
            self.machine.transition(order, OrderStatus.DRIVER_ASSIGNED)
        self.assertEqual(order.status, OrderStatus.CONFIRMED)

    def test_terminal_states_are_closed(self):
        for terminal in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
            for target in OrderStatus:
                with self.subTest(terminal=terminal, target=target):
                    order = make_order(status=terminal)
                    with self.assertRaises(TerminalStateError):
                        self.machine.transition(order, target, reason="timeout", driver_id="drv-1")
                    self.assertEqual(order.status, terminal)
        self.assertEqual(self.events, [])

    def test_cancel_in_transit_needs_reason(self):
        order = make_order(status=OrderStatus.IN_TRANSIT)

        with self.assertRaises(MissingReasonError) as ctx:
            self.machine.transition(order, OrderStatus.CANCELLED, reason=None)
        self.assertEqual(ctx.exception.order_id, order.order_id)
        self.assertEqual(order.status, OrderStatus.IN_TRANSIT)

        self.machine.transition(order, OrderStatus.CANCELLED, reason="wrong_address")
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertIsNotNone(order.cancelled_at)
        self.assertIs(order.cancellation_code, CancellationReason.WRONG_ADDRESS)
        self.assertEqual(order.cancellation_reason, CancellationReason.WRONG_ADDRESS.label)

        with self.assertRaises(TerminalStateError):
            self.machine.transition(order, OrderStatus.DELIVERED)

    def test_cancel_from_every_active_state(self):
        for status in (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.DRIVER_ASSIGNED,
                       OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT):
            with self.subTest(status=status):
                order = make_order(status=status)
                self.machine.cancel(order, "customer_request")
                self.assertEqual(order.status, OrderStatus.CANCELLED)

    def test_cancel_event_metadata(self):
        order = make_order()
        self.machine.cancel(order, "Found another courier", actor="cust-1")
        event = self.events[-1]
        self.assertEqual(event.metadata["reason_code"], "other")
        self.assertEqual(event.metadata["reason"], "Found another courier")
        self.assertEqual(event.actor, "cust-1")

    def test_failing_subscriber_does_not_block_transition(self):
        def broken(event):
            raise RuntimeError("push service down")

        self.bus.subscribe(broken)
        order = make_order()
        with self.assertLogs("services.order_lifecycle.events", level="ERROR"):
            self.machine.confirm(order)
        self.assertEqual(order.status, OrderStatus.CONFIRMED)
        self.assertEqual(len(self.events), 1)


class CancellationReasonTests(SimpleTestCase):
    def test_known_code_uses_label(self):
        self.assertEqual(
            resolve_cancellation_reason("no_show"),
            (CancellationReason.NO_SHOW, "Customer did not show up"),
        )

    def test_known_code_with_note(self):
        self.assertEqual(
            resolve_cancellation_reason(CancellationReason.VEHICLE_ISSUE, "Flat tyre"),
            (CancellationReason.VEHICLE_ISSUE, "Flat tyre"),
        )

    def test_free_text_maps_to_other(self):
        self.assertEqual(
            resolve_cancellation_reason("  changed my mind  "),
            (CancellationReason.OTHER, "changed my mind"),
        )

    def test_other_needs_description(self):
        with self.assertRaises(MissingReasonError):
            resolve_cancellation_reason("other")
        self.assertEqual(
            resolve_cancellation_reason("other", "Gate closed"),
            (CancellationReason.OTHER, "Gate closed"),
        )

    def test_blank_reason(self):
        for reason in (None, "", "   "):
            with self.subTest(reason=reason):
                with self.assertRaises(MissingReasonError):
                    resolve_cancellation_reason(reason)


class PersistenceTests(SimpleTestCase):
    def test_saves_each_transition(self):
        repository = RecordingRepository()
        machine = OrderStateMachine(repository=repository)
        order = make_order()
        machine.confirm(order)
        machine.cancel(order, "timeout")
        self.assertEqual(
            repository.saved,
            [(order.order_id, OrderStatus.CONFIRMED), (order.order_id, OrderStatus.CANCELLED)],
        )

    def test_failed_save_rolls_back_and_publishes_nothing(self):
        bus = EventBus()
        events = []
        bus.subscribe(events.append)
        machine = OrderStateMachine(publisher=bus, repository=RecordingRepository(fail=True))
        order = make_order(status=OrderStatus.CONFIRMED)

        with self.assertLogs("services.order_lifecycle.state_machine", level="ERROR"):
            with self.assertRaises(RuntimeError):
                machine.assign_driver(order, "drv-1")

        self.assertEqual(order.status, OrderStatus.CONFIRMED)
        self.assertIsNone(order.assigned_driver_id)
        self.assertIsNone(order.assigned_at)
        self.assertEqual(events, [])


class ConcurrencyTests(SimpleTestCase):
    def test_concurrent_transitions_on_one_order_apply_once(self):
        machine = OrderStateMachine()
        order = make_order()
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                machine.confirm(order)
                results.append("ok")
            except InvalidTransitionError:
                results.append("rejected")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count("ok"), 1)
        self.assertEqual(results.count("rejected"), 7)
        self.assertEqual(order.status, OrderStatus.CONFIRMED)

    def test_finished_orders_drop_their_lock(self):
        machine = OrderStateMachine()
        orders = [make_order() for _ in range(50)]
        for order in orders[:25]:
            machine.confirm(order)
            machine.cancel(order, "customer_request")
        for order in orders[25:]:
            machine.confirm(order)

        self.assertEqual(len(machine._locks), 25)

        with self.assertRaises(TerminalStateError):
            machine.cancel(orders[0], "timeout")
        self.assertNotIn(orders[0].order_id, machine._locks)

    def test_bus_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        self.assertEqual(bus.publish("one"), 1)
        unsubscribe()
        self.assertEqual(bus.publish("two"), 0)
        self.assertEqual(seen, ["one"])
        self.assertEqual(len(bus), 0)
