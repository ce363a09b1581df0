"""
Canonical lifecycle for transport and delivery orders.

    pending -> confirmed -> driver_assigned -> picked_up -> in_transit -> delivered
    (any non-terminal state) -> cancelled

Transitions on the same order are serialized with a per-order lock; different
orders never contend. Each committed transition stamps the matching `*_at`
field, is saved through the optional repository and then published as a
DomainEvent.
"""

import copy
import logging
import threading
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple, Union

from .events import DomainEvent, publish_safely
from .exceptions import InvalidTransitionError, MissingReasonError, TerminalStateError
from .models import (
    CancellationReason,
    Order,
    OrderStatus,
    STATUS_TIMESTAMP_FIELDS,
    utcnow,
)

logger = logging.getLogger(__name__)


_FORWARD_EDGES = {
    OrderStatus.PENDING: OrderStatus.CONFIRMED,
    OrderStatus.CONFIRMED: OrderStatus.DRIVER_ASSIGNED,
    OrderStatus.DRIVER_ASSIGNED: OrderStatus.PICKED_UP,
    OrderStatus.PICKED_UP: OrderStatus.IN_TRANSIT,
    OrderStatus.IN_TRANSIT: OrderStatus.DELIVERED,
}

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    status: frozenset({forward, OrderStatus.CANCELLED})
    for status, forward in _FORWARD_EDGES.items()
}
TRANSITIONS[OrderStatus.DELIVERED] = frozenset()
TRANSITIONS[OrderStatus.CANCELLED] = frozenset()


def allowed_targets(status: Union[OrderStatus, str]) -> FrozenSet[OrderStatus]:
    """Statuses reachable from `status` in a single transition."""
    return TRANSITIONS[OrderStatus(status)]


def resolve_cancellation_reason(reason: Any, note: Optional[str] = None) -> Tuple[CancellationReason, str]:
    """
    Turn a caller-supplied reason into (code, text).

    A known code is stored with its label (or `note` when given). Any other
    non-empty string is kept verbatim under the `other` code. `other`
    itself needs free text.

    Raises:
        MissingReasonError: If no usable reason was given
    """
    if isinstance(reason, str):
        reason = reason.strip()
    if not reason:
        raise MissingReasonError("A cancellation reason is required")

    try:
        code = CancellationReason(reason)
    except ValueError:
        return CancellationReason.OTHER, str(reason)

    note = (note or "").strip()
    if code is CancellationReason.OTHER:
        if not note:
            raise MissingReasonError("Cancellation reason 'other' requires a description")
        return code, note
    return code, note or code.label


class OrderStateMachine:
    """
    Validates and applies order status transitions.

    Args:
        publisher: Optional object with `publish(event)`; receives DomainEvents
        repository: Optional persistence collaborator with `save_order(order)`
        clock: Callable returning the aware datetime used for `*_at` stamps
    """

    def __init__(
        self,
        publisher: Any = None,
        repository: Any = None,
        clock: Callable = utcnow,
    ):
        self.publisher = publisher
        self.repository = repository
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, order_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(order_id)
            if lock is None:
                lock = self._locks[order_id] = threading.Lock()
            return lock

    def _forget_lock(self, order_id: str) -> None:
        # Terminal orders never transition again
        with self._locks_guard:
            self._locks.pop(order_id, None)

    def transition(
        self,
        order: Order,
        target_status: Union[OrderStatus, str],
        actor: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
        *,
        reason: Any = None,
        reason_note: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> Order:
        """
        Move `order` to `target_status`.

        Args:
            order: Order to mutate in place
            target_status: OrderStatus or its string value
            actor: Who requested the change (user id, "dispatcher", ...)
            metadata: Extra data carried on the emitted event
            reason: Cancellation reason code or free text (cancel only)
            reason_note: Free text accompanying a reason code
            driver_id: Driver being assigned (driver_assigned only)

        Returns:
            The same order instance, updated

        Raises:
            TerminalStateError: Order is already delivered or cancelled
            InvalidTransitionError: Edge is not part of the lifecycle
            MissingReasonError: Cancellation without a usable reason
        """
        metadata = dict(metadata or {})

        with self._lock_for(order.order_id):
            from_status = order.status
            try:
                target = self._validate(order, target_status, driver_id)
            except TerminalStateError:
                self._forget_lock(order.order_id)
                raise

            cancellation = None
            if target is OrderStatus.CANCELLED:
                try:
                    cancellation = resolve_cancellation_reason(reason, reason_note)
                except MissingReasonError as exc:
                    exc.order_id = order.order_id
                    raise

            previous = copy.copy(order)
            at = self.clock()

            order.status = target
            setattr(order, STATUS_TIMESTAMP_FIELDS[target], at)
            order.updated_at = at
            if target is OrderStatus.DRIVER_ASSIGNED:
                order.assigned_driver_id = str(driver_id)
                metadata.setdefault("driver_id", order.assigned_driver_id)
            if cancellation is not None:
                order.cancellation_code, order.cancellation_reason = cancellation
                metadata.setdefault("reason_code", order.cancellation_code.value)
                metadata.setdefault("reason", order.cancellation_reason)

            if self.repository is not None:
                try:
                    self.repository.save_order(order)
                except Exception:
                    order.__dict__.update(previous.__dict__)
                    logger.exception(
                        "Failed to persist transition %s -> %s for order %s",
                        from_status.value, target.value, order.order_id,
                    )
                    raise

        if target.is_terminal:
            self._forget_lock(order.order_id)

        logger.info(
            "Order %s: %s -> %s by %s",
            order.order_id, from_status.value, target.value, actor,
        )

        event = DomainEvent(
            order_id=order.order_id,
            from_status=from_status,
            to_status=target,
            actor=actor,
            at=at,
            metadata=metadata,
        )
        publish_safely(self.publisher, event)
        return order

    def _validate(
        self,
        order: Order,
        target_status: Union[OrderStatus, str],
        driver_id: Optional[str],
    ) -> OrderStatus:
        if order.status.is_terminal:
            raise TerminalStateError(
                f"Order {order.order_id} is {order.status.value}; no further transitions allowed",
                order_id=order.order_id,
            )

        try:
            target = OrderStatus(target_status)
        except ValueError:
            raise InvalidTransitionError(
                f"Unknown order status: {target_status!r}", order_id=order.order_id
            )

        if target not in TRANSITIONS[order.status]:
            raise InvalidTransitionError(
                f"Cannot move order {order.order_id} from {order.status.value} to {target.value}",
                order_id=order.order_id,
            )

        if target is OrderStatus.DRIVER_ASSIGNED and not driver_id:
            raise InvalidTransitionError(
                "Assigning a driver requires a driver_id", order_id=order.order_id
            )
        return target

    # ---------------------- Convenience wrappers ----------------------

    def confirm(self, order: Order, actor: str = "system", metadata=None) -> Order:
        return self.transition(order, OrderStatus.CONFIRMED, actor, metadata)

    def assign_driver(self, order: Order, driver_id: str, actor: str = "dispatcher", metadata=None) -> Order:
        return self.transition(order, OrderStatus.DRIVER_ASSIGNED, actor, metadata, driver_id=driver_id)

    def mark_picked_up(self, order: Order, actor: str = "driver", metadata=None) -> Order:
        return self.transition(order, OrderStatus.PICKED_UP, actor, metadata)

    def mark_in_transit(self, order: Order, actor: str = "driver", metadata=None) -> Order:
        return self.transition(order, OrderStatus.IN_TRANSIT, actor, metadata)

    def mark_delivered(self, order: Order, actor: str = "driver", metadata=None) -> Order:
        return self.transition(order, OrderStatus.DELIVERED, actor, metadata)

    def cancel(self, order: Order, reason: Any, actor: str = "customer", note: Optional[str] = None, metadata=None) -> Order:
        return self.transition(
            order, OrderStatus.CANCELLED, actor, metadata, reason=reason, reason_note=note
        )
