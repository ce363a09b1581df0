"""
Order operations used by the HTTP API, Celery tasks and management commands.

Each function loads the order under a row lock, runs the core state
machine / dispatch engine from services.runtime, and returns the updated
in-memory Order (plus the DispatchAttempt where one was made).
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from django.db import transaction

from services.matching import DISPATCHABLE_STATUSES, DispatchAttempt, DispatchError
from services.order_lifecycle import Order, OrderLifecycleError, OrderStatus
from services.runtime import (
    get_candidate_source,
    get_dispatch_config,
    get_dispatch_engine,
    get_state_machine,
    get_tracking_manager,
)

from .repository import DjangoOrderRepository

logger = logging.getLogger(__name__)

TRACKABLE_STATUSES = frozenset({
    OrderStatus.DRIVER_ASSIGNED,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
})


class DispatchNotStartedError(Exception):
    """Raised when a search is expanded for an order that was never dispatched."""
    pass


def _radius_settings(**overrides) -> Dict[str, float]:
    config = get_dispatch_config()
    radii = {
        "initial_radius_km": float(config["INITIAL_RADIUS_KM"]),
        "max_radius_km": float(config["MAX_RADIUS_KM"]),
        "radius_step_km": float(config["RADIUS_STEP_KM"]),
    }
    radii.update({key: float(value) for key, value in overrides.items() if value is not None})
    return radii


def dispatch_order(
    order_id: str,
    initial_radius_km: Optional[float] = None,
    max_radius_km: Optional[float] = None,
    radius_step_km: Optional[float] = None,
    actor: str = "dispatcher",
    attempt_offset: int = 0,
) -> Tuple[Order, DispatchAttempt]:
    """
    Run one growing-radius search for an order; defaults come from DISPATCH_CONFIG.

    attempt_offset is the number of rounds already searched for this order.
    """
    radii = _radius_settings(
        initial_radius_km=initial_radius_km,
        max_radius_km=max_radius_km,
        radius_step_km=radius_step_km,
    )
    with transaction.atomic():
        order = DjangoOrderRepository().load_order(order_id, for_update=True)
        attempt = get_dispatch_engine().dispatch(
            order, get_candidate_source(), actor=actor, attempt_offset=attempt_offset, **radii
        )
    return order, attempt


def expand_order_search(
    order_id: str,
    radius_step_km: Optional[float] = None,
    max_radius_km: Optional[float] = None,
    actor: str = "dispatcher",
) -> Tuple[Order, DispatchAttempt]:
    """
    Widen the last logged search by one step (or up to max_radius_km).

    Raises:
        DispatchNotStartedError: No attempt has been logged for the order
    """
    repository = DjangoOrderRepository()
    previous = repository.latest_attempt(order_id)
    if previous is None:
        raise DispatchNotStartedError(f"Order {order_id} has not been dispatched yet")

    step = radius_step_km if radius_step_km is not None else get_dispatch_config()["RADIUS_STEP_KM"]
    with transaction.atomic():
        order = repository.load_order(order_id, for_update=True)
        attempt = get_dispatch_engine().expand_search(
            order,
            get_candidate_source(),
            previous,
            radius_step_km=float(step),
            max_radius_km=max_radius_km,
            actor=actor,
        )
    return order, attempt


def transition_order(
    order_id: str,
    target_status,
    actor: str = "system",
    reason: Any = None,
    note: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Order:
    """Any lifecycle step except driver assignment, which goes through dispatch_order."""
    with transaction.atomic():
        order = DjangoOrderRepository().load_order(order_id, for_update=True)
        return get_state_machine().transition(
            order,
            target_status,
            actor,
            metadata,
            reason=reason,
            reason_note=note,
        )


def cancel_order(order_id: str, reason: Any, actor: str = "customer", note: Optional[str] = None) -> Order:
    with transaction.atomic():
        order = DjangoOrderRepository().load_order(order_id, for_update=True)
        return get_state_machine().cancel(order, reason, actor=actor, note=note)


def tracking_snapshot(order_id: str) -> Optional[Dict[str, Any]]:
    """
    Current tracking snapshot for an order, opening a session if the order
    is underway but this process has none yet. None when not trackable.
    """
    manager = get_tracking_manager()
    session = manager.get_session(order_id)
    if session is None or session.is_closed:
        order = DjangoOrderRepository().load_order(order_id)
        if order.status not in TRACKABLE_STATUSES:
            return None
        session = manager.open_session(order)
    return session.snapshot().as_dict()


def sweep_pending_orders(limit: int = 50) -> List[DispatchAttempt]:
    """Dispatch every pending/confirmed order, oldest first."""
    attempts = []
    for order in DjangoOrderRepository().list_dispatchable(limit=limit):
        if order.status not in DISPATCHABLE_STATUSES:
            continue
        try:
            _, attempt = dispatch_order(order.order_id)
        except (DispatchError, OrderLifecycleError) as e:
            logger.warning("Skipping order %s in sweep: %s", order.order_id, e)
            continue
        attempts.append(attempt)
    return attempts
