"""
Process-wide wiring of the dispatch/tracking core.

Builds the shared event bus, state machine, dispatch engine, location feed
and tracking manager on first use, configured from settings.DISPATCH_CONFIG.
The core classes themselves take every collaborator as an argument; this
module only decides which concrete collaborators a running server uses.
"""

import logging
import threading
from functools import partial
from typing import Any, Callable, Dict, Optional

from django.conf import settings
from django.db import transaction

from services.matching import DispatchEngine
from services.order_lifecycle import DomainEvent, EventBus, OrderStateMachine, OrderStatus
from services.tracking import InMemoryLocationFeed, TrackingManager

logger = logging.getLogger(__name__)


# ---------------------- Configuration ----------------------

DEFAULT_DISPATCH_CONFIG = {
    # Radius expansion (km)
    "INITIAL_RADIUS_KM": 5.0,
    "MAX_RADIUS_KM": 25.0,
    "RADIUS_STEP_KM": 5.0,

    # Tracking display estimates
    "ASSUMED_SPEED_KMH": 30.0,         # City average used for ETA
    "STALENESS_WINDOW_SECONDS": 30.0,  # Snapshot goes stale after this gap
    "SMOOTHER_MIN_DURATION_SECONDS": 0.5,
    "SMOOTHER_MAX_DURATION_SECONDS": 2.0,

    # Candidate source
    "CANDIDATE_SOURCE": "database",    # "database" or "redis"
    "RESERVATION_TTL_SECONDS": 300,    # Redis reservation key lifetime

    # Background retry
    "REDISPATCH_COUNTDOWN_SECONDS": 30,
}


def get_dispatch_config() -> Dict[str, Any]:
    """Defaults overlaid with settings.DISPATCH_CONFIG (when Django is configured)."""
    config = dict(DEFAULT_DISPATCH_CONFIG)
    if settings.configured:
        config.update(getattr(settings, "DISPATCH_CONFIG", {}) or {})
    return config


# ---------------------- Publishing ----------------------

class OnCommitPublisher:
    """
    Publisher handed to the state machine and the dispatch engine.

    `recorder` (the audit log) runs inside the caller's transaction and rolls
    back with it. Bus subscribers only see events once that transaction
    commits; outside an atomic block they run immediately.
    """

    def __init__(self, bus: EventBus, recorder: Optional[Callable[[Any], None]] = None):
        self.bus = bus
        self.recorder = recorder

    def publish(self, event: Any) -> None:
        if self.recorder is not None:
            self.recorder(event)
        transaction.on_commit(partial(self.bus.publish, event))


def get_publisher() -> OnCommitPublisher:
    from orders.repository import record_event
    return OnCommitPublisher(get_event_bus(), recorder=record_event)


# ---------------------- Singleton Instances ----------------------

_lock = threading.RLock()
_event_bus: Optional[EventBus] = None
_state_machine: Optional[OrderStateMachine] = None
_dispatch_engine: Optional[DispatchEngine] = None
_location_feed: Optional[InMemoryLocationFeed] = None
_tracking_manager: Optional[TrackingManager] = None


def get_event_bus() -> EventBus:
    """Get singleton EventBus with the reservation hooks and websocket notifier attached."""
    global _event_bus
    with _lock:
        if _event_bus is None:
            _event_bus = EventBus()
            _install_default_subscribers(_event_bus)
        return _event_bus


def get_state_machine() -> OrderStateMachine:
    """Get singleton OrderStateMachine persisting through the Django repository."""
    global _state_machine
    with _lock:
        if _state_machine is None:
            from orders.repository import DjangoOrderRepository
            _state_machine = OrderStateMachine(
                publisher=get_publisher(),
                repository=DjangoOrderRepository(),
            )
            # Tracking listens for driver_assigned before the first transition
            get_tracking_manager()
        return _state_machine


def get_dispatch_engine() -> DispatchEngine:
    """Get singleton DispatchEngine."""
    global _dispatch_engine
    with _lock:
        if _dispatch_engine is None:
            _dispatch_engine = DispatchEngine(get_state_machine(), publisher=get_publisher())
        return _dispatch_engine


def get_location_feed() -> InMemoryLocationFeed:
    """Get singleton in-process location feed."""
    global _location_feed
    with _lock:
        if _location_feed is None:
            _location_feed = InMemoryLocationFeed()
        return _location_feed


def get_tracking_manager() -> TrackingManager:
    """Get singleton TrackingManager bound to the event bus and location feed."""
    global _tracking_manager
    with _lock:
        if _tracking_manager is None:
            from orders.repository import DjangoOrderRepository
            from realtime.notifications import ChannelLayerNotifier
            config = get_dispatch_config()
            _tracking_manager = TrackingManager(
                get_location_feed(),
                event_bus=get_event_bus(),
                order_loader=DjangoOrderRepository().load_order,
                snapshot_listener=ChannelLayerNotifier().notify_snapshot,
                assumed_speed_kmh=float(config["ASSUMED_SPEED_KMH"]),
                staleness_window_s=float(config["STALENESS_WINDOW_SECONDS"]),
                smoother_options={
                    "min_duration_s": float(config["SMOOTHER_MIN_DURATION_SECONDS"]),
                    "max_duration_s": float(config["SMOOTHER_MAX_DURATION_SECONDS"]),
                },
            )
        return _tracking_manager


def get_candidate_source():
    """Candidate source selected by DISPATCH_CONFIG["CANDIDATE_SOURCE"]."""
    config = get_dispatch_config()
    if config["CANDIDATE_SOURCE"] == "redis":
        from realtime.geo import get_redis_candidate_source
        return get_redis_candidate_source()
    from drivers.services import DatabaseCandidateSource
    return DatabaseCandidateSource()


def reset_runtime() -> None:
    """Drop every singleton (tests and settings changes)."""
    global _event_bus, _state_machine, _dispatch_engine, _location_feed, _tracking_manager
    with _lock:
        _event_bus = None
        _state_machine = None
        _dispatch_engine = None
        _location_feed = None
        _tracking_manager = None


def hold_driver_on_assignment(event: Any) -> None:
    """Keep the reservation of a newly assigned driver until the order finishes."""
    if not isinstance(event, DomainEvent) or event.to_status is not OrderStatus.DRIVER_ASSIGNED:
        return
    hold = getattr(get_candidate_source(), "hold", None)
    if hold is not None and not hold(event.metadata["driver_id"], event.order_id):
        logger.warning(
            "Reservation of driver %s for order %s was gone at assignment",
            event.metadata["driver_id"], event.order_id,
        )


def release_driver_on_completion(event: Any) -> None:
    """Free the reserved driver once an assigned order is delivered or cancelled."""
    from orders.repository import DjangoOrderRepository

    if not isinstance(event, DomainEvent) or not event.to_status.is_terminal:
        return
    order = DjangoOrderRepository().load_order(event.order_id)
    if order.assigned_driver_id:
        get_candidate_source().release(order.assigned_driver_id, order.order_id)
        logger.info("Released driver %s from order %s", order.assigned_driver_id, order.order_id)


def _install_default_subscribers(bus: EventBus) -> None:
    from realtime.notifications import ChannelLayerNotifier

    bus.subscribe(hold_driver_on_assignment)
    bus.subscribe(release_driver_on_completion)
    bus.subscribe(ChannelLayerNotifier())
    logger.debug("Default event subscribers installed")
