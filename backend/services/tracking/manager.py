"""
Opens and closes tracking sessions from order lifecycle events.

Subscribed to the event bus: driver_assigned opens a session and binds it to
the driver's location feed; delivered/cancelled closes it and drops the
feed subscription. Other transitions are mirrored onto the session's order.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from services.order_lifecycle.events import DomainEvent
from services.order_lifecycle.models import Order, OrderStatus

from .exceptions import SessionClosedError
from .samples import PositionSample
from .session import TrackingSession

logger = logging.getLogger(__name__)


class TrackingManager:
    """
    Args:
        location_feed: Feed with `subscribe(driver_id, callback)`
        event_bus: Optional bus to subscribe to for lifecycle events
        order_loader: Callable order_id -> Order, used when a driver_assigned
            event arrives for an order that was not opened explicitly
        snapshot_listener: Optional callback subscribed to every opened session
        session_options: Keyword arguments passed to every TrackingSession
    """

    def __init__(
        self,
        location_feed,
        event_bus: Any = None,
        order_loader: Optional[Callable[[str], Order]] = None,
        snapshot_listener: Optional[Callable[[Any], None]] = None,
        **session_options,
    ):
        self.location_feed = location_feed
        self.order_loader = order_loader
        self.snapshot_listener = snapshot_listener
        self.session_options = session_options
        self._sessions: Dict[str, TrackingSession] = {}
        self._unsubscribers: Dict[str, Callable[[], None]] = {}
        self._lock = threading.RLock()
        if event_bus is not None:
            event_bus.subscribe(self.handle_event)

    def open_session(self, order: Order, driver_id: Optional[str] = None) -> TrackingSession:
        """
        Start tracking an assigned order. Re-opening returns the live session.

        Raises:
            SessionClosedError: Order is already delivered or cancelled
            ValueError: No driver to bind to
        """
        if order.is_terminal:
            raise SessionClosedError(f"Order {order.order_id} is {order.status.value}")
        driver_id = driver_id or order.assigned_driver_id
        if not driver_id:
            raise ValueError(f"Order {order.order_id} has no assigned driver")

        with self._lock:
            existing = self._sessions.get(order.order_id)
            if existing is not None and not existing.is_closed:
                return existing

            session = TrackingSession(order, driver_id, **self.session_options)
            if self.snapshot_listener is not None:
                session.subscribe(self.snapshot_listener)
            self._sessions[order.order_id] = session
            self._unsubscribers[order.order_id] = self.location_feed.subscribe(
                session.driver_id, self._feed_handler(session)
            )

        logger.info("Tracking session opened for order %s (driver %s)", order.order_id, driver_id)
        return session

    def close_session(self, order_id: str) -> Optional[TrackingSession]:
        with self._lock:
            session = self._sessions.pop(order_id, None)
            unsubscribe = self._unsubscribers.pop(order_id, None)
        if unsubscribe is not None:
            unsubscribe()
        if session is not None:
            session.close()
        return session

    def get_session(self, order_id: str) -> Optional[TrackingSession]:
        with self._lock:
            return self._sessions.get(order_id)

    def open_sessions(self) -> List[TrackingSession]:
        with self._lock:
            return list(self._sessions.values())

    def handle_event(self, event: Any) -> None:
        """Event bus subscriber; ignores anything that is not a DomainEvent."""
        if not isinstance(event, DomainEvent):
            return

        if event.to_status is OrderStatus.DRIVER_ASSIGNED:
            self._open_from_event(event)
            return

        session = self.get_session(event.order_id)
        if session is None:
            return
        session.sync_status(event.to_status, event.at)
        if event.to_status.is_terminal:
            self.close_session(event.order_id)

    def _open_from_event(self, event: DomainEvent) -> None:
        if self.get_session(event.order_id) is not None:
            return
        if self.order_loader is None:
            logger.warning(
                "No order loader configured; cannot open tracking for order %s", event.order_id
            )
            return
        order = self.order_loader(event.order_id)
        self.open_session(order, event.metadata.get("driver_id"))

    def _feed_handler(self, session: TrackingSession) -> Callable[[PositionSample], None]:
        def handle(sample: PositionSample):
            try:
                session.push_sample(sample)
            except SessionClosedError:
                self.close_session(session.order_id)

        return handle
