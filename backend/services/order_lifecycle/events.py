"""
Domain events and a minimal in-process publish interface.

The state machine publishes one DomainEvent per committed transition; the
dispatch engine publishes DispatchAttempt outcomes on the same bus.
Consumers (notifications, chat, tracking, audit log) subscribe independently.
Publishing is fire-and-forget: a failing subscriber is logged and skipped.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .models import OrderStatus

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], None]


@dataclass(frozen=True)
class DomainEvent:
    """Emitted after an order transition has been committed."""
    order_id: str
    from_status: OrderStatus
    to_status: OrderStatus
    actor: str
    at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "actor": self.actor,
            "at": self.at.isoformat(),
            "metadata": dict(self.metadata),
        }


class EventBus:
    """Thread-safe list of subscribers called synchronously on publish."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that removes it again."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Any) -> int:
        """
        Deliver an event to every subscriber.

        Returns:
            Number of subscribers that handled the event without raising
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for callback in subscribers:
            try:
                callback(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Event subscriber %r failed for %s", callback, type(event).__name__
                )
        return delivered

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)


def publish_safely(publisher: Optional[Any], event: Any) -> None:
    """Publish to an optional publisher, never letting a sink failure escape."""
    if publisher is None:
        return
    try:
        publisher.publish(event)
    except Exception:
        logger.exception("Failed to publish %s", type(event).__name__)
