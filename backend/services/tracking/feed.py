"""
Location feed contract and an in-process implementation.

The feed pushes PositionSamples keyed by driver id. Tracking sessions
subscribe by driver id once bound; the websocket driver consumer publishes
into the process-wide feed.
"""

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Protocol

from .samples import PositionSample

logger = logging.getLogger(__name__)

SampleCallback = Callable[[PositionSample], None]


class LocationFeed(Protocol):
    def subscribe(self, driver_id: str, callback: SampleCallback) -> Callable[[], None]:
        ...


class InMemoryLocationFeed:
    """Fan-out of samples to callbacks registered per driver id."""

    def __init__(self):
        self._subscribers: Dict[str, List[SampleCallback]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, driver_id: str, callback: SampleCallback) -> Callable[[], None]:
        driver_id = str(driver_id)
        with self._lock:
            self._subscribers[driver_id].append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(driver_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(driver_id, None)

        return unsubscribe

    def publish(self, sample: PositionSample) -> int:
        """Deliver a sample to the driver's subscribers; returns how many handled it."""
        with self._lock:
            callbacks = list(self._subscribers.get(sample.entity_id, ()))

        delivered = 0
        for callback in callbacks:
            try:
                callback(sample)
                delivered += 1
            except Exception:
                logger.exception("Location subscriber failed for driver %s", sample.entity_id)
        return delivered

    def subscriber_count(self, driver_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(str(driver_id), ()))
