"""
Tracking session: one assigned order bound to its driver's position feed.

The session forwards samples to a PositionSmoother and derives the fields a
display or notifier needs (distance remaining, ETA, progress). Displays can
poll `snapshot()` or subscribe to receive a snapshot after every accepted
sample. Missing or stale feed data degrades to `is_stale=True`; it never
fails the session.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from common.utils.geo import distance_km
from services.order_lifecycle.models import Order, OrderStatus, STATUS_TIMESTAMP_FIELDS

from .exceptions import NoSampleAvailableError, SessionClosedError, StaleSampleError
from .samples import PositionSample, TrackingSnapshot, TrajectoryFrame
from .smoother import PositionSmoother

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[TrackingSnapshot], None]


class TrackingSession:
    """
    Args:
        order: The order being tracked (normally driver_assigned or later)
        driver_id: Driver whose samples this session accepts
        smoother: Optional pre-built smoother; one is created for driver_id otherwise
        assumed_speed_kmh: Average speed for the ETA estimate
        staleness_window_s: Seconds without a sample before snapshots go stale
        clock: Monotonic clock shared with the smoother
        smoother_options: Keyword arguments for the smoother built here
    """

    def __init__(
        self,
        order: Order,
        driver_id: str,
        smoother: Optional[PositionSmoother] = None,
        assumed_speed_kmh: float = 30.0,
        staleness_window_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        smoother_options: Optional[dict] = None,
    ):
        if assumed_speed_kmh <= 0:
            raise ValueError("assumed_speed_kmh must be positive")
        if staleness_window_s <= 0:
            raise ValueError("staleness_window_s must be positive")

        self.order = order
        self.driver_id = str(driver_id)
        self.clock = clock
        self.smoother = smoother or PositionSmoother(
            self.driver_id, clock=clock, **(smoother_options or {})
        )
        if self.smoother.entity_id != self.driver_id:
            raise ValueError("Smoother entity does not match the session driver")

        self.assumed_speed_kmh = float(assumed_speed_kmh)
        self.staleness_window_s = float(staleness_window_s)

        self.distance_remaining_km: Optional[float] = None
        self.eta_minutes: Optional[float] = None
        self.progress_fraction: float = 0.0

        self._route_km = distance_km(order.pickup_point, order.destination_point)
        self._last_received_at: Optional[float] = None
        self._closed = False
        self._subscribers: List[SnapshotCallback] = []
        self._lock = threading.Lock()

    @property
    def order_id(self) -> str:
        return self.order.order_id

    @property
    def is_closed(self) -> bool:
        return self._closed or self.order.is_terminal

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            logger.info("Tracking session for order %s closed (%s)", self.order_id, self.order.status.value)

    # ---------------------- Feed input ----------------------

    def push_sample(self, sample: PositionSample, now: Optional[float] = None) -> bool:
        """
        Feed one position sample into the session.

        Returns:
            True if accepted, False if the sample was stale and ignored

        Raises:
            SessionClosedError: Order finished, was cancelled or session closed
            ValueError: Sample belongs to another driver
        """
        self._ensure_open()
        if sample.entity_id != self.driver_id:
            raise ValueError(
                f"Sample for driver {sample.entity_id} sent to session of driver {self.driver_id}"
            )

        now = self.clock() if now is None else float(now)
        try:
            self.smoother.push_sample(sample, now=now)
        except StaleSampleError as exc:
            logger.debug("Ignoring stale sample for order %s: %s", self.order_id, exc)
            return False

        self._last_received_at = now
        snapshot = self.snapshot(now)
        self._notify(snapshot)
        return True

    def tick(self, now: Optional[float] = None) -> TrajectoryFrame:
        """
        Current render frame.

        Raises:
            SessionClosedError: Session closed
            NoSampleAvailableError: No sample received yet
        """
        self._ensure_open()
        return self.smoother.tick(now)

    # ---------------------- Derived output ----------------------

    def snapshot(self, now: Optional[float] = None) -> TrackingSnapshot:
        """Poll the current state. Never raises for missing or stale feed data."""
        now = self.clock() if now is None else float(now)

        try:
            frame = self.smoother.tick(now)
        except NoSampleAvailableError:
            frame = None

        if frame is not None:
            self._update_derived(frame)

        is_stale = (
            self._last_received_at is None
            or now - self._last_received_at > self.staleness_window_s
        )

        return TrackingSnapshot(
            order_id=self.order_id,
            driver_id=self.driver_id,
            frame=frame,
            distance_remaining_km=self.distance_remaining_km,
            eta_minutes=self.eta_minutes,
            progress_fraction=self.progress_fraction,
            order_status=self.order.status.value,
            is_stale=is_stale,
            last_sample_at=self._last_received_at,
        )

    def sync_status(self, status: OrderStatus, at=None) -> None:
        """Mirror a status change made elsewhere onto the session's order copy."""
        status = OrderStatus(status)
        if self.order.status is status:
            return
        self.order.status = status
        if at is not None:
            setattr(self.order, STATUS_TIMESTAMP_FIELDS[status], at)
        if status is OrderStatus.DELIVERED:
            self.distance_remaining_km = 0.0
            self.eta_minutes = 0.0
            self.progress_fraction = 1.0

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Receive a snapshot after every accepted sample; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # ---------------------- Helpers ----------------------

    def _ensure_open(self) -> None:
        if self.is_closed:
            self._closed = True
            raise SessionClosedError(
                f"Tracking for order {self.order_id} is closed ({self.order.status.value})"
            )

    def _update_derived(self, frame: TrajectoryFrame) -> None:
        if self.order.status is OrderStatus.DELIVERED:
            self.distance_remaining_km = 0.0
            self.eta_minutes = 0.0
            self.progress_fraction = 1.0
            return

        remaining = distance_km(frame.position, self.order.destination_point)
        self.distance_remaining_km = remaining
        self.eta_minutes = remaining / self.assumed_speed_kmh * 60.0

        if self._route_km <= 0:
            self.progress_fraction = 1.0
        else:
            self.progress_fraction = min(1.0, max(0.0, 1.0 - remaining / self._route_km))

    def _notify(self, snapshot: TrackingSnapshot) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Tracking subscriber failed for order %s", self.order_id)
