"""
Per-driver position interpolation.

Location feeds deliver a sample every few seconds; displays want a frame
every animation tick. The smoother animates from the previous sample to the
latest one with an ease-out cubic curve. The animation length scales with
the distance covered (clamped to [min, max] seconds), so jitter corrections
settle quickly while a large jump after a feed gap glides instead of
teleporting. Frames never overshoot the latest sample and headings always
turn through the shorter arc.
"""

import logging
import threading
import time
from typing import Callable, NamedTuple, Optional

from common.utils.geo import distance_km, normalize_heading, shortest_heading_delta

from .exceptions import NoSampleAvailableError, StaleSampleError
from .samples import PositionSample, TrajectoryFrame

logger = logging.getLogger(__name__)


class _Segment(NamedTuple):
    origin: PositionSample
    target: PositionSample
    started_at: float
    duration: float


def ease_out_cubic(fraction: float) -> float:
    return 1.0 - (1.0 - fraction) ** 3


def _wrap_longitude(lng: float) -> float:
    return ((lng + 180.0) % 360.0) - 180.0 if not -180.0 <= lng <= 180.0 else lng


class PositionSmoother:
    """
    Interpolation engine for one tracked entity.

    Args:
        entity_id: Driver id this smoother accepts samples for
        min_duration_s: Shortest animation between two samples
        max_duration_s: Longest animation between two samples
        reference_speed_kmh: Hop distance / this speed gives the unclamped duration
        clock: Monotonic clock used when push_sample/tick get no explicit `now`
    """

    def __init__(
        self,
        entity_id: str,
        min_duration_s: float = 0.5,
        max_duration_s: float = 2.0,
        reference_speed_kmh: float = 720.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if min_duration_s <= 0 or max_duration_s < min_duration_s:
            raise ValueError("Durations must satisfy 0 < min_duration_s <= max_duration_s")
        if reference_speed_kmh <= 0:
            raise ValueError("reference_speed_kmh must be positive")

        self.entity_id = str(entity_id)
        self.min_duration_s = float(min_duration_s)
        self.max_duration_s = float(max_duration_s)
        self.reference_speed_kmh = float(reference_speed_kmh)
        self.clock = clock

        # Replaced wholesale on push so tick() can read it without locking
        self._segment: Optional[_Segment] = None
        self._push_lock = threading.Lock()

    @property
    def has_sample(self) -> bool:
        return self._segment is not None

    @property
    def latest_sample(self) -> Optional[PositionSample]:
        segment = self._segment
        return segment.target if segment else None

    def duration_for(self, origin: PositionSample, target: PositionSample) -> float:
        """Animation length for a hop, proportional to its great-circle length."""
        hop_km = distance_km(origin.position, target.position)
        seconds = hop_km / self.reference_speed_kmh * 3600.0
        return min(self.max_duration_s, max(self.min_duration_s, seconds))

    def push_sample(self, sample: PositionSample, now: Optional[float] = None) -> None:
        """
        Make `sample` the new interpolation target.

        The previous target becomes the origin and the progress clock restarts.

        Raises:
            ValueError: Sample belongs to another entity
            StaleSampleError: Sample is not newer than the current target
        """
        if sample.entity_id != self.entity_id:
            raise ValueError(
                f"Sample for {sample.entity_id} pushed to smoother for {self.entity_id}"
            )

        with self._push_lock:
            current = self._segment
            if current is not None and sample.observed_at <= current.target.observed_at:
                raise StaleSampleError(
                    f"Sample at {sample.observed_at} is not newer than {current.target.observed_at}"
                )

            started_at = self.clock() if now is None else float(now)
            origin = current.target if current is not None else sample
            self._segment = _Segment(
                origin=origin,
                target=sample,
                started_at=started_at,
                duration=self.duration_for(origin, sample),
            )

        logger.debug(
            "Smoother %s target -> (%.6f, %.6f) over %.2fs",
            self.entity_id, sample.lat, sample.lng, self._segment.duration,
        )

    def fraction(self, now: Optional[float] = None) -> float:
        """Linear progress in [0, 1] from origin to target."""
        segment = self._require_segment()
        return self._fraction(segment, now)

    def tick(self, now: Optional[float] = None) -> TrajectoryFrame:
        """
        Frame for time `now`. Read-only; safe to call at any rate.

        Raises:
            NoSampleAvailableError: No sample has been pushed yet
        """
        segment = self._require_segment()
        origin, target = segment.origin, segment.target

        if origin is target:
            return TrajectoryFrame.from_sample(target)

        eased = ease_out_cubic(self._fraction(segment, now))
        if eased >= 1.0:
            return TrajectoryFrame.from_sample(target)

        lng_delta = shortest_heading_delta(origin.lng % 360.0, target.lng % 360.0)
        heading_delta = shortest_heading_delta(origin.heading_degrees, target.heading_degrees)

        return TrajectoryFrame(
            lat=origin.lat + (target.lat - origin.lat) * eased,
            lng=_wrap_longitude(origin.lng + lng_delta * eased),
            heading_degrees=normalize_heading(origin.heading_degrees + heading_delta * eased),
            is_interpolated=True,
        )

    def reset(self) -> None:
        with self._push_lock:
            self._segment = None

    def _require_segment(self) -> _Segment:
        segment = self._segment
        if segment is None:
            raise NoSampleAvailableError(f"No position sample yet for {self.entity_id}")
        return segment

    def _fraction(self, segment: _Segment, now: Optional[float]) -> float:
        if segment.origin is segment.target:
            return 1.0
        now = self.clock() if now is None else float(now)
        elapsed = max(0.0, now - segment.started_at)
        return min(elapsed / segment.duration, 1.0)
