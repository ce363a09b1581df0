"""Position samples, render frames and tracking snapshots."""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from common.utils.geo import InvalidCoordinateError, Point, validate_heading, validate_point


@dataclass(frozen=True)
class PositionSample:
    """One reading from the location feed. `observed_at` is in seconds."""
    entity_id: str
    lat: float
    lng: float
    heading_degrees: float
    observed_at: float

    def __post_init__(self):
        point = validate_point((self.lat, self.lng))
        object.__setattr__(self, "entity_id", str(self.entity_id))
        object.__setattr__(self, "lat", point.lat)
        object.__setattr__(self, "lng", point.lng)
        object.__setattr__(self, "heading_degrees", validate_heading(self.heading_degrees))
        try:
            observed_at = float(self.observed_at)
        except (TypeError, ValueError):
            raise InvalidCoordinateError(f"Not a timestamp: {self.observed_at!r}")
        if not math.isfinite(observed_at):
            raise InvalidCoordinateError(f"Non-finite timestamp: {observed_at}")
        object.__setattr__(self, "observed_at", observed_at)

    @property
    def position(self) -> Point:
        return Point(self.lat, self.lng)


@dataclass(frozen=True)
class TrajectoryFrame:
    """Render-ready position; derived on every tick and never persisted."""
    lat: float
    lng: float
    heading_degrees: float
    is_interpolated: bool

    @property
    def position(self) -> Point:
        return Point(self.lat, self.lng)

    @classmethod
    def from_sample(cls, sample: PositionSample) -> "TrajectoryFrame":
        return cls(
            lat=sample.lat,
            lng=sample.lng,
            heading_degrees=sample.heading_degrees,
            is_interpolated=False,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "heading_degrees": self.heading_degrees,
            "is_interpolated": self.is_interpolated,
        }


@dataclass(frozen=True)
class TrackingSnapshot:
    """What a display or notifier sees when it polls a tracking session."""
    order_id: str
    driver_id: str
    frame: Optional[TrajectoryFrame]
    distance_remaining_km: Optional[float]
    eta_minutes: Optional[float]
    progress_fraction: float
    order_status: str
    is_stale: bool
    last_sample_at: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "driver_id": self.driver_id,
            "frame": self.frame.as_dict() if self.frame else None,
            "distance_remaining_km": (
                round(self.distance_remaining_km, 3)
                if self.distance_remaining_km is not None else None
            ),
            "eta_minutes": round(self.eta_minutes, 1) if self.eta_minutes is not None else None,
            "progress_fraction": round(self.progress_fraction, 4),
            "order_status": self.order_status,
            "is_stale": self.is_stale,
            "last_sample_at": self.last_sample_at,
        }
