"""
Live tracking service.

This module handles:
    - Smoothing sparse driver positions into animation frames
    - Binding an assigned order to its driver's location feed
    - Deriving distance remaining, ETA and progress for displays
    - Opening/closing sessions as orders move through their lifecycle
"""

from .samples import PositionSample, TrajectoryFrame, TrackingSnapshot
from .smoother import PositionSmoother, ease_out_cubic
from .session import TrackingSession
from .feed import InMemoryLocationFeed, LocationFeed
from .manager import TrackingManager
from .exceptions import (
    TrackingError,
    NoSampleAvailableError,
    StaleSampleError,
    SessionClosedError,
)

__all__ = [
    "PositionSample",
    "TrajectoryFrame",
    "TrackingSnapshot",
    "PositionSmoother",
    "ease_out_cubic",
    "TrackingSession",
    "InMemoryLocationFeed",
    "LocationFeed",
    "TrackingManager",
    # Exceptions
    "TrackingError",
    "NoSampleAvailableError",
    "StaleSampleError",
    "SessionClosedError",
]
