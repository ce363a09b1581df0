"""Custom exceptions for live tracking."""


class TrackingError(Exception):
    """Base class for tracking failures."""
    pass


class NoSampleAvailableError(TrackingError):
    """Raised when a frame is requested before any position sample arrived."""
    pass


class StaleSampleError(TrackingError):
    """Raised when a sample is not newer than the one already being tracked."""
    pass


class SessionClosedError(TrackingError):
    """Raised when a tracking session is used after its order finished or was cancelled."""
    pass
