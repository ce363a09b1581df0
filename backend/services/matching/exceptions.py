"""Custom exceptions for driver matching and dispatch."""


class DispatchError(Exception):
    """Base class for dispatch failures."""
    pass


class InvalidOrderStatusError(DispatchError):
    """Raised when dispatch is requested for an order that is not pending or confirmed."""
    pass


class NoCompatibleVehicleClassError(DispatchError):
    """Raised when an order's service tier maps to no known vehicle class."""
    pass


class SearchExhaustedError(DispatchError):
    """Raised by DispatchAttempt.raise_for_outcome() when no driver could be reserved."""

    def __init__(self, message: str, attempt=None):
        super().__init__(message)
        self.attempt = attempt
