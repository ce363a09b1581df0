"""Custom exceptions for order lifecycle management."""


class OrderLifecycleError(Exception):
    """Base class for errors raised by the order state machine."""

    def __init__(self, message: str, order_id: str = None):
        super().__init__(message)
        self.order_id = order_id


class InvalidTransitionError(OrderLifecycleError):
    """Raised when the requested status change is not a legal edge."""
    pass


class MissingReasonError(OrderLifecycleError):
    """Raised when a cancellation is requested without a usable reason."""
    pass


class TerminalStateError(OrderLifecycleError):
    """Raised when a transition is attempted on a delivered or cancelled order."""
    pass
