"""
Services package - Business logic layer.

This package contains the dispatch and live-tracking core. It works on plain
in-memory values and injected collaborators, so it is decoupled from the
HTTP/WebSocket layer and from the ORM.

Modules:
    - order_lifecycle: Order values, state machine and domain events
    - matching: Driver ranking, reservation and radius-expanding dispatch
    - tracking: Position smoothing and per-order tracking sessions
    - runtime: Process-wide wiring used by the Django apps
"""

# Expose commonly used names at package level
from .order_lifecycle import (
    Order,
    OrderKind,
    OrderStatus,
    CancellationReason,
    DomainEvent,
    EventBus,
    OrderStateMachine,
    InvalidTransitionError,
    MissingReasonError,
    TerminalStateError,
)
from .matching import (
    DriverCandidate,
    DispatchAttempt,
    DispatchEngine,
    DispatchOutcome,
    InvalidOrderStatusError,
    NoCompatibleVehicleClassError,
    SearchExhaustedError,
)
from .tracking import (
    PositionSample,
    PositionSmoother,
    TrackingSession,
    TrackingManager,
    NoSampleAvailableError,
    StaleSampleError,
    SessionClosedError,
)

__all__ = [
    # Order lifecycle
    "Order",
    "OrderKind",
    "OrderStatus",
    "CancellationReason",
    "DomainEvent",
    "EventBus",
    "OrderStateMachine",
    # Matching
    "DriverCandidate",
    "DispatchAttempt",
    "DispatchEngine",
    "DispatchOutcome",
    # Tracking
    "PositionSample",
    "PositionSmoother",
    "TrackingSession",
    "TrackingManager",
    # Exceptions
    "InvalidTransitionError",
    "MissingReasonError",
    "TerminalStateError",
    "InvalidOrderStatusError",
    "NoCompatibleVehicleClassError",
    "SearchExhaustedError",
    "NoSampleAvailableError",
    "StaleSampleError",
    "SessionClosedError",
]
