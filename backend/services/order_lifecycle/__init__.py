"""
Order lifecycle service - canonical status transitions for orders.

This module handles:
    - The order value type and its status/reason enums
    - Legal transitions and terminal-state guards
    - Per-order serialization of transitions
    - Domain events emitted after each committed transition
"""

from .models import (
    Order,
    OrderKind,
    OrderStatus,
    CancellationReason,
    TERMINAL_STATUSES,
)
from .events import DomainEvent, EventBus
from .state_machine import OrderStateMachine, allowed_targets, resolve_cancellation_reason
from .exceptions import (
    OrderLifecycleError,
    InvalidTransitionError,
    MissingReasonError,
    TerminalStateError,
)

__all__ = [
    # Values
    "Order",
    "OrderKind",
    "OrderStatus",
    "CancellationReason",
    "TERMINAL_STATUSES",
    # Events
    "DomainEvent",
    "EventBus",
    # State machine
    "OrderStateMachine",
    "allowed_targets",
    "resolve_cancellation_reason",
    # Exceptions
    "OrderLifecycleError",
    "InvalidTransitionError",
    "MissingReasonError",
    "TerminalStateError",
]
