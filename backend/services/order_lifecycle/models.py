"""
Domain values for transport and delivery orders.

The Order here is a plain in-memory value. Durability is delegated to a
persistence collaborator (see orders.repository); the state machine is the
only code that mutates status and timestamps.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

from common.utils.geo import Point, validate_point


class OrderKind(str, Enum):
    TRANSPORT = "transport"
    DELIVERY = "delivery"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DRIVER_ASSIGNED = "driver_assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def timestamp_field(self) -> str:
        return STATUS_TIMESTAMP_FIELDS[self]


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

STATUS_TIMESTAMP_FIELDS = {
    OrderStatus.PENDING: "created_at",
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.DRIVER_ASSIGNED: "assigned_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.IN_TRANSIT: "in_transit_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


class CancellationReason(str, Enum):
    CUSTOMER_REQUEST = "customer_request"
    DRIVER_UNAVAILABLE = "driver_unavailable"
    WRONG_ADDRESS = "wrong_address"
    PAYMENT_ISSUE = "payment_issue"
    VEHICLE_ISSUE = "vehicle_issue"
    NO_SHOW = "no_show"
    DUPLICATE_ORDER = "duplicate_order"
    TIMEOUT = "timeout"
    OTHER = "other"

    @property
    def label(self) -> str:
        return CANCELLATION_LABELS[self]


CANCELLATION_LABELS = {
    CancellationReason.CUSTOMER_REQUEST: "Cancelled at the customer's request",
    CancellationReason.DRIVER_UNAVAILABLE: "Driver became unavailable",
    CancellationReason.WRONG_ADDRESS: "Wrong pickup or destination address",
    CancellationReason.PAYMENT_ISSUE: "Payment could not be completed",
    CancellationReason.VEHICLE_ISSUE: "Vehicle problem",
    CancellationReason.NO_SHOW: "Customer did not show up",
    CancellationReason.DUPLICATE_ORDER: "Duplicate order",
    CancellationReason.TIMEOUT: "No driver found in time",
    CancellationReason.OTHER: "Other",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_order_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Order:
    """A transport or delivery order as seen by the dispatch/tracking core."""
    kind: OrderKind
    service_tier: str
    pickup_point: Point
    destination_point: Point
    order_id: str = field(default_factory=new_order_id)
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    in_transit_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_code: Optional[CancellationReason] = None
    cancellation_reason: Optional[str] = None
    assigned_driver_id: Optional[str] = None

    def __post_init__(self):
        self.kind = OrderKind(self.kind)
        self.status = OrderStatus(self.status)
        self.pickup_point = validate_point(self.pickup_point)
        self.destination_point = validate_point(self.destination_point)
        if self.cancellation_code is not None:
            self.cancellation_code = CancellationReason(self.cancellation_code)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def status_changed_at(self) -> Optional[datetime]:
        """Timestamp of the transition into the current status."""
        return getattr(self, self.status.timestamp_field)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        data["pickup_point"] = {"lat": self.pickup_point.lat, "lng": self.pickup_point.lng}
        data["destination_point"] = {"lat": self.destination_point.lat, "lng": self.destination_point.lng}
        data["cancellation_code"] = self.cancellation_code.value if self.cancellation_code else None
        for name in ("created_at", "updated_at", *STATUS_TIMESTAMP_FIELDS.values()):
            value = getattr(self, name)
            data[name] = value.isoformat() if value else None
        return data
