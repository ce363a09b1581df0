"""
Persistence collaborator for the order state machine.

Converts between the in-memory services Order value and the Django models,
and records domain events / dispatch attempts published on the event bus.
"""

import logging
from typing import Any, List, Optional

from django.db import transaction

from common.utils.geo import Point
from services.matching.dispatch_engine import (
    DISPATCHABLE_STATUSES,
    DispatchAttempt,
    DispatchOutcome,
)
from services.order_lifecycle.events import DomainEvent
from services.order_lifecycle.models import Order, OrderKind, OrderStatus, STATUS_TIMESTAMP_FIELDS

from .models import DispatchAttemptLog, Order as OrderRecord, OrderEvent

logger = logging.getLogger(__name__)


_TIMESTAMP_FIELDS = sorted(set(STATUS_TIMESTAMP_FIELDS.values()) | {"updated_at"})


class OrderNotFoundError(Exception):
    """Raised when an order id is unknown to the repository."""
    pass


def to_domain(record: OrderRecord) -> Order:
    """Build the in-memory Order from its database row."""
    order = Order(
        order_id=record.order_id,
        kind=OrderKind(record.kind),
        service_tier=record.service_tier,
        pickup_point=Point(float(record.pickup_latitude), float(record.pickup_longitude)),
        destination_point=Point(float(record.destination_latitude), float(record.destination_longitude)),
        status=OrderStatus(record.status),
        cancellation_code=record.cancellation_code or None,
        cancellation_reason=record.cancellation_reason,
        assigned_driver_id=record.assigned_driver_id,
    )
    for name in _TIMESTAMP_FIELDS:
        setattr(order, name, getattr(record, name))
    return order


def _record_fields(order: Order) -> dict:
    fields = {
        "kind": order.kind.value,
        "service_tier": order.service_tier,
        "pickup_latitude": round(order.pickup_point.lat, 6),
        "pickup_longitude": round(order.pickup_point.lng, 6),
        "destination_latitude": round(order.destination_point.lat, 6),
        "destination_longitude": round(order.destination_point.lng, 6),
        "status": order.status.value,
        "assigned_driver_id": order.assigned_driver_id,
        "cancellation_code": order.cancellation_code.value if order.cancellation_code else None,
        "cancellation_reason": order.cancellation_reason,
    }
    for name in _TIMESTAMP_FIELDS:
        fields[name] = getattr(order, name)
    return fields


class DjangoOrderRepository:
    """load_order / save_order backed by the orders table."""

    def load_order(self, order_id: str, for_update: bool = False) -> Order:
        """
        Fetch an order by id.

        Args:
            order_id: Public order id
            for_update: Lock the row (must be called inside transaction.atomic)

        Raises:
            OrderNotFoundError: If no such order exists
        """
        queryset = OrderRecord.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        try:
            return to_domain(queryset.get(order_id=order_id))
        except OrderRecord.DoesNotExist:
            raise OrderNotFoundError(f"Order {order_id} not found")

    def save_order(self, order: Order) -> None:
        OrderRecord.objects.update_or_create(
            order_id=order.order_id,
            defaults=_record_fields(order),
        )

    @transaction.atomic
    def create_order(
        self,
        kind,
        service_tier: str,
        pickup_point,
        destination_point,
    ) -> Order:
        """Create and persist a new pending order."""
        order = Order(
            kind=kind,
            service_tier=service_tier,
            pickup_point=pickup_point,
            destination_point=destination_point,
        )
        self.save_order(order)
        logger.info("Created %s order %s (%s)", order.kind.value, order.order_id, order.service_tier)
        return order

    def list_dispatchable(self, limit: int = 50) -> List[Order]:
        """Oldest pending/confirmed orders first."""
        records = (
            OrderRecord.objects
            .filter(status__in=[status.value for status in DISPATCHABLE_STATUSES])
            .order_by("created_at")[:limit]
        )
        return [to_domain(record) for record in records]

    def latest_attempt(self, order_id: str) -> Optional[DispatchAttempt]:
        """Most recent logged dispatch attempt for an order, if any."""
        log = DispatchAttemptLog.objects.filter(order_id=order_id).first()
        if log is None:
            return None
        return DispatchAttempt(
            order_id=log.order_id,
            radius_km=log.radius_km,
            candidate_count=log.candidate_count,
            outcome=DispatchOutcome(log.outcome),
            elapsed_seconds=log.elapsed_seconds,
            attempt_count=log.attempt_count,
            radii_km=tuple(log.radii_km or ()),
            driver_id=log.driver_id,
            reservation_failures=log.reservation_failures,
        )


def record_event(event: Any) -> None:
    """Event bus subscriber writing the transition / dispatch audit log."""
    if isinstance(event, DomainEvent):
        OrderEvent.objects.create(
            order_id=event.order_id,
            from_status=event.from_status.value,
            to_status=event.to_status.value,
            actor=event.actor,
            at=event.at,
            metadata=event.as_dict()["metadata"],
        )
    elif isinstance(event, DispatchAttempt):
        DispatchAttemptLog.objects.create(
            order_id=event.order_id,
            radius_km=event.radius_km,
            candidate_count=event.candidate_count,
            outcome=event.outcome.value,
            elapsed_seconds=event.elapsed_seconds,
            attempt_count=event.attempt_count,
            radii_km=list(event.radii_km),
            driver_id=event.driver_id,
            reservation_failures=event.reservation_failures,
        )
