"""
Notification helpers for sending WebSocket messages to connected clients.

This module handles:
- Forwarding order status transitions to the order's tracking group
- Telling a driver which order they were assigned
- Publishing dispatch attempts (searching / exhausted) to the order group
- Pushing tracking snapshots to the order group
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from services.matching.dispatch_engine import DispatchAttempt
from services.order_lifecycle.events import DomainEvent
from services.order_lifecycle.models import OrderStatus
from services.tracking.samples import TrackingSnapshot

logger = logging.getLogger(__name__)


def order_group(order_id: str) -> str:
    return f"order_{order_id}"


def driver_group(driver_id: str) -> str:
    return f"driver_{driver_id}"


class ChannelLayerNotifier:
    """
    Event bus subscriber that relays events to channels groups.

    Failures are logged and swallowed; a notifier must never undo a
    committed transition.
    """

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer

    @property
    def channel_layer(self):
        return self._channel_layer or get_channel_layer()

    def __call__(self, event: Any) -> None:
        if isinstance(event, DomainEvent):
            self.notify_status_changed(event)
        elif isinstance(event, DispatchAttempt):
            self.notify_dispatch_attempt(event)
        elif isinstance(event, TrackingSnapshot):
            self.notify_snapshot(event)

    # ---------------------- Event Notifications ----------------------

    def notify_status_changed(self, event: DomainEvent) -> None:
        payload = event.as_dict()
        self._send(order_group(event.order_id), {"type": "order_status_changed", "event": payload})

        if event.to_status is OrderStatus.DRIVER_ASSIGNED and event.metadata.get("driver_id"):
            self._send(
                driver_group(event.metadata["driver_id"]),
                {"type": "order_assigned", "order_id": event.order_id, "event": payload},
            )

    def notify_dispatch_attempt(self, attempt: DispatchAttempt) -> None:
        self._send(order_group(attempt.order_id), {"type": "dispatch_attempt", "attempt": attempt.as_dict()})

    def notify_snapshot(self, snapshot: TrackingSnapshot) -> None:
        self._send(order_group(snapshot.order_id), {"type": "tracking_snapshot", "snapshot": snapshot.as_dict()})

    # ---------------------- Helpers ----------------------

    def _send(self, group: str, message: Dict[str, Any]) -> bool:
        channel_layer = self.channel_layer
        if channel_layer is None:
            logger.warning("No channel layer configured; dropping %s for %s", message["type"], group)
            return False
        try:
            async_to_sync(channel_layer.group_send)(group, message)
            return True
        except Exception:
            logger.exception("Failed to send %s to %s", message["type"], group)
            return False
