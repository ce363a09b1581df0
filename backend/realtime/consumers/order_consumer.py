"""Order tracking WebSocket consumer shared by customers and dispatch screens."""

import logging
from typing import Any, Dict, Optional

from channels.db import database_sync_to_async

from realtime.notifications import order_group

from .base import BaseConsumer

logger = logging.getLogger(__name__)


class OrderTrackingConsumer(BaseConsumer):
    """
    WebSocket consumer for one order.

    Relays status changes, dispatch attempts and tracking snapshots pushed
    to the order group; answers snapshot_request with the live snapshot.
    """

    def get_groups(self):
        self.order_id = str(self.url_kwargs["order_id"])
        return [order_group(self.order_id)]

    async def on_connect(self):
        await self.send_json({
            "type": "connection_established",
            "order_id": self.order_id,
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        if msg_type == "snapshot_request":
            snapshot = await self._current_snapshot()
            if snapshot is None:
                await self.send_error("No active tracking for this order")
                return
            await self.send_success("tracking_snapshot", snapshot=snapshot)
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Event Handlers (from group_send) ----------------------

    async def order_status_changed(self, event):
        await self.relay(event, "event")

    async def dispatch_attempt(self, event):
        await self.relay(event, "attempt")

    async def tracking_snapshot(self, event):
        await self.relay(event, "snapshot")

    # ---------------------- Helpers ----------------------

    @database_sync_to_async
    def _current_snapshot(self) -> Optional[Dict[str, Any]]:
        from services.runtime import get_tracking_manager

        session = get_tracking_manager().get_session(self.order_id)
        if session is None:
            return None
        return session.snapshot().as_dict()
