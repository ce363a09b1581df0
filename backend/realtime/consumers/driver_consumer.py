"""Driver WebSocket consumer for location reports and assignment notices."""

import logging
import time
from typing import Any, Dict

from channels.db import database_sync_to_async

from common.utils.geo import InvalidCoordinateError, Point, initial_bearing, validate_point
from drivers.services import record_driver_location
from realtime.notifications import driver_group
from services.tracking.samples import PositionSample

from .base import BaseConsumer

logger = logging.getLogger(__name__)


class DriverLocationConsumer(BaseConsumer):
    """
    WebSocket consumer for drivers.

    Handles:
        - Driver location updates (persisted and fed to tracking sessions)
        - Order assignment notifications
    """

    def get_groups(self):
        self.driver_id = str(self.url_kwargs["driver_id"])
        self.last_position = None
        return [driver_group(self.driver_id)]

    async def on_connect(self):
        await self.send_json({
            "type": "connection_established",
            "driver_id": self.driver_id,
            "message": "Driver connected successfully",
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Handle driver-specific messages."""
        if msg_type == "driver_location_update":
            await self._handle_location_update(data)
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Message Handlers ----------------------

    async def _handle_location_update(self, data: Dict[str, Any]):
        lat = data.get("latitude")
        lng = data.get("longitude")

        if lat is None or lng is None:
            await self.send_error("driver_location_update requires latitude and longitude")
            return

        try:
            heading = data.get("heading")
            if heading is None:
                heading = self._heading_from_track(validate_point((lat, lng)))
            sample = PositionSample(
                entity_id=self.driver_id,
                lat=lat,
                lng=lng,
                heading_degrees=heading,
                observed_at=data.get("observed_at", time.time()),
            )
        except InvalidCoordinateError as e:
            await self.send_error(str(e))
            return

        self.last_position = sample.position
        sessions = await self._record_location(sample)
        logger.debug(
            "Driver %s location update: lat=%s, lng=%s, sessions=%s",
            self.driver_id, sample.lat, sample.lng, sessions,
        )
        await self.send_success("location_recorded", sessions=sessions)

    def _heading_from_track(self, position: Point) -> float:
        """Bearing from the previous report when the device sends no heading."""
        if self.last_position is None or self.last_position == position:
            return 0.0
        return initial_bearing(self.last_position, position)

    # ---------------------- Event Handlers (from group_send) ----------------------

    async def order_assigned(self, event):
        """Forward an assignment to the driver."""
        await self.relay(event, "order_id", "event")

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _record_location(self, sample: PositionSample) -> int:
        return record_driver_location(sample)
