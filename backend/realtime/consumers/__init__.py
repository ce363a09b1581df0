"""Realtime consumers for WebSocket communication."""

from .base import BaseConsumer
from .driver_consumer import DriverLocationConsumer
from .order_consumer import OrderTrackingConsumer

__all__ = [
    "BaseConsumer",
    "DriverLocationConsumer",
    "OrderTrackingConsumer",
]
