"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from .consumers import DriverLocationConsumer, OrderTrackingConsumer

websocket_urlpatterns = [
    # Driver location reports and assignment notices
    # URL: ws://localhost:8000/ws/driver/<driver_id>/
    re_path(
        r"ws/driver/(?P<driver_id>[\w-]+)/$",
        DriverLocationConsumer.as_asgi(),
        name="driver-ws"
    ),

    # Order status, dispatch progress and tracking snapshots
    # URL: ws://localhost:8000/ws/orders/<order_id>/
    re_path(
        r"ws/orders/(?P<order_id>[\w-]+)/$",
        OrderTrackingConsumer.as_asgi(),
        name="order-ws"
    ),
]
