"""
Realtime app for WebSocket communication and Redis GEO driver indexing.

This app provides:
- WebSocket consumers for driver location reports and order tracking
- Redis GEO-based candidate source for dispatch
- A channels notifier subscribed to the order event bus

Key Components:
    - geo.py: Redis GEO candidate source with atomic reservations
    - consumers/: WebSocket consumers (driver, order)
    - notifications.py: Event bus to channels group relay

Usage:
    from realtime.consumers import DriverLocationConsumer, OrderTrackingConsumer
    from realtime.notifications import ChannelLayerNotifier
    from realtime.geo import get_redis_candidate_source
"""
