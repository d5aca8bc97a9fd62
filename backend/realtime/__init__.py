"""
Realtime app for WebSocket communication and order event fan-out.

This app provides:
- Order event fan-out (in-process subscriptions + Channels transport)
- WebSocket consumer for order tracking, driver fixes and claims
- Redis GEO-based nearby-driver lookup
- JWT authentication for WebSocket connections and the REST API

Key Components:
    - fanout.py: OrderEventHub, Subscription, OrderSnapshotView
    - transport.py: Channel layer groups (order_/driver_/user_)
    - geo.py: Redis GEO driver index
    - consumers/: WebSocket consumers
    - auth.py / middleware.py: Caller identity from JWT claims
"""
