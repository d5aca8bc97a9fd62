"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from .consumers.order_consumer import OrderConsumer

websocket_urlpatterns = [
    # Order tracking WebSocket endpoint (shared by both roles)
    # URL: ws://localhost:8000/ws/orders/?token=<jwt>
    re_path(
        r"ws/orders/$",
        OrderConsumer.as_asgi(),
        name="orders-ws"
    ),
]
