"""Realtime consumers for WebSocket communication."""

from .base import BaseConsumer
from .order_consumer import OrderConsumer

__all__ = [
    "BaseConsumer",
    "OrderConsumer",
]
