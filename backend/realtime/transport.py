"""
Channels transport for order events.

Groups:
    order_<order_id>    snapshots and live driver positions of one order
    driver_<driver_id>  offers and offer withdrawals for one driver
    user_<user_id>      passenger notifications

The ``type`` of every message names the consumer handler that relays it
(see realtime.consumers.order_consumer).
"""

import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from orders.serializers import OrderSnapshotSerializer, TrackPointSerializer
from services.order_lifecycle.types import OrderSnapshot, TrackPoint
from .fanout import EventTransport

logger = logging.getLogger(__name__)


def order_group(order_id) -> str:
    return f"order_{order_id}"


def driver_group(driver_id) -> str:
    return f"driver_{driver_id}"


def user_group(user_id) -> str:
    return f"user_{user_id}"


class ChannelLayerTransport(EventTransport):

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer

    @property
    def channel_layer(self):
        if self._channel_layer is None:
            self._channel_layer = get_channel_layer()
        return self._channel_layer

    def publish_snapshot(self, snapshot: OrderSnapshot) -> None:
        self._group_send(order_group(snapshot.order_id), {
            "type": "order_snapshot",
            "order": OrderSnapshotSerializer(snapshot).data,
        })

    def publish_location(self, point: TrackPoint) -> None:
        self._group_send(order_group(point.order_id), {
            "type": "driver_location",
            "location": TrackPointSerializer(point).data,
        })

    def send_to_driver(self, driver_id: str, event_type: str, snapshot: OrderSnapshot, message: str = "", **extra) -> None:
        self._group_send(driver_group(driver_id), {
            "type": event_type,
            "order": OrderSnapshotSerializer(snapshot).data,
            "message": message,
            **extra,
        })

    def send_to_passenger(self, snapshot: OrderSnapshot, event_type: str, message: str = "", **extra) -> None:
        self._group_send(user_group(snapshot.passenger_id), {
            "type": event_type,
            "order": OrderSnapshotSerializer(snapshot).data,
            "message": message,
            **extra,
        })

    def _group_send(self, group: str, payload: dict) -> None:
        channel_layer = self.channel_layer
        if channel_layer is None:
            logger.warning("No channel layer available, dropping %s for %s", payload["type"], group)
            return
        logger.debug("Sending %s to %s", payload["type"], group)
        async_to_sync(channel_layer.group_send)(group, payload)
