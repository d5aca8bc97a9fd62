"""Order WebSocket consumer for live order state and driver tracking."""

import logging
from typing import Any, Dict, Set

from channels.db import database_sync_to_async

from orders.serializers import OrderSnapshotSerializer
from services.order_lifecycle.exceptions import InvalidInput, Unauthorized
from services.order_lifecycle.types import Role
from ..transport import order_group
from .base import BaseConsumer

logger = logging.getLogger(__name__)


def _services():
    from services.wiring import get_services
    return get_services()


class OrderConsumer(BaseConsumer):
    """
    WebSocket consumer for order tracking.

    Used by both drivers and passengers to:
        - Subscribe to an order: current snapshot first, then every committed change
        - Receive the assigned driver's live position
        - (drivers) stream location fixes and claim offered orders
    """

    async def on_connect(self):
        # Track which order groups this connection has joined
        self.joined_orders: Set[str] = set()

        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "message": "Order tracking connection established",
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        if msg_type == "subscribe":
            await self._handle_subscribe(data)
        elif msg_type == "unsubscribe":
            await self._handle_unsubscribe(data)
        elif msg_type == "location":
            await self._handle_location(data)
        elif msg_type == "claim":
            await self._handle_claim(data)
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Message Handlers ----------------------

    async def _handle_subscribe(self, data: Dict[str, Any]):
        order_id = self._require_order_id(data)
        snapshot = await self._load_order_for_caller(order_id)

        group = order_group(snapshot["order_id"])
        await self._join_group(group)
        self.joined_orders.add(group)

        await self.send_json({"type": "order_snapshot", "order": snapshot})

    async def _handle_unsubscribe(self, data: Dict[str, Any]):
        order_id = data.get("order_id")
        if not order_id:
            return

        group = order_group(order_id)
        await self._leave_group(group)
        self.joined_orders.discard(group)
        await self.send_success("unsubscribed", order_id=order_id)

    async def _handle_location(self, data: Dict[str, Any]):
        if self.role != Role.DRIVER:
            raise Unauthorized("Only drivers can send location updates")

        fix = {key: data.get(key) for key in ("latitude", "longitude", "timestamp", "accuracy", "speed", "bearing")}
        published = await self._report_location(fix, data.get("order_id"))
        await self.send_success("location_ack", published=published)

    async def _handle_claim(self, data: Dict[str, Any]):
        if self.role != Role.DRIVER:
            raise Unauthorized("Only drivers can accept orders")

        order_id = self._require_order_id(data)
        offer_round = data.get("offer_round")
        if offer_round is not None and not isinstance(offer_round, int):
            raise InvalidInput("offer_round must be an integer")

        result = await self._attempt_claim(order_id, offer_round)
        await self.send_success("claim_result", **result)

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _load_order_for_caller(self, order_id: str) -> Dict[str, Any]:
        order = _services().state_machine.get(order_id)
        if self.user_id not in (order.passenger_id, order.driver_id):
            raise Unauthorized(f"{self.user_id} is not a party of order {order_id}")
        return OrderSnapshotSerializer(order).data

    @database_sync_to_async
    def _report_location(self, fix: Dict[str, Any], order_id) -> bool:
        published = _services().availability.report_location(self.user_id, fix, order_id=order_id)
        return published is not None

    @database_sync_to_async
    def _attempt_claim(self, order_id: str, offer_round) -> Dict[str, Any]:
        result = _services().coordinator.attempt_claim(order_id, self.user_id, offer_round=offer_round)
        return {
            "success": result.success,
            "message": result.message,
            "order_id": order_id,
            "order": OrderSnapshotSerializer(result.order).data if result.order else None,
        }

    @staticmethod
    def _require_order_id(data: Dict[str, Any]) -> str:
        order_id = data.get("order_id")
        if not order_id:
            raise InvalidInput("order_id is required")
        return str(order_id)

    # ---------------------- Event Handlers ----------------------

    async def order_snapshot(self, event):
        """Committed order state, sent to the order group."""
        await self.send_json(event)

    async def driver_location(self, event):
        """Live position of the assigned driver."""
        await self.send_json(event)
