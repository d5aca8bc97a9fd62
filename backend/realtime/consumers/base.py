"""Base WebSocket consumer with shared functionality for all consumers."""

import logging
from typing import Any, Dict, Set

from channels.generic.websocket import AsyncJsonWebsocketConsumer

from services.order_lifecycle.exceptions import DispatchError
from services.order_lifecycle.types import Role
from ..transport import driver_group, user_group

logger = logging.getLogger(__name__)


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Base consumer with shared connection management and helper methods.

    Subclasses should override:
        - on_connect(): custom connect logic
        - handle_message(msg_type, data): handle incoming messages
    """

    async def connect(self):
        self.caller = self.scope.get("caller")

        if self.caller is None:
            await self.close()
            return

        # Basic attributes available to all consumers
        self.user_id = self.caller.user_id
        self.role = self.caller.role

        # Track joined groups for cleanup
        self.joined_groups: Set[str] = set()

        # Personal groups (targeted server->user messages)
        await self._join_group(user_group(self.user_id))
        if self.role == Role.DRIVER:
            await self._join_group(driver_group(self.user_id))

        await self.accept()
        await self.on_connect()

    async def on_connect(self):
        """Override in subclass for custom connect logic."""
        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
        })

    async def disconnect(self, close_code):
        """Leave all joined groups on disconnect."""
        try:
            for group in list(getattr(self, "joined_groups", ())):
                await self._leave_group(group)
            await self.on_disconnect(close_code)
        except Exception:
            logger.exception("Error during disconnect for user %s", getattr(self, 'user_id', 'unknown'))

    async def on_disconnect(self, close_code):
        """Override in subclass for custom disconnect logic."""
        pass

    async def receive_json(self, data: Dict[str, Any]):
        """Route incoming messages to appropriate handlers."""
        msg_type = data.get("type") if isinstance(data, dict) else None
        if not msg_type:
            await self.send_error("Message type is required")
            return

        try:
            await self.handle_message(msg_type, data)
        except DispatchError as e:
            await self.send_error(e.user_message, code=e.code, retryable=e.retryable)
        except Exception:
            logger.exception("Error handling message type %s", msg_type)
            await self.send_error(f"Error processing {msg_type}")

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Override in subclass to handle specific message types."""
        await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Group Management Helpers ----------------------

    async def _join_group(self, group_name: str):
        """Join a channel group and track it."""
        await self.channel_layer.group_add(group_name, self.channel_name)
        self.joined_groups.add(group_name)

    async def _leave_group(self, group_name: str):
        """Leave a channel group and untrack it."""
        await self.channel_layer.group_discard(group_name, self.channel_name)
        self.joined_groups.discard(group_name)

    # ---------------------- Response Helpers ----------------------

    async def send_error(self, message: str, code: str = "error", **kwargs):
        """Send an error message to the client."""
        await self.send_json({
            "type": "error",
            "code": code,
            "message": message,
            **kwargs,
        })

    async def send_success(self, event_type: str, **kwargs):
        """Send a success response to the client."""
        await self.send_json({
            "type": event_type,
            **kwargs,
        })

    # ---------------------- Common Event Handlers ----------------------
    # These relay group_send events from server-side code (see realtime.transport)

    async def order_offer(self, event):
        """Sent to a driver when an order is offered to them."""
        await self.send_json(event)

    async def order_taken(self, event):
        """Sent to the other offered drivers when someone claimed the order."""
        await self.send_json(event)

    async def order_cancelled(self, event):
        await self.send_json(event)

    async def order_expired(self, event):
        """Sent when an offer round (or the whole order) timed out."""
        await self.send_json(event)

    async def order_accepted(self, event):
        await self.send_json(event)

    async def no_drivers(self, event):
        await self.send_json(event)
