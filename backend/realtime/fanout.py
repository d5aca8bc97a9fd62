"""
Order event fan-out.

Every committed order change is published here as a full ``OrderSnapshot``.
In-process subscribers get a bounded buffer each (oldest entries are dropped
when a subscriber falls behind), and every event is also forwarded to the
transport that reaches remote clients (see realtime.transport).

Delivery is at-least-once, so subscribers should reduce snapshots with
``OrderSnapshotView`` rather than treating them as deltas.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, List, Optional

from services.order_lifecycle.types import OrderSnapshot, TrackPoint

logger = logging.getLogger(__name__)


class EventTransport(ABC):
    """Pub/sub channel that remote clients subscribe to."""

    @abstractmethod
    def publish_snapshot(self, snapshot: OrderSnapshot) -> None:
        ...

    @abstractmethod
    def publish_location(self, point: TrackPoint) -> None:
        ...

    @abstractmethod
    def send_to_driver(self, driver_id: str, event_type: str, snapshot: OrderSnapshot, message: str = "", **extra) -> None:
        ...

    @abstractmethod
    def send_to_passenger(self, snapshot: OrderSnapshot, event_type: str, message: str = "", **extra) -> None:
        ...


class Subscription:
    """A bounded, thread-safe queue of snapshots for one order."""

    def __init__(self, hub: "OrderEventHub", order_id: str, buffer_size: int):
        self.order_id = order_id
        self.dropped = 0
        self._hub = hub
        self._buffer: Deque[OrderSnapshot] = deque(maxlen=buffer_size)
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, snapshot: OrderSnapshot) -> bool:
        with self._cond:
            if self._closed:
                return False
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(snapshot)
            self._cond.notify()
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[OrderSnapshot]:
        """Next snapshot, or None on timeout or once closed."""
        with self._cond:
            self._cond.wait_for(lambda: self._buffer or self._closed, timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> List[OrderSnapshot]:
        with self._cond:
            items = list(self._buffer)
            self._buffer.clear()
            return items

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._buffer.clear()
            self._cond.notify_all()
        self._hub._remove(self)

    def __iter__(self):
        while True:
            snapshot = self.get()
            if snapshot is None:
                return
            yield snapshot

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class OrderEventHub:
    """Fans committed order snapshots out to subscribers and the transport."""

    def __init__(self, transport: Optional[EventTransport] = None, buffer_size: int = 64):
        self._transport = transport
        self._buffer_size = buffer_size
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = {}

    # ---------------------- Subscriptions ----------------------

    def subscribe(self, order_id: str, buffer_size: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, str(order_id), buffer_size or self._buffer_size)
        with self._lock:
            self._subscriptions.setdefault(subscription.order_id, []).append(subscription)
        return subscription

    def subscriber_count(self, order_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(str(order_id), []))

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.order_id)
            if not subs:
                return
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                del self._subscriptions[subscription.order_id]

    # ---------------------- Publishing ----------------------

    def publish(self, snapshot: OrderSnapshot) -> int:
        """
        Deliver a committed snapshot to every subscriber of its order.

        Returns the number of in-process subscribers that received it.
        """
        with self._lock:
            subs = list(self._subscriptions.get(snapshot.order_id, []))

        delivered = 0
        for subscription in subs:
            try:
                if subscription.deliver(snapshot):
                    delivered += 1
            except Exception:
                logger.exception("Failed to deliver snapshot of order %s to a subscriber", snapshot.order_id)

        self._forward("publish_snapshot", snapshot)
        logger.debug(
            "Published order %s v%s (%s) to %d subscriber(s)",
            snapshot.order_id, snapshot.version, snapshot.status, delivered,
        )
        return delivered

    def publish_location(self, point: TrackPoint) -> None:
        self._forward("publish_location", point)

    def notify_driver(self, driver_id: str, event_type: str, snapshot: OrderSnapshot, message: str = "", **extra) -> None:
        self._forward("send_to_driver", driver_id, event_type, snapshot, message, **extra)

    def notify_passenger(self, snapshot: OrderSnapshot, event_type: str, message: str = "", **extra) -> None:
        self._forward("send_to_passenger", snapshot, event_type, message, **extra)

    def _forward(self, method: str, *args, **kwargs) -> None:
        if self._transport is None:
            return
        try:
            getattr(self._transport, method)(*args, **kwargs)
        except Exception:
            logger.exception("Transport %s failed", method)


class OrderSnapshotView:
    """
    Subscriber-side state for one order.

    Applies a snapshot only if it is newer than the one held, so redelivered or
    reordered snapshots leave the view unchanged.
    """

    def __init__(self, order_id: str, snapshot: Optional[OrderSnapshot] = None):
        self.order_id = str(order_id)
        self.current = snapshot
        self.applied = 0

    def apply(self, snapshot: OrderSnapshot) -> bool:
        if snapshot.order_id != self.order_id:
            return False
        if self.current is not None:
            incoming = (snapshot.updated_at, snapshot.version)
            held = (self.current.updated_at, self.current.version)
            if incoming <= held:
                return False
        self.current = snapshot
        self.applied += 1
        return True
