"""
In-process publish / subscribe bus for location and ride-state changes.

Delivery model
--------------
* ``publish`` is synchronous: it appends the event to every matching
  subscriber's unbounded FIFO queue before returning.  Publishers of one
  entity (a driver's location, a ride's status) publish in the order they
  applied the change, so each subscriber sees per-entity order.
* Nothing is dropped; a slow subscriber only grows its own queue.
* No ordering is promised across different entities.

Topics: ``drivers`` (locations and availability), ``rides`` (status) and
``dispatch`` (escalations).  A subscription may narrow to one entity key,
e.g. a single ride id for the passenger tracking screen.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import ClassVar, Literal, Optional, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

TOPIC_DRIVERS = "drivers"
TOPIC_RIDES = "rides"
TOPIC_DISPATCH = "dispatch"

ALL_TOPICS = (TOPIC_DRIVERS, TOPIC_RIDES, TOPIC_DISPATCH)


# ── Event schemas ─────────────────────────────────────────────────────


class LocationChanged(BaseModel):
    topic: ClassVar[str] = TOPIC_DRIVERS

    type: Literal["location_changed"] = "location_changed"
    driver_id: str
    latitude: float
    longitude: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    recorded_at: datetime

    @property
    def key(self) -> str:
        return self.driver_id


class DriverStatusChanged(BaseModel):
    topic: ClassVar[str] = TOPIC_DRIVERS

    type: Literal["driver_status_changed"] = "driver_status_changed"
    driver_id: str
    availability: str
    active_ride_id: Optional[str] = None

    @property
    def key(self) -> str:
        return self.driver_id


class RideStatusChanged(BaseModel):
    topic: ClassVar[str] = TOPIC_RIDES

    type: Literal["ride_status_changed"] = "ride_status_changed"
    ride_id: str
    status: str
    dispatch_state: str
    driver_id: Optional[str] = None
    offered_driver_id: Optional[str] = None
    dispatch_attempts: int = 0

    @property
    def key(self) -> str:
        return self.ride_id


class DispatchEscalated(BaseModel):
    topic: ClassVar[str] = TOPIC_DISPATCH

    type: Literal["dispatch_escalated"] = "dispatch_escalated"
    ride_id: str
    attempts: int
    radius_km: float
    reason: str

    @property
    def key(self) -> str:
        return self.ride_id


Event = Union[LocationChanged, DriverStatusChanged, RideStatusChanged, DispatchEscalated]


# ── Subscriptions ─────────────────────────────────────────────────────


class Subscription:
    """Async iterator over the events a subscriber asked for."""

    def __init__(
        self,
        bus: "EventBus",
        topics: Optional[frozenset[str]],
        key: Optional[str],
    ):
        self._bus = bus
        self.topics = topics
        self.key = key
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self.closed = False

    def matches(self, event: Event) -> bool:
        if self.topics is not None and event.topic not in self.topics:
            return False
        return self.key is None or event.key == self.key

    def deliver(self, event: Event) -> None:
        self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Event:
        return await self._queue.get()

    def get_nowait(self) -> Optional[Event]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        self.closed = True
        self._bus.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *args) -> None:
        self.close()


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        topic: Union[str, tuple[str, ...], None] = None,
        key: Optional[str] = None,
    ) -> Subscription:
        if isinstance(topic, str):
            topics: Optional[frozenset[str]] = frozenset({topic})
        elif topic is None:
            topics = None
        else:
            topics = frozenset(topic)
        unknown = (topics or frozenset()) - set(ALL_TOPICS)
        if unknown:
            raise ValueError(f"Unknown topic(s): {sorted(unknown)}")

        subscription = Subscription(self, topics, key)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: Event) -> int:
        """Fan *event* out to every matching subscriber; returns the count."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)
                delivered += 1
        logger.debug("Published %s for %s to %d subscriber(s)", event.type, event.key, delivered)
        return delivered
