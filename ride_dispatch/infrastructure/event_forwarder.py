"""
Forward bus events to Redis pub/sub.

Every event lands on ``<prefix>:<topic>`` (``ride-dispatch:drivers``,
``ride-dispatch:rides``, ``ride-dispatch:dispatch``) as its JSON dump, so
dashboards and other processes can follow the fleet without polling.
Forwarding is best effort: a Redis failure is logged and the event skipped,
while in-process subscribers keep their own queues.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ride_dispatch.services.event_bus import Event, EventBus, Subscription

logger = logging.getLogger(__name__)


class RedisEventPublisher:
    def __init__(self, bus: EventBus, client: aioredis.Redis, prefix: str = "ride-dispatch"):
        self.bus = bus
        self.client = client
        self.prefix = prefix
        self.forwarded = 0
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    def channel_for(self, event: Event) -> str:
        return f"{self.prefix}:{event.topic}"

    async def forward(self, event: Event) -> bool:
        try:
            await self.client.publish(self.channel_for(event), event.model_dump_json())
        except RedisError as exc:
            logger.warning("Could not forward %s for %s: %s", event.type, event.key, exc)
            return False
        self.forwarded += 1
        return True

    async def start(self) -> None:
        self._subscription = self.bus.subscribe()
        self._task = asyncio.create_task(self._run(self._subscription))
        logger.info("Forwarding events to Redis channels %s:*", self.prefix)

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._subscription = None

    async def _run(self, subscription: Subscription) -> None:
        async for event in subscription:
            await self.forward(event)
