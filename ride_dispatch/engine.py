"""
Composition root.

``build_engine`` wires the record stores, services and workers for one
process; ``DispatchEngine.start`` / ``stop`` run from the FastAPI lifespan.
The API layer talks only to the engine, never to repositories directly.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from ride_dispatch.config import DispatchSettings, Settings
from ride_dispatch.domain.entities import DriverPosition, NearestDriver, RideRequest
from ride_dispatch.domain.geo import Point
from ride_dispatch.domain.pricing import FlatRatePricing
from ride_dispatch.infrastructure.database import (
    create_engine,
    create_schema,
    create_session_factory,
)
from ride_dispatch.infrastructure.event_forwarder import RedisEventPublisher
from ride_dispatch.infrastructure.memory import (
    InMemoryDriverRepository,
    InMemoryRideRepository,
)
from ride_dispatch.infrastructure.notifications import (
    LoggingNotificationSink,
    NotificationSink,
)
from ride_dispatch.infrastructure.redis_client import close_pools, get_redis
from ride_dispatch.infrastructure.repositories import (
    SqlDriverRepository,
    SqlRideRepository,
)
from ride_dispatch.infrastructure.store import DriverRepository, RideRepository
from ride_dispatch.services.driver_registry import DriverRegistry
from ride_dispatch.services.event_bus import EventBus
from ride_dispatch.services.location_store import LocationStore
from ride_dispatch.services.nearest import find_nearest_driver
from ride_dispatch.services.ride_ledger import RideLedger
from ride_dispatch.workers.dispatcher import DispatchScheduler
from ride_dispatch.workers.sweeper import StaleSweeper

logger = logging.getLogger(__name__)


class DispatchEngine:
    def __init__(
        self,
        settings: Settings,
        drivers: DriverRepository,
        rides: RideRepository,
        notifier: Optional[NotificationSink] = None,
        db_engine: Optional[AsyncEngine] = None,
    ):
        self.settings = settings
        self.db_engine = db_engine
        self.bus = EventBus()
        self.registry = DriverRegistry(drivers, self.bus)
        self.ledger = RideLedger(
            rides,
            self.bus,
            pricing=FlatRatePricing(
                settings.base_fare, settings.rate_per_km, settings.minimum_fare
            ),
            default_radius_km=settings.dispatch.driver_matching_radius_km,
        )
        self.locations = LocationStore(self.registry, self.bus, settings.h3_resolution)
        self.scheduler = DispatchScheduler(
            self.ledger,
            self.registry,
            self.locations,
            settings.dispatch.model_copy(deep=True),
            self.bus,
            notifier or LoggingNotificationSink(),
        )
        self.sweeper = StaleSweeper(
            self.locations,
            timeout_seconds=settings.stale_timeout_seconds,
            interval_seconds=settings.sweep_interval_seconds,
        )
        self.forwarder: Optional[RedisEventPublisher] = None
        self.started = False

    @property
    def dispatch_settings(self) -> DispatchSettings:
        return self.scheduler.settings

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        if self.started:
            return
        if self.db_engine is not None:
            await create_schema(self.db_engine)

        redis = await get_redis(self.settings.redis_url)
        if redis is not None:
            self.sweeper.redis = redis
            self.forwarder = RedisEventPublisher(
                self.bus, redis, self.settings.redis_channel_prefix
            )
            await self.forwarder.start()

        await self.scheduler.start()
        await self.sweeper.start()
        self.started = True
        logger.info("Dispatch engine started (store=%s)", self.settings.store_backend)

    async def stop(self) -> None:
        if not self.started:
            return
        await self.sweeper.stop()
        await self.scheduler.stop()
        if self.forwarder is not None:
            await self.forwarder.stop()
            await close_pools()
        if self.db_engine is not None:
            await self.db_engine.dispose()
        self.started = False
        logger.info("Dispatch engine stopped")

    # ── Operations spanning several components ────────────────────────

    async def request_ride(
        self,
        passenger_id: str,
        pickup: Point,
        dropoff: Point,
        *,
        preferred_driver_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> tuple[RideRequest, bool]:
        ride, created = await self.ledger.create(
            passenger_id,
            pickup,
            dropoff,
            radius_km=self.dispatch_settings.driver_matching_radius_km,
            preferred_driver_id=preferred_driver_id,
            idempotency_key=idempotency_key,
        )
        if created:
            await self.scheduler.submit(ride.ride_id)
        return ride, created

    async def report_location(self, position: DriverPosition) -> bool:
        return await self.locations.ingest(position)

    async def nearest_drivers(
        self, pickup: Point, max_distance_km: Optional[float] = None, limit: int = 5
    ) -> list[NearestDriver]:
        s = self.dispatch_settings
        return await find_nearest_driver(
            self.locations,
            self.registry,
            pickup,
            max_distance_km or s.driver_matching_radius_km,
            limit,
            s.fallback_speed_kmh,
            s.min_live_speed_kmh,
        )

    def update_settings(self, **changes) -> DispatchSettings:
        """Apply operator changes; the next dispatch cycle picks them up."""
        merged = self.dispatch_settings.model_dump()
        merged.update(changes)
        updated = DispatchSettings.model_validate(merged)
        self.scheduler.settings = updated
        logger.info("Dispatch settings updated: %s", sorted(changes))
        return updated


def build_engine(
    settings: Settings, notifier: Optional[NotificationSink] = None
) -> DispatchEngine:
    if settings.store_backend == "memory":
        return DispatchEngine(
            settings, InMemoryDriverRepository(), InMemoryRideRepository(), notifier
        )
    if settings.store_backend == "sql":
        db_engine = create_engine(settings.database_url)
        factory = create_session_factory(db_engine)
        return DispatchEngine(
            settings,
            SqlDriverRepository(factory),
            SqlRideRepository(factory),
            notifier,
            db_engine,
        )
    raise ValueError(f"Unknown store backend: {settings.store_backend!r}")
