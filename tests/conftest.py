"""
Shared test fixtures.

Everything runs in process: the in-memory record stores back the services,
and an in-memory SQLite database (via aiosqlite) backs the SQL repository
tests, so no PostgreSQL or Redis is needed.  Timers are configured with
zero delays so ``DispatchScheduler.drain`` settles a ride quickly.
"""

import math
from datetime import timedelta
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.api.middleware import limiter
from ride_dispatch.config import DispatchSettings
from ride_dispatch.domain.entities import DriverPosition, utcnow
from ride_dispatch.domain.enums import DriverAvailability
from ride_dispatch.domain.geo import Point
from ride_dispatch.domain.pricing import FlatRatePricing
from ride_dispatch.infrastructure.database import (
    create_engine,
    create_schema,
    create_session_factory,
)
from ride_dispatch.infrastructure.memory import (
    InMemoryDriverRepository,
    InMemoryRideRepository,
)
from ride_dispatch.services.driver_registry import DriverRegistry
from ride_dispatch.services.event_bus import EventBus
from ride_dispatch.services.location_store import LocationStore
from ride_dispatch.services.ride_ledger import RideLedger
from ride_dispatch.workers.dispatcher import DispatchScheduler

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

KIGALI = Point(-1.95, 30.06)
KIGALI_DROPOFF = Point(-1.9441, 30.0619)


def offset(origin: Point, north_km: float = 0.0, east_km: float = 0.0) -> Point:
    """A point roughly *north_km* / *east_km* away from *origin*."""
    dlat = north_km / 111.32
    dlng = east_km / (111.32 * math.cos(math.radians(origin.latitude)))
    return Point(origin.latitude + dlat, origin.longitude + dlng)


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str, str, dict]] = []

    async def notify(self, recipient, kind, message, data=None):
        self.sent.append((recipient, kind, message, data or {}))

    def kinds_for(self, recipient: str) -> list[str]:
        return [kind for r, kind, _, _ in self.sent if r == recipient]


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _disable_rate_limits():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def registry(bus) -> DriverRegistry:
    return DriverRegistry(InMemoryDriverRepository(), bus)


@pytest.fixture
def ledger(bus) -> RideLedger:
    return RideLedger(InMemoryRideRepository(), bus, FlatRatePricing())


@pytest.fixture
def locations(registry, bus) -> LocationStore:
    return LocationStore(registry, bus, h3_resolution=8)


@pytest.fixture
def dispatch_settings() -> DispatchSettings:
    return DispatchSettings(
        auto_dispatch_timeout_seconds=0,
        retry_backoff_seconds=0,
        max_backoff_seconds=0,
        driver_matching_radius_km=5.0,
        max_retries=3,
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def scheduler(ledger, registry, locations, dispatch_settings, bus, notifier):
    scheduler = DispatchScheduler(
        ledger, registry, locations, dispatch_settings, bus, notifier
    )
    yield scheduler
    await scheduler.stop()


@pytest.fixture
def add_driver(registry, locations):
    """Register a driver, put them on shift and report one GPS sample."""

    async def _add(
        driver_id: str,
        point: Point,
        rating: float = 4.5,
        trips: int = 100,
        speed: Optional[float] = None,
        age_seconds: float = 0.0,
    ):
        await registry.register(driver_id, rating=rating, completed_trip_count=trips)
        await registry.set_availability(driver_id, DriverAvailability.AVAILABLE)
        await locations.update(
            DriverPosition(
                driver_id,
                point.latitude,
                point.longitude,
                recorded_at=utcnow() - timedelta(seconds=age_seconds),
                speed=speed,
            )
        )
        return await registry.get(driver_id)

    return _add


@pytest.fixture
def create_ride(ledger):
    async def _create(pickup: Point = KIGALI, radius_km: float = 5.0, **kwargs):
        ride, _ = await ledger.create(
            "passenger-1", pickup, KIGALI_DROPOFF, radius_km=radius_km, **kwargs
        )
        return ride

    return _create


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory SQLite schema per test."""
    engine = create_engine(TEST_DB_URL)
    await create_schema(engine)
    yield create_session_factory(engine)
    await engine.dispose()
