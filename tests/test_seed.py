import pytest

from ride_dispatch.config import Settings
from ride_dispatch.domain.enums import DriverAvailability
from ride_dispatch.domain.geo import Point
from ride_dispatch.engine import build_engine
from seed import DRIVERS, seed


@pytest.mark.asyncio
async def test_seed_is_repeatable():
    engine = build_engine(Settings(store_backend="memory"))

    assert await seed(engine) == len(DRIVERS)
    assert await seed(engine) == 0

    available = await engine.registry.list(DriverAvailability.AVAILABLE)
    assert len(available) == len(DRIVERS)
    assert len(engine.locations) == len(DRIVERS)


@pytest.mark.asyncio
async def test_seeded_fleet_is_dispatchable():
    engine = build_engine(Settings(store_backend="memory"))
    await seed(engine)

    found = await engine.nearest_drivers(Point(-1.9500, 30.0600), 2.0, limit=3)

    assert [n.driver_id for n in found][0] == "drv-001"
    assert found[0].car_plate == "RAD 101 A"
