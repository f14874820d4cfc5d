"""
Seed script -- registers a sample fleet for reviewers and local demos.

Run against the configured store (``STORE_BACKEND=sql`` to persist):
    python seed.py

Creates 10 drivers spread around central Kigali, marks them available and
reports a first GPS sample for each.  Already-registered drivers are left
untouched.
"""

import asyncio
import logging

from ride_dispatch.config import settings
from ride_dispatch.domain.entities import DriverPosition, utcnow
from ride_dispatch.domain.enums import DriverAvailability
from ride_dispatch.domain.errors import ConflictingTransition
from ride_dispatch.engine import DispatchEngine, build_engine
from ride_dispatch.infrastructure.database import create_schema

logger = logging.getLogger(__name__)

DRIVERS = [
    {"id": "drv-001", "name": "Jean Habimana", "rating": 4.9, "trips": 812, "lat": -1.9490, "lng": 30.0590, "car": ("Toyota Corolla", "RAD 101 A")},
    {"id": "drv-002", "name": "Aline Uwase", "rating": 4.7, "trips": 430, "lat": -1.9530, "lng": 30.0620, "car": ("Toyota Vitz", "RAB 220 C")},
    {"id": "drv-003", "name": "Eric Mugisha", "rating": 4.2, "trips": 95, "lat": -1.9450, "lng": 30.0650, "car": ("Suzuki Swift", "RAE 331 B")},
    {"id": "drv-004", "name": "Grace Ingabire", "rating": 4.8, "trips": 260, "lat": -1.9560, "lng": 30.0560, "car": ("Hyundai Accent", "RAC 442 D")},
    {"id": "drv-005", "name": "Patrick Nshuti", "rating": 3.4, "trips": 40, "lat": -1.9510, "lng": 30.0700, "car": ("Toyota Premio", "RAD 553 E")},
    {"id": "drv-006", "name": "Diane Mukamana", "rating": 4.6, "trips": 150, "lat": -1.9600, "lng": 30.0500, "car": ("Kia Rio", "RAF 664 A")},
    {"id": "drv-007", "name": "Claude Niyonzima", "rating": 4.1, "trips": 610, "lat": -1.9400, "lng": 30.0800, "car": ("Toyota RAV4", "RAB 775 B")},
    {"id": "drv-008", "name": "Sandrine Iradukunda", "rating": 5.0, "trips": 20, "lat": -1.9700, "lng": 30.0400, "car": ("Nissan Note", "RAE 886 C")},
    {"id": "drv-009", "name": "Olivier Hakizimana", "rating": 3.9, "trips": 333, "lat": -1.9300, "lng": 30.1000, "car": ("Toyota Fielder", "RAC 997 D")},
    {"id": "drv-010", "name": "Yvette Umutoni", "rating": 4.4, "trips": 75, "lat": -1.9900, "lng": 30.0300, "car": ("Honda Fit", "RAD 108 E")},
]


async def seed(engine: DispatchEngine) -> int:
    """Register, activate and locate the sample fleet.  Returns how many were new."""
    created = 0
    for d in DRIVERS:
        car_model, car_plate = d["car"]
        try:
            await engine.registry.register(
                d["id"],
                rating=d["rating"],
                completed_trip_count=d["trips"],
                name=d["name"],
                car_model=car_model,
                car_plate=car_plate,
            )
        except ConflictingTransition:
            logger.info("Driver %s already registered; skipping", d["id"])
            continue
        await engine.registry.set_availability(d["id"], DriverAvailability.AVAILABLE)
        await engine.locations.update(
            DriverPosition(d["id"], d["lat"], d["lng"], recorded_at=utcnow())
        )
        created += 1
    logger.info("Seeded %d driver(s)", created)
    return created


async def main():
    logging.basicConfig(level=logging.INFO)
    engine = build_engine(settings)
    if engine.db_engine is not None:
        await create_schema(engine.db_engine)
    await seed(engine)
    if engine.db_engine is not None:
        await engine.db_engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
