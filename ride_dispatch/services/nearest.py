"""Nearest-driver query: the lookup primitive behind matching and the admin map."""

from __future__ import annotations

from typing import Optional

from ride_dispatch.domain import geo
from ride_dispatch.domain.entities import DriverPosition, NearestDriver

from .driver_registry import DriverRegistry
from .location_store import LocationStore


def arrival_minutes(
    distance_km: float,
    position: Optional[DriverPosition],
    fallback_speed_kmh: float = geo.FALLBACK_SPEED_KMH,
    min_live_speed_kmh: float = 5.0,
) -> float:
    """ETA using the driver's live speed when it is meaningful, else the fallback.

    A parked or crawling driver reports near-zero speed, which would make
    every ETA explode, so samples below *min_live_speed_kmh* are ignored.
    """
    live = position.speed_kmh if position is not None else None
    if live is not None and live >= min_live_speed_kmh:
        return geo.eta_minutes(distance_km, live)
    return geo.eta_minutes(distance_km, fallback_speed_kmh)


async def find_nearest_driver(
    locations: LocationStore,
    registry: DriverRegistry,
    pickup: geo.Point,
    max_distance_km: float = 10.0,
    limit: int = 5,
    fallback_speed_kmh: float = geo.FALLBACK_SPEED_KMH,
    min_live_speed_kmh: float = 5.0,
) -> list[NearestDriver]:
    results: list[NearestDriver] = []
    for driver_id, distance_km in await locations.nearby(pickup, max_distance_km, limit):
        state = await registry.find(driver_id)
        if state is None:
            continue
        eta = arrival_minutes(
            distance_km,
            locations.get(driver_id),
            fallback_speed_kmh,
            min_live_speed_kmh,
        )
        results.append(
            NearestDriver(
                driver_id=driver_id,
                distance_km=round(distance_km, 3),
                estimated_arrival_minutes=round(eta),
                rating=state.rating,
                total_trips=state.completed_trip_count,
                name=state.name,
                phone=state.phone,
                car_model=state.car_model,
                car_plate=state.car_plate,
            )
        )
    return results
