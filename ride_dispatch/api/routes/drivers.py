"""
Driver endpoints
================

POST  /api/v1/drivers                                  -- register a driver
GET   /api/v1/drivers/nearest?lat=&lng=                -- nearest available drivers
GET   /api/v1/drivers/{driver_id}                      -- current state
PATCH /api/v1/drivers/{driver_id}/availability         -- go online / offline
POST  /api/v1/drivers/{driver_id}/location             -- GPS sample
POST  /api/v1/drivers/{driver_id}/rides/{ride_id}/confirm -- accept an offer
POST  /api/v1/drivers/{driver_id}/rides/{ride_id}/decline -- back out
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ride_dispatch.api.dependencies import get_engine
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import (
    AvailabilityRequest,
    DriverRegisterRequest,
    DriverResponse,
    LocationAck,
    LocationReport,
    NearestDriverResponse,
    RideResponse,
)
from ride_dispatch.domain.entities import DriverPosition, utcnow
from ride_dispatch.domain.geo import Point
from ride_dispatch.engine import DispatchEngine

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post(
    "", status_code=201, response_model=DriverResponse, summary="Register a driver"
)
@limiter.limit("30/minute")
async def register_driver(
    request: Request,
    body: DriverRegisterRequest,
    engine: DispatchEngine = Depends(get_engine),
):
    state = await engine.registry.register(
        body.driver_id,
        rating=body.rating,
        completed_trip_count=body.completed_trip_count,
        name=body.name,
        phone=body.phone,
        car_model=body.car_model,
        car_plate=body.car_plate,
    )
    return DriverResponse.from_entity(state)


@router.get(
    "/nearest",
    response_model=list[NearestDriverResponse],
    summary="Nearest available drivers to a pickup point",
)
@limiter.limit("100/minute")
async def nearest_drivers(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    max_distance_km: Optional[float] = Query(None, gt=0),
    limit: int = Query(5, ge=1, le=50),
    engine: DispatchEngine = Depends(get_engine),
):
    found = await engine.nearest_drivers(Point(lat, lng), max_distance_km, limit)
    return [NearestDriverResponse.from_entity(n) for n in found]


@router.get("/{driver_id}", response_model=DriverResponse, summary="Get driver state")
@limiter.limit("100/minute")
async def get_driver(
    request: Request,
    driver_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    return DriverResponse.from_entity(await engine.registry.get(driver_id))


@router.patch(
    "/{driver_id}/availability",
    response_model=DriverResponse,
    summary="Opt in to or out of receiving rides",
)
@limiter.limit("100/minute")
async def set_availability(
    request: Request,
    driver_id: str,
    body: AvailabilityRequest,
    engine: DispatchEngine = Depends(get_engine),
):
    state = await engine.registry.set_availability(driver_id, body.availability)
    return DriverResponse.from_entity(state)


@router.post(
    "/{driver_id}/location",
    response_model=LocationAck,
    summary="Report a GPS sample",
    description=(
        "Samples older than the stored one are acknowledged with "
        "``applied: false`` and otherwise ignored."
    ),
)
@limiter.limit("1200/minute")
async def report_location(
    request: Request,
    driver_id: str,
    body: LocationReport,
    engine: DispatchEngine = Depends(get_engine),
):
    position = DriverPosition(
        driver_id=driver_id,
        latitude=body.latitude,
        longitude=body.longitude,
        recorded_at=body.recorded_at or utcnow(),
        heading=body.heading,
        speed=body.speed,
        accuracy=body.accuracy,
    )
    applied = await engine.report_location(position)
    return LocationAck(driver_id=driver_id, applied=applied)


@router.post(
    "/{driver_id}/rides/{ride_id}/confirm",
    response_model=RideResponse,
    summary="Accept an offered ride",
)
@limiter.limit("100/minute")
async def confirm_ride(
    request: Request,
    driver_id: str,
    ride_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    return RideResponse.from_entity(await engine.scheduler.confirm(ride_id, driver_id))


@router.post(
    "/{driver_id}/rides/{ride_id}/decline",
    response_model=RideResponse,
    summary="Decline an offered or accepted ride",
)
@limiter.limit("100/minute")
async def decline_ride(
    request: Request,
    driver_id: str,
    ride_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    return RideResponse.from_entity(await engine.scheduler.decline(ride_id, driver_id))
