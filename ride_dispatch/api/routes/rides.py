"""
Ride endpoints
==============

POST  /api/v1/rides                   -- request a ride (202; dispatch is async)
GET   /api/v1/rides/{ride_id}         -- status, driver and fare estimate
PATCH /api/v1/rides/{ride_id}/cancel  -- cancel from any non-terminal status
POST  /api/v1/rides/{ride_id}/start   -- driver picked the passenger up
POST  /api/v1/rides/{ride_id}/complete -- trip finished; driver freed
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from ride_dispatch.api.dependencies import get_engine
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import CancelRequest, RideCreateRequest, RideResponse
from ride_dispatch.domain.geo import Point
from ride_dispatch.engine import DispatchEngine

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post(
    "",
    status_code=202,
    response_model=RideResponse,
    summary="Request a ride",
    responses={202: {"description": "Ride accepted for dispatch; matching is async."}},
)
@limiter.limit("100/minute")
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    engine: DispatchEngine = Depends(get_engine),
):
    ride, _ = await engine.request_ride(
        body.passenger_id,
        Point(body.pickup_lat, body.pickup_lng),
        Point(body.dropoff_lat, body.dropoff_lng),
        preferred_driver_id=body.preferred_driver_id,
        idempotency_key=body.idempotency_key,
    )
    return RideResponse.from_entity(ride)


@router.get("/{ride_id}", response_model=RideResponse, summary="Get ride status")
@limiter.limit("100/minute")
async def get_ride(
    request: Request,
    ride_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    return RideResponse.from_entity(await engine.ledger.get(ride_id))


@router.patch(
    "/{ride_id}/cancel",
    response_model=RideResponse,
    summary="Cancel a ride",
    description=(
        "Cancels a pending, accepted or in-flight-dispatch ride.  Any driver "
        "held by the ride is released."
    ),
)
@limiter.limit("100/minute")
async def cancel_ride(
    request: Request,
    ride_id: str,
    body: Optional[CancelRequest] = None,
    engine: DispatchEngine = Depends(get_engine),
):
    ride = await engine.scheduler.cancel(ride_id, body.reason if body else None)
    return RideResponse.from_entity(ride)


@router.post("/{ride_id}/start", response_model=RideResponse, summary="Start the trip")
@limiter.limit("100/minute")
async def start_ride(
    request: Request,
    ride_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    return RideResponse.from_entity(await engine.scheduler.start_trip(ride_id))


@router.post(
    "/{ride_id}/complete", response_model=RideResponse, summary="Complete the trip"
)
@limiter.limit("100/minute")
async def complete_ride(
    request: Request,
    ride_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    return RideResponse.from_entity(await engine.scheduler.complete(ride_id))
