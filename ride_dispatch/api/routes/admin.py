"""
Admin / operator endpoints
==========================

GET   /api/v1/admin/health                 -- liveness and basic counters
GET   /api/v1/admin/escalations            -- rides waiting for manual dispatch
POST  /api/v1/admin/rides/{ride_id}/assign -- assign a specific driver
POST  /api/v1/admin/rides/{ride_id}/dispatch -- restart automatic dispatch
GET   /api/v1/admin/live-map               -- every tracked driver position
GET   /api/v1/admin/settings               -- current dispatch settings
PATCH /api/v1/admin/settings               -- change dispatch settings
"""

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from ride_dispatch.api.dependencies import get_engine
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import (
    AssignRequest,
    DispatchResponse,
    HealthResponse,
    LiveMapEntry,
    RideResponse,
    SettingsUpdate,
)
from ride_dispatch.config import DispatchSettings
from ride_dispatch.domain.entities import utcnow
from ride_dispatch.engine import DispatchEngine

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(engine: DispatchEngine = Depends(get_engine)):
    return HealthResponse(
        store_backend=engine.settings.store_backend,
        tracked_drivers=len(engine.locations),
        subscribers=engine.bus.subscriber_count,
    )


@router.get(
    "/escalations",
    response_model=list[RideResponse],
    summary="Rides whose automatic dispatch was exhausted",
)
@limiter.limit("100/minute")
async def list_escalations(
    request: Request,
    engine: DispatchEngine = Depends(get_engine),
):
    return [RideResponse.from_entity(r) for r in await engine.ledger.list_escalated()]


@router.post(
    "/rides/{ride_id}/assign",
    response_model=RideResponse,
    summary="Manually assign a driver to a pending ride",
)
@limiter.limit("100/minute")
async def assign_ride(
    request: Request,
    ride_id: str,
    body: AssignRequest,
    engine: DispatchEngine = Depends(get_engine),
):
    ride = await engine.scheduler.manual_assign(ride_id, body.driver_id)
    return RideResponse.from_entity(ride)


@router.post(
    "/rides/{ride_id}/dispatch",
    response_model=DispatchResponse,
    summary="Run automatic dispatch again with a fresh retry budget",
)
@limiter.limit("100/minute")
async def redispatch_ride(
    request: Request,
    ride_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    outcome = await engine.scheduler.redispatch(ride_id)
    return DispatchResponse(ride_id=ride_id, outcome=outcome.value)


@router.get(
    "/live-map",
    response_model=list[LiveMapEntry],
    summary="Latest position and state of every tracked driver",
)
@limiter.limit("100/minute")
async def live_map(
    request: Request,
    engine: DispatchEngine = Depends(get_engine),
):
    cutoff = utcnow() - timedelta(seconds=engine.settings.stale_timeout_seconds)
    entries = []
    for position in engine.locations.snapshot():
        state = await engine.registry.find(position.driver_id)
        entries.append(
            LiveMapEntry.from_position(position, state, position.recorded_at < cutoff)
        )
    entries.sort(key=lambda e: e.driver_id)
    return entries


@router.get("/settings", response_model=DispatchSettings, summary="Dispatch settings")
async def get_settings(engine: DispatchEngine = Depends(get_engine)):
    return engine.dispatch_settings


@router.patch(
    "/settings", response_model=DispatchSettings, summary="Update dispatch settings"
)
@limiter.limit("30/minute")
async def update_settings(
    request: Request,
    body: SettingsUpdate,
    engine: DispatchEngine = Depends(get_engine),
):
    try:
        return engine.update_settings(**body.model_dump(exclude_unset=True))
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
