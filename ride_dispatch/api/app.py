"""
FastAPI application factory.

* Registers routes for rides, drivers, admin and the WebSocket feeds.
* Starts / stops the dispatch engine (scheduler, stale sweeper, Redis
  forwarding) via lifespan events.
* Maps dispatch errors to HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.routes import admin, drivers, rides, stream
from ride_dispatch.config import Settings, settings as default_settings
from ride_dispatch.domain.errors import (
    ConflictingTransition,
    DispatchError,
    DispatchExhausted,
    DriverNotFound,
    InvalidCoordinate,
    InvalidTransition,
    ReservationLost,
    RideNotFound,
    StoreUnavailable,
)
from ride_dispatch.engine import DispatchEngine, build_engine

logging.basicConfig(level=logging.INFO)

logger = logging.getLogger(__name__)

_STATUS_FOR_ERROR: list[tuple[type[DispatchError], int]] = [
    (RideNotFound, 404),
    (DriverNotFound, 404),
    (InvalidCoordinate, 422),
    (InvalidTransition, 409),
    (ConflictingTransition, 409),
    (ReservationLost, 409),
    (DispatchExhausted, 409),
    (StoreUnavailable, 503),
]


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    for error_type, status_code in _STATUS_FOR_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = 500
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the dispatch workers on startup; stop them on shutdown."""
    await app.state.engine.start()
    yield
    await app.state.engine.stop()


def create_app(
    engine: Optional[DispatchEngine] = None, settings: Optional[Settings] = None
) -> FastAPI:
    app = FastAPI(
        title="Ride Dispatch & Live Location API",
        description=(
            "Tracks live driver positions, matches ride requests to nearby "
            "drivers by a weighted quality score, and streams location and "
            "ride-status changes to passengers and operators."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine or build_engine(settings or default_settings)

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(stream.router, prefix="/api/v1")

    return app
