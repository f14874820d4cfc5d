"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ride_dispatch.domain.entities import (
    DriverPosition,
    DriverState,
    NearestDriver,
    RideRequest,
)
from ride_dispatch.domain.enums import DriverAvailability


# ── Requests ──────────────────────────────────────────────────────────


class RideCreateRequest(BaseModel):
    passenger_id: str = Field(..., min_length=1, max_length=64)
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    preferred_driver_id: Optional[str] = Field(
        None, description="Ranked first when that driver is eligible."
    )
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent double-booking on retries.",
    )


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=200)


class DriverRegisterRequest(BaseModel):
    driver_id: str = Field(..., min_length=1, max_length=64)
    rating: float = Field(5.0, ge=0, le=5)
    completed_trip_count: int = Field(0, ge=0)
    name: Optional[str] = None
    phone: Optional[str] = None
    car_model: Optional[str] = None
    car_plate: Optional[str] = None


class AvailabilityRequest(BaseModel):
    availability: DriverAvailability


class LocationReport(BaseModel):
    latitude: float
    longitude: float
    heading: Optional[float] = Field(None, ge=0, lt=360)
    speed: Optional[float] = Field(None, ge=0, description="Metres per second.")
    accuracy: Optional[float] = Field(None, ge=0, description="Metres.")
    recorded_at: Optional[datetime] = Field(
        None, description="Device timestamp; server receive time when omitted."
    )

    @field_validator("recorded_at")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class AssignRequest(BaseModel):
    driver_id: str


class SettingsUpdate(BaseModel):
    auto_dispatch_enabled: Optional[bool] = None
    auto_dispatch_timeout_seconds: Optional[float] = None
    driver_matching_radius_km: Optional[float] = None
    min_driver_rating: Optional[float] = None
    requires_driver_confirmation: Optional[bool] = None
    driver_confirmation_timeout_seconds: Optional[float] = None
    max_retries: Optional[int] = None
    radius_growth_factor: Optional[float] = None
    max_radius_km: Optional[float] = None
    retry_backoff_seconds: Optional[float] = None
    retry_backoff_multiplier: Optional[float] = None
    max_backoff_seconds: Optional[float] = None
    decline_cooldown_seconds: Optional[float] = None


# ── Responses ─────────────────────────────────────────────────────────


class RideResponse(BaseModel):
    id: str
    passenger_id: str
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: float
    dropoff_lng: float
    status: str
    dispatch_state: str
    driver_id: Optional[str] = None
    offered_driver_id: Optional[str] = None
    dispatch_attempts: int = 0
    radius_km: float
    fare_estimate: Optional[float] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, ride: RideRequest) -> "RideResponse":
        return cls(
            id=ride.ride_id,
            passenger_id=ride.passenger_id,
            pickup_lat=ride.pickup.latitude,
            pickup_lng=ride.pickup.longitude,
            dropoff_lat=ride.dropoff.latitude,
            dropoff_lng=ride.dropoff.longitude,
            status=ride.status.value,
            dispatch_state=ride.dispatch_state.value,
            driver_id=ride.driver_id,
            offered_driver_id=ride.offered_driver_id,
            dispatch_attempts=ride.dispatch_attempts,
            radius_km=ride.radius_km,
            fare_estimate=ride.fare_estimate,
            cancel_reason=ride.cancel_reason,
            created_at=ride.created_at,
            updated_at=ride.updated_at,
        )


class DriverResponse(BaseModel):
    id: str
    availability: str
    rating: float
    completed_trip_count: int
    active_ride_id: Optional[str] = None
    available_since: Optional[datetime] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    car_model: Optional[str] = None
    car_plate: Optional[str] = None

    @classmethod
    def from_entity(cls, state: DriverState) -> "DriverResponse":
        return cls(
            id=state.driver_id,
            availability=state.availability.value,
            rating=state.rating,
            completed_trip_count=state.completed_trip_count,
            active_ride_id=state.active_ride_id,
            available_since=state.available_since,
            name=state.name,
            phone=state.phone,
            car_model=state.car_model,
            car_plate=state.car_plate,
        )


class LocationAck(BaseModel):
    driver_id: str
    applied: bool


class NearestDriverResponse(BaseModel):
    driver_id: str
    distance_km: float
    estimated_arrival_minutes: int
    rating: float
    total_trips: int
    name: Optional[str] = None
    phone: Optional[str] = None
    car_model: Optional[str] = None
    car_plate: Optional[str] = None

    @classmethod
    def from_entity(cls, nearest: NearestDriver) -> "NearestDriverResponse":
        return cls(**vars(nearest))


class LiveMapEntry(BaseModel):
    driver_id: str
    latitude: float
    longitude: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    recorded_at: datetime
    availability: Optional[str] = None
    active_ride_id: Optional[str] = None
    stale: bool = False

    @classmethod
    def from_position(
        cls, position: DriverPosition, state: Optional[DriverState], stale: bool
    ) -> "LiveMapEntry":
        return cls(
            driver_id=position.driver_id,
            latitude=position.latitude,
            longitude=position.longitude,
            heading=position.heading,
            speed=position.speed,
            recorded_at=position.recorded_at,
            availability=state.availability.value if state else None,
            active_ride_id=state.active_ride_id if state else None,
            stale=stale,
        )


class DispatchResponse(BaseModel):
    ride_id: str
    outcome: str


class HealthResponse(BaseModel):
    status: str = "ok"
    store_backend: str
    tracked_drivers: int = 0
    subscribers: int = 0
