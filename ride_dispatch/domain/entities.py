"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``RideRequest``: enforces valid lifecycle transitions
  (PENDING -> ACCEPTED -> IN_PROGRESS -> COMPLETED | CANCELLED).
- **State Pattern** on ``DriverState``: availability changes follow
  ``DRIVER_TRANSITIONS`` and keep ``active_ride_id`` in step with ON_TRIP.
- Every persisted entity carries a ``version`` used for optimistic
  compare-and-set in the record store.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .enums import (
    DRIVER_BOUND_STATUSES,
    DRIVER_TRANSITIONS,
    RIDE_TRANSITIONS,
    DispatchState,
    DriverAvailability,
    RideStatus,
)
from .errors import InvalidTransition
from .geo import Point, validate


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ── Live location ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class DriverPosition:
    driver_id: str
    latitude: float
    longitude: float
    recorded_at: datetime
    heading: Optional[float] = None
    speed: Optional[float] = None  # m/s, as reported by the device
    accuracy: Optional[float] = None  # metres

    def __post_init__(self) -> None:
        validate(self.latitude, self.longitude)
        # device clocks without an offset are taken as UTC
        if self.recorded_at.tzinfo is None:
            object.__setattr__(self, "recorded_at", self.recorded_at.replace(tzinfo=timezone.utc))

    @property
    def point(self) -> Point:
        return Point(self.latitude, self.longitude)

    @property
    def speed_kmh(self) -> Optional[float]:
        return None if self.speed is None else self.speed * 3.6


# ── Drivers ───────────────────────────────────────────────────────────


@dataclass
class DriverState:
    driver_id: str
    availability: DriverAvailability = DriverAvailability.OFFLINE
    rating: float = 5.0
    completed_trip_count: int = 0
    active_ride_id: Optional[str] = None
    available_since: Optional[datetime] = None
    intends_to_work: bool = False
    name: Optional[str] = None
    phone: Optional[str] = None
    car_model: Optional[str] = None
    car_plate: Optional[str] = None
    version: int = 0
    updated_at: Optional[datetime] = None

    def transition_to(
        self, new_state: DriverAvailability, ride_id: Optional[str] = None
    ) -> None:
        """Move to *new_state* if the transition is legal, else raise."""
        allowed = DRIVER_TRANSITIONS.get(self.availability, set())
        if new_state not in allowed:
            raise InvalidTransition(
                f"Driver {self.driver_id}: cannot transition from "
                f"{self.availability.value} to {new_state.value}"
            )
        if new_state is DriverAvailability.ON_TRIP and not ride_id:
            raise InvalidTransition(
                f"Driver {self.driver_id}: on_trip requires a ride reservation"
            )

        now = utcnow()
        self.availability = new_state
        self.active_ride_id = ride_id if new_state is DriverAvailability.ON_TRIP else None
        self.available_since = now if new_state is DriverAvailability.AVAILABLE else None
        if new_state is DriverAvailability.AVAILABLE:
            self.intends_to_work = True
        elif new_state is DriverAvailability.OFFLINE:
            self.intends_to_work = False
        self.updated_at = now

    def check_invariants(self) -> None:
        on_trip = self.availability is DriverAvailability.ON_TRIP
        if on_trip != (self.active_ride_id is not None):
            raise InvalidTransition(
                f"Driver {self.driver_id}: active_ride_id must be set iff on_trip"
            )


# ── Rides ─────────────────────────────────────────────────────────────


@dataclass
class RideRequest:
    passenger_id: str
    pickup: Point
    dropoff: Point
    ride_id: str = field(default_factory=new_id)
    status: RideStatus = RideStatus.PENDING
    dispatch_state: DispatchState = DispatchState.AWAITING_DISPATCH
    driver_id: Optional[str] = None
    offered_driver_id: Optional[str] = None
    preferred_driver_id: Optional[str] = None
    dispatch_attempts: int = 0
    radius_km: float = 10.0
    fare_estimate: Optional[float] = None
    cancel_reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    archived: bool = False
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return not RIDE_TRANSITIONS.get(self.status)

    def transition_to(
        self, new_status: RideStatus, driver_id: Optional[str] = None
    ) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        allowed = RIDE_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Ride {self.ride_id}: cannot transition from "
                f"{self.status.value} to {new_status.value}"
            )
        if new_status is RideStatus.ACCEPTED:
            if not driver_id:
                raise InvalidTransition(
                    f"Ride {self.ride_id}: accepted requires a driver"
                )
            self.driver_id = driver_id
        elif new_status not in DRIVER_BOUND_STATUSES:
            self.driver_id = None
        self.offered_driver_id = None
        self.status = new_status
        self.updated_at = utcnow()


# ── Matching ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MatchCandidate:
    """Ephemeral per-cycle ranking row; never persisted."""

    driver_id: str
    distance_km: float
    eta_minutes: float
    score: float = 0.0


@dataclass(frozen=True)
class NearestDriver:
    driver_id: str
    distance_km: float
    estimated_arrival_minutes: int
    rating: float
    total_trips: int
    name: Optional[str] = None
    phone: Optional[str] = None
    car_model: Optional[str] = None
    car_plate: Optional[str] = None
