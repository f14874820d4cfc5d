"""
In-process record store.

Each method runs without yielding to the event loop between its read and
its write, so a compare-and-set is atomic with respect to every other
coroutine on the loop.  Entities are copied on the way in and out; callers
never share a mutable instance with the store.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional

from ride_dispatch.domain.entities import DriverState, RideRequest
from ride_dispatch.domain.enums import DispatchState, DriverAvailability
from ride_dispatch.domain.errors import ConflictingTransition


class InMemoryDriverRepository:
    def __init__(self) -> None:
        self._drivers: dict[str, DriverState] = {}

    async def get(self, driver_id: str) -> Optional[DriverState]:
        state = self._drivers.get(driver_id)
        return replace(state) if state else None

    async def add(self, state: DriverState) -> DriverState:
        if state.driver_id in self._drivers:
            raise ConflictingTransition(f"Driver {state.driver_id} already exists")
        state.version = 1
        self._drivers[state.driver_id] = replace(state)
        return state

    async def compare_and_set(self, state: DriverState, expected_version: int) -> bool:
        current = self._drivers.get(state.driver_id)
        if current is None or current.version != expected_version:
            return False
        state.version = expected_version + 1
        self._drivers[state.driver_id] = replace(state)
        return True

    async def list(
        self, availability: Optional[DriverAvailability] = None
    ) -> list[DriverState]:
        return [
            replace(s)
            for s in self._drivers.values()
            if availability is None or s.availability is availability
        ]


class InMemoryRideRepository:
    def __init__(self) -> None:
        self._rides: dict[str, RideRequest] = {}
        self._idempotency: dict[str, str] = {}

    async def get(self, ride_id: str) -> Optional[RideRequest]:
        ride = self._rides.get(ride_id)
        return replace(ride) if ride else None

    async def get_by_idempotency_key(self, key: str) -> Optional[RideRequest]:
        ride_id = self._idempotency.get(key)
        return await self.get(ride_id) if ride_id else None

    async def add(self, ride: RideRequest) -> RideRequest:
        if ride.ride_id in self._rides:
            raise ConflictingTransition(f"Ride {ride.ride_id} already exists")
        if ride.idempotency_key and ride.idempotency_key in self._idempotency:
            raise ConflictingTransition(
                f"Idempotency key {ride.idempotency_key} already used"
            )
        ride.version = 1
        self._rides[ride.ride_id] = replace(ride)
        if ride.idempotency_key:
            self._idempotency[ride.idempotency_key] = ride.ride_id
        return ride

    async def compare_and_set(self, ride: RideRequest, expected_version: int) -> bool:
        current = self._rides.get(ride.ride_id)
        if current is None or current.version != expected_version:
            return False
        ride.version = expected_version + 1
        self._rides[ride.ride_id] = replace(ride)
        return True

    async def list_active(
        self, dispatch_state: Optional[DispatchState] = None
    ) -> list[RideRequest]:
        rides = [
            replace(r)
            for r in self._rides.values()
            if not r.archived
            and (dispatch_state is None or r.dispatch_state is dispatch_state)
        ]
        return sorted(rides, key=lambda r: r.created_at)
