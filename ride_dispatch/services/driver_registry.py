"""
Driver availability registry.

Every mutation is read -> modify copy -> compare-and-set on the driver's
version, retried a few times on collision.  There is no registry-wide lock:
contention is scoped to a single driver key, so reservations for different
drivers never wait on each other.

``try_reserve`` is the one mutual-exclusion point of the dispatch engine.
Two cycles racing for the same driver both read version *v*; only one CAS
to *v + 1* can land, and the loser re-reads, sees ``on_trip`` and gives up.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Optional

from ride_dispatch.domain.entities import DriverState, utcnow
from ride_dispatch.domain.enums import DriverAvailability
from ride_dispatch.domain.errors import (
    ConflictingTransition,
    DriverNotFound,
    InvalidTransition,
    ReservationLost,
)
from ride_dispatch.infrastructure.store import DriverRepository

from .event_bus import DriverStatusChanged, EventBus

logger = logging.getLogger(__name__)


class _Skip(Exception):
    """Internal: the mutation decided there is nothing to write."""


class DriverRegistry:
    def __init__(
        self,
        repository: DriverRepository,
        bus: Optional[EventBus] = None,
        cas_attempts: int = 5,
    ):
        self.repository = repository
        self.bus = bus
        self.cas_attempts = cas_attempts

    # ── Reads ─────────────────────────────────────────────────────────

    async def find(self, driver_id: str) -> Optional[DriverState]:
        return await self.repository.get(driver_id)

    async def get(self, driver_id: str) -> DriverState:
        state = await self.repository.get(driver_id)
        if state is None:
            raise DriverNotFound(f"Driver {driver_id} not found")
        return state

    async def list(
        self, availability: Optional[DriverAvailability] = None
    ) -> list[DriverState]:
        return await self.repository.list(availability)

    # ── Writes ────────────────────────────────────────────────────────

    async def register(
        self,
        driver_id: str,
        *,
        rating: float = 5.0,
        completed_trip_count: int = 0,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        car_model: Optional[str] = None,
        car_plate: Optional[str] = None,
    ) -> DriverState:
        state = DriverState(
            driver_id=driver_id,
            rating=rating,
            completed_trip_count=completed_trip_count,
            name=name,
            phone=phone,
            car_model=car_model,
            car_plate=car_plate,
            updated_at=utcnow(),
        )
        await self.repository.add(state)
        logger.info("Registered driver %s", driver_id)
        return state

    async def update_profile(self, driver_id: str, **fields) -> DriverState:
        allowed = {"rating", "completed_trip_count", "name", "phone", "car_model", "car_plate"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update driver field(s): {sorted(unknown)}")

        def apply(state: DriverState) -> None:
            for name, value in fields.items():
                setattr(state, name, value)
            state.updated_at = utcnow()

        state, _ = await self._mutate(driver_id, apply)
        return state

    async def set_availability(
        self, driver_id: str, new_state: DriverAvailability
    ) -> DriverState:
        """Driver-initiated availability change (opt in / opt out)."""
        if new_state is DriverAvailability.ON_TRIP:
            raise InvalidTransition(
                f"Driver {driver_id}: on_trip is only reachable through a reservation"
            )
        if new_state is DriverAvailability.INACTIVE:
            raise InvalidTransition(
                f"Driver {driver_id}: inactive is set by the stale sweep, not by the driver"
            )

        def apply(state: DriverState) -> None:
            if state.availability is new_state:
                raise _Skip
            if state.availability is DriverAvailability.ON_TRIP:
                raise InvalidTransition(
                    f"Driver {driver_id} is on ride {state.active_ride_id}; "
                    "complete or release it first"
                )
            state.transition_to(new_state)

        state, _ = await self._mutate(driver_id, apply)
        return state

    async def reserve(self, driver_id: str, ride_id: str) -> DriverState:
        """Claim *driver_id* for *ride_id*; raises ``ReservationLost``."""

        def apply(state: DriverState) -> None:
            if state.availability is not DriverAvailability.AVAILABLE:
                raise ReservationLost(
                    f"Driver {driver_id} is {state.availability.value}, "
                    f"cannot reserve for ride {ride_id}"
                )
            state.transition_to(DriverAvailability.ON_TRIP, ride_id=ride_id)

        try:
            state, _ = await self._mutate(driver_id, apply)
        except ConflictingTransition as exc:
            raise ReservationLost(str(exc)) from exc
        logger.info("Driver %s reserved for ride %s", driver_id, ride_id)
        return state

    async def try_reserve(self, driver_id: str, ride_id: str) -> bool:
        try:
            await self.reserve(driver_id, ride_id)
        except ReservationLost as exc:
            logger.debug("Reservation lost: %s", exc)
            return False
        return True

    async def release(self, driver_id: str, ride_id: Optional[str] = None) -> bool:
        """on_trip -> available.  With *ride_id*, only if that ride holds the driver."""

        def apply(state: DriverState) -> None:
            if state.availability is not DriverAvailability.ON_TRIP:
                raise _Skip
            if ride_id is not None and state.active_ride_id != ride_id:
                raise _Skip
            state.transition_to(DriverAvailability.AVAILABLE)

        _, changed = await self._mutate(driver_id, apply)
        if changed:
            logger.info("Driver %s released (ride %s)", driver_id, ride_id)
        return changed

    async def complete_trip(self, driver_id: str, ride_id: str) -> DriverState:
        def apply(state: DriverState) -> None:
            if state.active_ride_id != ride_id:
                raise InvalidTransition(
                    f"Driver {driver_id} is not on ride {ride_id}"
                )
            state.transition_to(DriverAvailability.AVAILABLE)
            state.completed_trip_count += 1

        state, _ = await self._mutate(driver_id, apply)
        return state

    async def mark_inactive(self, driver_id: str) -> bool:
        """Staleness transition; only drivers waiting for work are affected."""

        def apply(state: DriverState) -> None:
            if state.availability is not DriverAvailability.AVAILABLE:
                raise _Skip
            state.transition_to(DriverAvailability.INACTIVE)

        _, changed = await self._mutate(driver_id, apply)
        if changed:
            logger.info("Driver %s marked inactive (stale location)", driver_id)
        return changed

    async def reactivate(self, driver_id: str) -> bool:
        """inactive -> available after a fresh sample, if the driver still intends to work."""

        def apply(state: DriverState) -> None:
            if state.availability is not DriverAvailability.INACTIVE or not state.intends_to_work:
                raise _Skip
            state.transition_to(DriverAvailability.AVAILABLE)

        _, changed = await self._mutate(driver_id, apply)
        if changed:
            logger.info("Driver %s reactivated by fresh location", driver_id)
        return changed

    # ── Internals ─────────────────────────────────────────────────────

    async def _mutate(
        self, driver_id: str, apply: Callable[[DriverState], None]
    ) -> tuple[DriverState, bool]:
        for _ in range(self.cas_attempts):
            current = await self.get(driver_id)
            updated = replace(current)
            try:
                apply(updated)
            except _Skip:
                return current, False
            updated.check_invariants()

            if await self.repository.compare_and_set(updated, current.version):
                if updated.availability is not current.availability:
                    self._publish(updated)
                return updated, True
            logger.debug("CAS collision on driver %s (v%d), retrying", driver_id, current.version)

        raise ConflictingTransition(
            f"Driver {driver_id}: gave up after {self.cas_attempts} concurrent updates"
        )

    def _publish(self, state: DriverState) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            DriverStatusChanged(
                driver_id=state.driver_id,
                availability=state.availability.value,
                active_ride_id=state.active_ride_id,
            )
        )
