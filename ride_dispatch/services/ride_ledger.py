"""
Ride ledger -- owner of the ride state machine.

Every write validates the status the caller expects, applies the change to
a copy and commits it with a compare-and-set on ``(ride_id, version)``.  A
collision raises ``ConflictingTransition``; the caller re-reads and retries
or abandons.  Illegal edges raise ``InvalidTransition``.

Terminal rides (completed / cancelled) are archived: still readable by id,
no longer listed as active.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Optional

from ride_dispatch.domain.entities import RideRequest, utcnow
from ride_dispatch.domain.enums import (
    TERMINAL_RIDE_STATUSES,
    DispatchState,
    RideStatus,
)
from ride_dispatch.domain.errors import (
    ConflictingTransition,
    InvalidTransition,
    RideNotFound,
)
from ride_dispatch.domain.geo import Point
from ride_dispatch.domain.pricing import PricingFunction
from ride_dispatch.infrastructure.store import RideRepository

from .event_bus import EventBus, RideStatusChanged

logger = logging.getLogger(__name__)


class RideLedger:
    def __init__(
        self,
        repository: RideRepository,
        bus: Optional[EventBus] = None,
        pricing: Optional[PricingFunction] = None,
        default_radius_km: float = 10.0,
    ):
        self.repository = repository
        self.bus = bus
        self.pricing = pricing
        self.default_radius_km = default_radius_km

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, ride_id: str) -> RideRequest:
        ride = await self.repository.get(ride_id)
        if ride is None:
            raise RideNotFound(f"Ride {ride_id} not found")
        return ride

    async def list_active(self) -> list[RideRequest]:
        return await self.repository.list_active()

    async def list_escalated(self) -> list[RideRequest]:
        return await self.repository.list_active(DispatchState.DISPATCH_FAILED)

    # ── Creation ──────────────────────────────────────────────────────

    async def create(
        self,
        passenger_id: str,
        pickup: Point,
        dropoff: Point,
        *,
        radius_km: Optional[float] = None,
        preferred_driver_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> tuple[RideRequest, bool]:
        """Create a pending ride.  Returns ``(ride, created)``; replays return the original."""
        if idempotency_key:
            existing = await self.repository.get_by_idempotency_key(idempotency_key)
            if existing:
                return existing, False

        ride = RideRequest(
            passenger_id=passenger_id,
            pickup=pickup,
            dropoff=dropoff,
            preferred_driver_id=preferred_driver_id,
            radius_km=radius_km or self.default_radius_km,
            idempotency_key=idempotency_key,
        )
        if self.pricing is not None:
            ride.fare_estimate = self.pricing(pickup, dropoff)

        try:
            await self.repository.add(ride)
        except ConflictingTransition:
            # lost an idempotency race with a concurrent replay
            if idempotency_key:
                existing = await self.repository.get_by_idempotency_key(idempotency_key)
                if existing:
                    return existing, False
            raise

        logger.info("Ride %s created for passenger %s", ride.ride_id, passenger_id)
        self._publish(ride)
        return ride, True

    # ── Status transitions ────────────────────────────────────────────

    async def transition(
        self,
        ride_id: str,
        expected: RideStatus,
        new: RideStatus,
        *,
        driver_id: Optional[str] = None,
        dispatch_state: Optional[DispatchState] = None,
        **changes,
    ) -> RideRequest:
        def apply(ride: RideRequest) -> None:
            ride.transition_to(new, driver_id=driver_id)
            if dispatch_state is not None:
                ride.dispatch_state = dispatch_state
            for name, value in changes.items():
                setattr(ride, name, value)
            if new in TERMINAL_RIDE_STATUSES:
                ride.archived = True

        ride = await self._commit(ride_id, expected, apply)
        logger.info("Ride %s: %s -> %s", ride_id, expected.value, new.value)
        return ride

    async def accept(self, ride_id: str, driver_id: str) -> RideRequest:
        return await self.transition(
            ride_id,
            RideStatus.PENDING,
            RideStatus.ACCEPTED,
            driver_id=driver_id,
            dispatch_state=DispatchState.ACCEPTED,
        )

    async def requeue(self, ride_id: str, driver_id: str) -> RideRequest:
        """accepted -> pending when the assigned driver backs out before pickup."""
        ride = await self.get(ride_id)
        if ride.driver_id != driver_id:
            raise InvalidTransition(f"Driver {driver_id} is not assigned to ride {ride_id}")
        return await self.transition(
            ride_id,
            RideStatus.ACCEPTED,
            RideStatus.PENDING,
            dispatch_state=DispatchState.DECLINED,
        )

    async def start(self, ride_id: str) -> RideRequest:
        return await self.transition(ride_id, RideStatus.ACCEPTED, RideStatus.IN_PROGRESS)

    async def complete(self, ride_id: str) -> RideRequest:
        return await self.transition(ride_id, RideStatus.IN_PROGRESS, RideStatus.COMPLETED)

    async def cancel(
        self, ride_id: str, reason: Optional[str] = None, attempts: int = 3
    ) -> tuple[RideRequest, RideRequest]:
        """Cancel from whatever non-terminal status the ride is in.

        Returns ``(before, after)`` so the caller can release whichever
        driver the ride was holding.
        """
        for _ in range(attempts):
            before = await self.get(ride_id)
            try:
                after = await self.transition(
                    ride_id,
                    before.status,
                    RideStatus.CANCELLED,
                    dispatch_state=DispatchState.CANCELLED,
                    cancel_reason=reason,
                )
            except ConflictingTransition:
                continue
            return before, after
        raise ConflictingTransition(f"Ride {ride_id}: cancel kept colliding")

    # ── Dispatch bookkeeping (status stays pending) ───────────────────

    async def set_dispatch_state(
        self, ride_id: str, state: DispatchState
    ) -> RideRequest:
        def apply(ride: RideRequest) -> None:
            ride.dispatch_state = state

        return await self._commit(ride_id, RideStatus.PENDING, apply)

    async def offer(self, ride_id: str, driver_id: str) -> RideRequest:
        """Hold a reserved driver on the ride until they confirm."""

        def apply(ride: RideRequest) -> None:
            if ride.offered_driver_id is not None:
                raise ConflictingTransition(
                    f"Ride {ride_id} already offered to {ride.offered_driver_id}"
                )
            ride.offered_driver_id = driver_id
            ride.dispatch_state = DispatchState.ASSIGNED

        return await self._commit(ride_id, RideStatus.PENDING, apply)

    async def withdraw_offer(
        self,
        ride_id: str,
        driver_id: str,
        reason: DispatchState = DispatchState.DECLINED,
    ) -> RideRequest:
        """Clear a pending offer, recording why (declined or expired)."""

        def apply(ride: RideRequest) -> None:
            if ride.offered_driver_id != driver_id:
                raise InvalidTransition(
                    f"Ride {ride_id} is not offered to driver {driver_id}"
                )
            ride.offered_driver_id = None
            ride.dispatch_state = reason

        ride = await self._commit(ride_id, RideStatus.PENDING, apply)
        logger.info("Ride %s offer to %s withdrawn (%s)", ride_id, driver_id, reason.value)
        return ride

    async def record_miss(
        self, ride_id: str, radius_km: float, state: DispatchState
    ) -> RideRequest:
        """Count an unsuccessful matching cycle and store the next radius."""

        def apply(ride: RideRequest) -> None:
            ride.dispatch_attempts += 1
            ride.radius_km = radius_km
            ride.dispatch_state = state

        return await self._commit(ride_id, RideStatus.PENDING, apply)

    async def restart_dispatch(self, ride_id: str, radius_km: float) -> RideRequest:
        """Give an escalated ride a fresh retry budget (operator action)."""

        def apply(ride: RideRequest) -> None:
            if ride.offered_driver_id is not None:
                raise ConflictingTransition(
                    f"Ride {ride_id} has an outstanding offer to {ride.offered_driver_id}"
                )
            ride.dispatch_attempts = 0
            ride.radius_km = radius_km
            ride.dispatch_state = DispatchState.AWAITING_DISPATCH

        return await self._commit(ride_id, RideStatus.PENDING, apply)

    # ── Internals ─────────────────────────────────────────────────────

    async def _commit(
        self,
        ride_id: str,
        expected: RideStatus,
        apply: Callable[[RideRequest], None],
    ) -> RideRequest:
        current = await self.get(ride_id)
        if current.status is not expected:
            raise ConflictingTransition(
                f"Ride {ride_id} is {current.status.value}, expected {expected.value}"
            )

        updated = replace(current)
        apply(updated)
        updated.updated_at = utcnow()

        if not await self.repository.compare_and_set(updated, current.version):
            raise ConflictingTransition(
                f"Ride {ride_id} changed concurrently (v{current.version})"
            )
        self._publish(updated)
        return updated

    def _publish(self, ride: RideRequest) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            RideStatusChanged(
                ride_id=ride.ride_id,
                status=ride.status.value,
                dispatch_state=ride.dispatch_state.value,
                driver_id=ride.driver_id,
                offered_driver_id=ride.offered_driver_id,
                dispatch_attempts=ride.dispatch_attempts,
            )
        )
