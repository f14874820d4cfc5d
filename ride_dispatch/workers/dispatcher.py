"""
Dispatch Scheduler
==================

Per-ride state machine::

    awaiting_dispatch -> matching -> assigned -> accepted | declined | expired
                            |
                            +-> (miss) awaiting_dispatch ... -> dispatch_failed

Timers
------
* A new ride waits ``auto_dispatch_timeout_seconds`` before the first cycle,
  so a nearby driver can accept organically and quick cancellations never
  bother anyone.
* A miss (no eligible driver, every reservation lost, or a store failure
  that survived one immediate retry) widens the radius geometrically and
  re-arms the timer with exponential backoff, until ``max_retries`` misses
  escalate the ride to ``dispatch_failed`` for manual dispatch.
* A cycle that cannot reach the ride store at all is re-armed with the same
  backoff, so a store outage delays a ride but never drops it.
* ``stop()`` blocks further arming; in-flight cycles finish without leaving
  timers behind.

Each wait is an ``asyncio`` timer handle; cancelling a ride cancels the
handle.  A fired timer starts one cycle task per ride.  Cycle tasks are never
cancelled mid-flight: a cycle that reserved a driver re-checks the ride at
commit time (ledger compare-and-set) and releases the driver if the ride was
cancelled meanwhile.

Concurrency safety
------------------
* ``DriverRegistry.try_reserve`` is a per-driver compare-and-swap, so two
  rides can never hold the same driver.
* Ride writes are compare-and-set on the ride's version, so a cycle never
  overwrites a concurrent cancel, decline or manual assignment.
* There is no global lock; independent rides dispatch in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from ride_dispatch.config import DispatchSettings
from ride_dispatch.domain.entities import MatchCandidate, RideRequest
from ride_dispatch.domain.enums import (
    DispatchOutcome,
    DispatchState,
    DriverAvailability,
    RideStatus,
)
from ride_dispatch.domain.errors import (
    ConflictingTransition,
    DispatchExhausted,
    InvalidTransition,
    NoEligibleDrivers,
    RideNotFound,
    StoreUnavailable,
)
from ride_dispatch.domain.scoring import MatchScorer
from ride_dispatch.infrastructure.notifications import (
    OPERATORS,
    LoggingNotificationSink,
    NotificationSink,
)
from ride_dispatch.services.driver_registry import DriverRegistry
from ride_dispatch.services.event_bus import DispatchEscalated, EventBus
from ride_dispatch.services.location_store import LocationStore
from ride_dispatch.services.nearest import arrival_minutes
from ride_dispatch.services.ride_ledger import RideLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SKIP_STATES = frozenset({DispatchState.ASSIGNED, DispatchState.DISPATCH_FAILED})


class DispatchScheduler:
    def __init__(
        self,
        ledger: RideLedger,
        registry: DriverRegistry,
        locations: LocationStore,
        settings: Optional[DispatchSettings] = None,
        bus: Optional[EventBus] = None,
        notifier: Optional[NotificationSink] = None,
    ):
        self.ledger = ledger
        self.registry = registry
        self.locations = locations
        self.settings = settings or DispatchSettings()
        self.bus = bus
        self.notifier = notifier or LoggingNotificationSink()

        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._offer_timers: dict[str, asyncio.TimerHandle] = {}
        self._cycles: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._rerun: set[str] = set()
        # ride_id -> consecutive cycles that failed on the record store
        self._store_failures: dict[str, int] = {}
        self._stopping = False
        # ride_id -> driver_id -> monotonic expiry of the decline cool-down
        self._exclusions: dict[str, dict[str, float]] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> int:
        """Re-arm timers for rides left pending by a previous process."""
        self._stopping = False
        resumed = 0
        for ride in await self.ledger.list_active():
            if ride.status is not RideStatus.PENDING:
                continue
            if ride.dispatch_state is DispatchState.DISPATCH_FAILED:
                continue
            if ride.dispatch_state is DispatchState.ASSIGNED and ride.offered_driver_id:
                self._arm_offer_expiry(
                    ride.ride_id,
                    ride.offered_driver_id,
                    self.settings.driver_confirmation_timeout_seconds,
                )
            elif self.settings.auto_dispatch_enabled:
                self._arm(ride.ride_id, self.settings.auto_dispatch_timeout_seconds)
            resumed += 1
        logger.info("Dispatch scheduler started (%d pending ride(s) resumed)", resumed)
        return resumed

    async def stop(self) -> None:
        # in-flight cycles must not re-arm timers behind us
        self._stopping = True
        for handle in list(self._timers.values()) + list(self._offer_timers.values()):
            handle.cancel()
        self._timers.clear()
        self._offer_timers.clear()
        in_flight = list(self._cycles.values()) + list(self._background)
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("Dispatch scheduler stopped")

    async def drain(self) -> None:
        """Wait until no timer is armed and no cycle is running."""
        loop = asyncio.get_running_loop()
        while self._timers or self._offer_timers or self._cycles or self._background:
            running = list(self._cycles.values()) + list(self._background)
            if running:
                await asyncio.gather(*running, return_exceptions=True)
                continue
            handles = list(self._timers.values()) + list(self._offer_timers.values())
            wake = min(handle.when() for handle in handles)
            await asyncio.sleep(max(0.0, wake - loop.time()) + 0.001)

    def is_armed(self, ride_id: str) -> bool:
        return ride_id in self._timers

    def excluded_drivers(self, ride_id: str) -> set[str]:
        now = time.monotonic()
        excluded = self._exclusions.get(ride_id, {})
        for driver_id in [d for d, until in excluded.items() if until <= now]:
            del excluded[driver_id]
        return set(excluded)

    # ── Entry points ──────────────────────────────────────────────────

    async def submit(self, ride_id: str) -> None:
        """Arm the first dispatch timer for a freshly created ride."""
        if not self.settings.auto_dispatch_enabled:
            logger.info("Auto-dispatch disabled; ride %s waits for manual dispatch", ride_id)
            return
        self._arm(ride_id, self.settings.auto_dispatch_timeout_seconds)

    async def cancel(self, ride_id: str, reason: Optional[str] = None) -> RideRequest:
        self._disarm(ride_id)
        self._disarm_offer(ride_id)
        before, after = await self.ledger.cancel(ride_id, reason)
        held = before.driver_id or before.offered_driver_id
        if held:
            await self.registry.release(held, ride_id)
        self._exclusions.pop(ride_id, None)
        self._store_failures.pop(ride_id, None)
        logger.info("Ride %s cancelled (%s)", ride_id, reason or "no reason")
        return after

    async def confirm(self, ride_id: str, driver_id: str) -> RideRequest:
        """The offered driver accepts the assignment."""
        ride = await self.ledger.get(ride_id)
        if ride.status is RideStatus.ACCEPTED and ride.driver_id == driver_id:
            return ride
        if ride.status is not RideStatus.PENDING or ride.offered_driver_id != driver_id:
            raise InvalidTransition(f"Ride {ride_id} is not offered to driver {driver_id}")
        self._disarm_offer(ride_id)
        ride = await self.ledger.accept(ride_id, driver_id)
        await self._notify_assigned(ride)
        return ride

    async def decline(self, ride_id: str, driver_id: str) -> RideRequest:
        """The assigned or offered driver backs out; find someone else."""
        ride = await self.ledger.get(ride_id)
        if ride.status is RideStatus.ACCEPTED and ride.driver_id == driver_id:
            await self.ledger.requeue(ride_id, driver_id)
        elif ride.status is RideStatus.PENDING and ride.offered_driver_id == driver_id:
            self._disarm_offer(ride_id)
            await self.ledger.withdraw_offer(ride_id, driver_id, DispatchState.DECLINED)
        else:
            raise InvalidTransition(
                f"Driver {driver_id} holds no assignment on ride {ride_id}"
            )
        logger.info("Driver %s declined ride %s", driver_id, ride_id)
        return await self._requeue_after_refusal(ride_id, driver_id)

    async def start_trip(self, ride_id: str) -> RideRequest:
        return await self.ledger.start(ride_id)

    async def complete(self, ride_id: str) -> RideRequest:
        before = await self.ledger.get(ride_id)
        ride = await self.ledger.complete(ride_id)
        if before.driver_id:
            await self.registry.complete_trip(before.driver_id, ride_id)
        self._exclusions.pop(ride_id, None)
        return ride

    async def manual_assign(self, ride_id: str, driver_id: str) -> RideRequest:
        """Operator assigns a specific driver, bypassing scoring."""
        ride = await self.ledger.get(ride_id)
        if ride.status is not RideStatus.PENDING:
            raise InvalidTransition(
                f"Ride {ride_id} is {ride.status.value}; only pending rides can be assigned"
            )
        if ride.offered_driver_id:
            raise ConflictingTransition(
                f"Ride {ride_id} has an outstanding offer to {ride.offered_driver_id}"
            )
        self._disarm(ride_id)
        await self.registry.reserve(driver_id, ride_id)
        try:
            ride = await self.ledger.accept(ride_id, driver_id)
        except (ConflictingTransition, InvalidTransition):
            await self.registry.release(driver_id, ride_id)
            raise
        logger.info("Ride %s manually assigned to driver %s", ride_id, driver_id)
        await self._notify_assigned(ride)
        return ride

    async def redispatch(self, ride_id: str) -> DispatchOutcome:
        """Operator retry: fresh retry budget and an immediate cycle."""
        self._disarm(ride_id)
        await self.ledger.restart_dispatch(ride_id, self.settings.driver_matching_radius_km)
        return await self.run_cycle(ride_id, force=True)

    # ── Dispatch cycle ────────────────────────────────────────────────

    async def run_cycle(self, ride_id: str, force: bool = False) -> DispatchOutcome:
        """One query -> score -> reserve attempt.  Raises ``DispatchExhausted``."""
        s = self.settings
        if not s.auto_dispatch_enabled and not force:
            logger.info("Auto-dispatch disabled; skipping cycle for ride %s", ride_id)
            return DispatchOutcome.SKIPPED

        ride = await self.ledger.get(ride_id)
        if ride.status is not RideStatus.PENDING or ride.dispatch_state in _SKIP_STATES:
            logger.debug(
                "Ride %s is %s/%s; nothing to dispatch",
                ride_id, ride.status.value, ride.dispatch_state.value,
            )
            return DispatchOutcome.SKIPPED

        try:
            ride = await self._with_retry(
                self.ledger.set_dispatch_state, ride_id, DispatchState.MATCHING
            )
        except ConflictingTransition:
            return await self._settle_conflict(ride_id)

        try:
            ranked = await self._with_retry(self._rank_candidates, ride, s)
            if not ranked:
                raise NoEligibleDrivers(
                    f"No eligible drivers within {ride.radius_km:.1f} km of ride {ride_id}"
                )
            for candidate in ranked:
                if await self._with_retry(self.registry.try_reserve, candidate.driver_id, ride_id):
                    return await self._commit(ride_id, candidate, s)
                logger.debug("Ride %s lost driver %s, trying next", ride_id, candidate.driver_id)
            raise NoEligibleDrivers(
                f"All {len(ranked)} candidate(s) for ride {ride_id} were taken"
            )
        except (NoEligibleDrivers, StoreUnavailable) as exc:
            logger.info("Dispatch miss: %s", exc)
            return await self._handle_miss(ride_id, s, str(exc))

    async def _rank_candidates(
        self, ride: RideRequest, s: DispatchSettings
    ) -> list[MatchCandidate]:
        nearby = await self.locations.nearby(
            ride.pickup,
            ride.radius_km,
            s.candidate_limit,
            exclude=self.excluded_drivers(ride.ride_id),
        )
        pairs = []
        for driver_id, distance_km in nearby:
            state = await self.registry.find(driver_id)
            if state is None or state.availability is not DriverAvailability.AVAILABLE:
                continue
            if state.rating < s.min_driver_rating:
                continue
            eta = arrival_minutes(
                distance_km,
                self.locations.get(driver_id),
                s.fallback_speed_kmh,
                s.min_live_speed_kmh,
            )
            pairs.append((MatchCandidate(driver_id, distance_km, eta), state))

        scorer = MatchScorer(s.weights, s.experience_cap_trips, s.eta_cap_minutes)
        ranked = scorer.rank(pairs, ride.radius_km, ride.preferred_driver_id)
        for c in ranked:
            logger.debug(
                "Ride %s candidate %s: score=%.3f distance=%.2fkm eta=%.1fmin",
                ride.ride_id, c.driver_id, c.score, c.distance_km, c.eta_minutes,
            )
        return ranked

    async def _commit(
        self, ride_id: str, candidate: MatchCandidate, s: DispatchSettings
    ) -> DispatchOutcome:
        """Bind the reserved driver to the ride, or roll the reservation back."""
        driver_id = candidate.driver_id
        try:
            if s.requires_driver_confirmation:
                ride = await self._with_retry(self.ledger.offer, ride_id, driver_id)
                self._arm_offer_expiry(ride_id, driver_id, s.driver_confirmation_timeout_seconds)
                await self.notifier.notify(
                    driver_id, "ride_offer", f"New ride {ride_id} waiting for confirmation",
                    {"ride_id": ride_id, "eta_minutes": round(candidate.eta_minutes)},
                )
                outcome = DispatchOutcome.ASSIGNED
            else:
                ride = await self._with_retry(self.ledger.accept, ride_id, driver_id)
                await self._notify_assigned(ride)
                outcome = DispatchOutcome.ACCEPTED
        except StoreUnavailable:
            # the ride was never bound, so the reservation must not outlive the cycle
            await self._with_retry(self.registry.release, driver_id, ride_id)
            logger.warning(
                "Could not bind driver %s to ride %s; reservation rolled back", driver_id, ride_id
            )
            raise
        except (ConflictingTransition, InvalidTransition) as exc:
            await self.registry.release(driver_id, ride_id)
            logger.info(
                "Ride %s changed while driver %s was reserved (%s); reservation rolled back",
                ride_id, driver_id, exc,
            )
            return await self._settle_conflict(ride_id)

        logger.info(
            "Ride %s %s driver %s (score=%.3f, %.2f km, eta %.1f min)",
            ride_id, outcome.value, driver_id,
            candidate.score, candidate.distance_km, candidate.eta_minutes,
        )
        return outcome

    async def _handle_miss(
        self, ride_id: str, s: DispatchSettings, reason: str
    ) -> DispatchOutcome:
        try:
            ride = await self._with_retry(self.ledger.get, ride_id)
            attempts = ride.dispatch_attempts + 1
            if attempts >= s.max_retries:
                ride = await self._with_retry(
                    self.ledger.record_miss, ride_id, ride.radius_km, DispatchState.DISPATCH_FAILED
                )
            else:
                radius = min(
                    ride.radius_km * s.radius_growth_factor,
                    max(s.max_radius_km, ride.radius_km),
                )
                ride = await self._with_retry(
                    self.ledger.record_miss, ride_id, radius, DispatchState.AWAITING_DISPATCH
                )
        except ConflictingTransition:
            return await self._settle_conflict(ride_id)

        if ride.dispatch_state is DispatchState.DISPATCH_FAILED:
            await self._escalate(ride, reason)
            raise DispatchExhausted(ride_id, ride.dispatch_attempts)

        delay = min(
            s.retry_backoff_seconds * s.retry_backoff_multiplier ** (ride.dispatch_attempts - 1),
            s.max_backoff_seconds,
        )
        logger.info(
            "Ride %s retry %d/%d in %.1fs with radius %.1f km",
            ride_id, ride.dispatch_attempts, s.max_retries, delay, ride.radius_km,
        )
        self._arm(ride_id, delay)
        return DispatchOutcome.RETRY_SCHEDULED

    async def _settle_conflict(self, ride_id: str) -> DispatchOutcome:
        """After losing a ride CAS, decide whether anything is left to do."""
        ride = await self.ledger.get(ride_id)
        if ride.status is RideStatus.CANCELLED:
            return DispatchOutcome.CANCELLED
        if ride.status is RideStatus.PENDING and ride.dispatch_state not in _SKIP_STATES:
            self._rerun.add(ride_id)
            return DispatchOutcome.RETRY_SCHEDULED
        return DispatchOutcome.SKIPPED

    async def _escalate(self, ride: RideRequest, reason: str) -> None:
        logger.warning(
            "Ride %s escalated for manual dispatch after %d attempt(s): %s",
            ride.ride_id, ride.dispatch_attempts, reason,
        )
        if self.bus is not None:
            self.bus.publish(
                DispatchEscalated(
                    ride_id=ride.ride_id,
                    attempts=ride.dispatch_attempts,
                    radius_km=ride.radius_km,
                    reason=reason,
                )
            )
        await self.notifier.notify(
            OPERATORS,
            "dispatch_escalated",
            f"Ride {ride.ride_id} needs manual dispatch",
            {"ride_id": ride.ride_id, "attempts": ride.dispatch_attempts},
        )
        await self.notifier.notify(
            ride.passenger_id,
            "finding_driver",
            "We are still looking for a driver; an operator has been alerted",
            {"ride_id": ride.ride_id},
        )

    async def _notify_assigned(self, ride: RideRequest) -> None:
        await self.notifier.notify(
            ride.passenger_id,
            "driver_assigned",
            f"Driver {ride.driver_id} is on the way",
            {"ride_id": ride.ride_id, "driver_id": ride.driver_id},
        )

    async def _requeue_after_refusal(self, ride_id: str, driver_id: str) -> RideRequest:
        await self.registry.release(driver_id, ride_id)
        cooldown = self.settings.decline_cooldown_seconds
        self._exclusions.setdefault(ride_id, {})[driver_id] = time.monotonic() + cooldown
        ride = await self.ledger.set_dispatch_state(ride_id, DispatchState.MATCHING)
        self._arm(ride_id, 0)
        return ride

    async def _expire_offer(self, ride_id: str, driver_id: str) -> None:
        try:
            await self.ledger.withdraw_offer(ride_id, driver_id, DispatchState.EXPIRED)
        except (ConflictingTransition, InvalidTransition, RideNotFound):
            # confirmed, declined or cancelled before the deadline
            return
        logger.info("Offer of ride %s to driver %s expired", ride_id, driver_id)
        await self._requeue_after_refusal(ride_id, driver_id)

    async def _with_retry(self, call: Callable[..., Awaitable[T]], *args) -> T:
        """One immediate retry for transient store failures."""
        try:
            return await call(*args)
        except StoreUnavailable as exc:
            logger.warning("Store call %s failed (%s); retrying once", call.__name__, exc)
            return await call(*args)

    def _store_backoff(self, ride_id: str) -> float:
        failures = self._store_failures.get(ride_id, 0) + 1
        self._store_failures[ride_id] = failures
        s = self.settings
        return min(
            s.retry_backoff_seconds * s.retry_backoff_multiplier ** (failures - 1),
            s.max_backoff_seconds,
        )

    # ── Timers ────────────────────────────────────────────────────────

    def _arm(self, ride_id: str, delay: float) -> None:
        self._disarm(ride_id)
        if self._stopping:
            return
        loop = asyncio.get_running_loop()
        self._timers[ride_id] = loop.call_later(max(0.0, delay), self._fire, ride_id)

    def _disarm(self, ride_id: str) -> None:
        handle = self._timers.pop(ride_id, None)
        if handle is not None:
            handle.cancel()
        self._rerun.discard(ride_id)

    def _fire(self, ride_id: str) -> None:
        self._timers.pop(ride_id, None)
        running = self._cycles.get(ride_id)
        if running is not None and not running.done():
            # one cycle per ride at a time; run again once this one ends
            self._rerun.add(ride_id)
            return
        self._cycles[ride_id] = asyncio.get_running_loop().create_task(
            self._guarded_cycle(ride_id)
        )

    async def _guarded_cycle(self, ride_id: str) -> None:
        try:
            await self.run_cycle(ride_id)
            self._store_failures.pop(ride_id, None)
        except StoreUnavailable as exc:
            delay = self._store_backoff(ride_id)
            logger.warning(
                "Store unavailable during dispatch of ride %s (%s); retry in %.1fs",
                ride_id, exc, delay,
            )
            self._arm(ride_id, delay)
        except DispatchExhausted as exc:
            logger.warning("%s", exc)
        except RideNotFound:
            logger.warning("Ride %s vanished before its dispatch cycle", ride_id)
        except InvalidTransition:
            logger.exception("Invalid transition during dispatch of ride %s", ride_id)
        except Exception:
            logger.exception("Unhandled error in dispatch cycle for ride %s", ride_id)
        finally:
            if self._cycles.get(ride_id) is asyncio.current_task():
                del self._cycles[ride_id]
            if ride_id in self._rerun:
                self._rerun.discard(ride_id)
                self._arm(ride_id, 0)

    def _arm_offer_expiry(self, ride_id: str, driver_id: str, delay: float) -> None:
        self._disarm_offer(ride_id)
        if self._stopping:
            return
        loop = asyncio.get_running_loop()
        self._offer_timers[ride_id] = loop.call_later(
            max(0.0, delay), self._fire_offer_expiry, ride_id, driver_id
        )

    def _disarm_offer(self, ride_id: str) -> None:
        handle = self._offer_timers.pop(ride_id, None)
        if handle is not None:
            handle.cancel()

    def _fire_offer_expiry(self, ride_id: str, driver_id: str) -> None:
        self._offer_timers.pop(ride_id, None)
        task = asyncio.get_running_loop().create_task(self._expire_offer(ride_id, driver_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
