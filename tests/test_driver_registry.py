"""
Driver registry tests.

Demonstrates:
1. ``on_trip`` iff ``active_ride_id`` under randomized transition sequences.
2. Two concurrent reservations of one driver never both succeed.
3. Staleness transitions only touch drivers waiting for work.
"""

import asyncio
import random

import pytest

from ride_dispatch.domain.enums import DriverAvailability
from ride_dispatch.domain.errors import (
    ConflictingTransition,
    DriverNotFound,
    InvalidTransition,
    ReservationLost,
)
from ride_dispatch.infrastructure.memory import InMemoryDriverRepository
from ride_dispatch.services.driver_registry import DriverRegistry
from ride_dispatch.services.event_bus import TOPIC_DRIVERS


class InterleavingDriverRepository(InMemoryDriverRepository):
    """Yields to the loop between read and write, like a networked store."""

    async def get(self, driver_id):
        state = await super().get(driver_id)
        await asyncio.sleep(0)
        return state

    async def compare_and_set(self, state, expected_version):
        await asyncio.sleep(0)
        return await super().compare_and_set(state, expected_version)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_new_driver_starts_offline(self, registry):
        state = await registry.register("d-1", rating=4.7, name="Jean")
        assert state.availability is DriverAvailability.OFFLINE
        assert (await registry.get("d-1")).name == "Jean"

    @pytest.mark.asyncio
    async def test_duplicate_registration_conflicts(self, registry):
        await registry.register("d-1")
        with pytest.raises(ConflictingTransition):
            await registry.register("d-1")

    @pytest.mark.asyncio
    async def test_unknown_driver(self, registry):
        with pytest.raises(DriverNotFound):
            await registry.get("ghost")
        assert await registry.find("ghost") is None

    @pytest.mark.asyncio
    async def test_update_profile(self, registry):
        await registry.register("d-1")
        state = await registry.update_profile("d-1", rating=3.9, car_plate="RAD 001 A")
        assert (state.rating, state.car_plate) == (3.9, "RAD 001 A")
        with pytest.raises(ValueError):
            await registry.update_profile("d-1", availability="available")


class TestAvailability:
    @pytest.mark.asyncio
    async def test_opt_in_and_out(self, registry):
        await registry.register("d-1")
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        state = await registry.set_availability("d-1", DriverAvailability.OFFLINE)
        assert state.availability is DriverAvailability.OFFLINE
        assert not state.intends_to_work

    @pytest.mark.asyncio
    async def test_on_trip_not_directly_settable(self, registry):
        await registry.register("d-1")
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        with pytest.raises(InvalidTransition):
            await registry.set_availability("d-1", DriverAvailability.ON_TRIP)

    @pytest.mark.asyncio
    async def test_inactive_not_directly_settable(self, registry):
        await registry.register("d-1")
        with pytest.raises(InvalidTransition):
            await registry.set_availability("d-1", DriverAvailability.INACTIVE)

        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        with pytest.raises(InvalidTransition):
            await registry.set_availability("d-1", DriverAvailability.INACTIVE)
        assert (await registry.get("d-1")).availability is DriverAvailability.AVAILABLE

    @pytest.mark.asyncio
    async def test_cannot_go_offline_mid_trip(self, registry):
        await registry.register("d-1")
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        await registry.reserve("d-1", "r-1")
        with pytest.raises(InvalidTransition):
            await registry.set_availability("d-1", DriverAvailability.OFFLINE)

    @pytest.mark.asyncio
    async def test_status_changes_published(self, registry, bus):
        subscription = bus.subscribe(TOPIC_DRIVERS, key="d-1")
        await registry.register("d-1")
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        await registry.reserve("d-1", "r-1")
        await registry.release("d-1", "r-1")
        seen = []
        while (event := subscription.get_nowait()) is not None:
            seen.append(event.availability)
        assert seen == ["available", "on_trip", "available"]


class TestReservation:
    @pytest.mark.asyncio
    async def test_reserve_sets_active_ride(self, registry):
        await registry.register("d-1")
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        state = await registry.reserve("d-1", "r-1")
        assert state.availability is DriverAvailability.ON_TRIP
        assert state.active_ride_id == "r-1"

    @pytest.mark.asyncio
    async def test_reserve_offline_driver_fails(self, registry):
        await registry.register("d-1")
        with pytest.raises(ReservationLost):
            await registry.reserve("d-1", "r-1")
        assert await registry.try_reserve("d-1", "r-1") is False

    @pytest.mark.asyncio
    async def test_release_only_for_holding_ride(self, registry):
        await registry.register("d-1")
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        await registry.reserve("d-1", "r-1")
        assert await registry.release("d-1", "r-other") is False
        assert await registry.release("d-1", "r-1") is True
        assert (await registry.get("d-1")).active_ride_id is None

    @pytest.mark.asyncio
    async def test_complete_trip_counts(self, registry):
        await registry.register("d-1", completed_trip_count=10)
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        await registry.reserve("d-1", "r-1")
        state = await registry.complete_trip("d-1", "r-1")
        assert state.completed_trip_count == 11
        assert state.availability is DriverAvailability.AVAILABLE

    @pytest.mark.asyncio
    async def test_concurrent_reservations_are_exclusive(self):
        registry = DriverRegistry(InterleavingDriverRepository())
        await registry.register("d-1")
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)

        results = await asyncio.gather(
            *(registry.try_reserve("d-1", f"r-{i}") for i in range(8))
        )

        assert sum(results) == 1
        winner = f"r-{results.index(True)}"
        assert (await registry.get("d-1")).active_ride_id == winner


class TestStaleness:
    @pytest.mark.asyncio
    async def test_mark_inactive_only_when_available(self, registry):
        await registry.register("d-1")
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        await registry.reserve("d-1", "r-1")
        assert await registry.mark_inactive("d-1") is False
        assert (await registry.get("d-1")).availability is DriverAvailability.ON_TRIP

    @pytest.mark.asyncio
    async def test_reactivate_requires_intent(self, registry):
        await registry.register("d-1")
        await registry.set_availability("d-1", DriverAvailability.AVAILABLE)
        assert await registry.mark_inactive("d-1") is True
        assert await registry.reactivate("d-1") is True

        await registry.set_availability("d-1", DriverAvailability.OFFLINE)
        assert await registry.reactivate("d-1") is False


class TestInvariantUnderRandomOperations:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
    async def test_on_trip_iff_active_ride(self, seed):
        rng = random.Random(seed)
        registry = DriverRegistry(InterleavingDriverRepository())
        drivers = [f"d-{i}" for i in range(4)]
        for d in drivers:
            await registry.register(d)

        async def random_op(n: int) -> None:
            d = rng.choice(drivers)
            op = rng.randrange(7)
            try:
                if op == 0:
                    await registry.set_availability(d, DriverAvailability.AVAILABLE)
                elif op == 1:
                    await registry.set_availability(d, DriverAvailability.OFFLINE)
                elif op == 2:
                    await registry.try_reserve(d, f"r-{n}")
                elif op == 3:
                    await registry.release(d)
                elif op == 4:
                    await registry.mark_inactive(d)
                elif op == 5:
                    await registry.reactivate(d)
                else:
                    state = await registry.get(d)
                    if state.active_ride_id:
                        await registry.complete_trip(d, state.active_ride_id)
            except (InvalidTransition, ConflictingTransition):
                pass

        for batch in range(40):
            await asyncio.gather(*(random_op(batch * 10 + i) for i in range(5)))
            for state in await registry.list():
                on_trip = state.availability is DriverAvailability.ON_TRIP
                assert on_trip == (state.active_ride_id is not None)
