"""Unit tests for ride and driver entity state transitions (State Pattern)."""

import pytest

from ride_dispatch.domain.entities import DriverState, RideRequest
from ride_dispatch.domain.enums import DriverAvailability, RideStatus
from ride_dispatch.domain.errors import InvalidTransition
from ride_dispatch.domain.geo import Point

PICKUP = Point(-1.95, 30.06)
DROPOFF = Point(-1.9441, 30.0619)


def make_ride(status=RideStatus.PENDING, driver_id=None) -> RideRequest:
    return RideRequest("p-1", PICKUP, DROPOFF, status=status, driver_id=driver_id)


class TestRideStateMachine:
    def test_initial_status_is_pending(self):
        assert make_ride().status == RideStatus.PENDING

    # ── Valid transitions ─────────────────────────────────────────

    def test_pending_to_accepted_binds_driver(self):
        ride = make_ride()
        ride.transition_to(RideStatus.ACCEPTED, driver_id="d-1")
        assert ride.status == RideStatus.ACCEPTED
        assert ride.driver_id == "d-1"

    def test_accepted_requires_driver(self):
        with pytest.raises(InvalidTransition):
            make_ride().transition_to(RideStatus.ACCEPTED)

    def test_accepted_to_in_progress_keeps_driver(self):
        ride = make_ride(RideStatus.ACCEPTED, "d-1")
        ride.transition_to(RideStatus.IN_PROGRESS)
        assert ride.driver_id == "d-1"

    def test_requeue_clears_driver(self):
        ride = make_ride(RideStatus.ACCEPTED, "d-1")
        ride.transition_to(RideStatus.PENDING)
        assert ride.status == RideStatus.PENDING
        assert ride.driver_id is None

    def test_cancel_clears_driver_and_offer(self):
        ride = make_ride(RideStatus.ACCEPTED, "d-1")
        ride.offered_driver_id = "d-2"
        ride.transition_to(RideStatus.CANCELLED)
        assert ride.driver_id is None
        assert ride.offered_driver_id is None

    def test_in_progress_to_completed(self):
        ride = make_ride(RideStatus.IN_PROGRESS, "d-1")
        ride.transition_to(RideStatus.COMPLETED)
        assert ride.is_terminal

    # ── Invalid transitions ───────────────────────────────────────

    def test_pending_to_completed_fails(self):
        with pytest.raises(InvalidTransition):
            make_ride().transition_to(RideStatus.COMPLETED)

    def test_in_progress_cannot_be_cancelled(self):
        with pytest.raises(InvalidTransition):
            make_ride(RideStatus.IN_PROGRESS, "d-1").transition_to(RideStatus.CANCELLED)

    @pytest.mark.parametrize("terminal", [RideStatus.COMPLETED, RideStatus.CANCELLED])
    @pytest.mark.parametrize("target", list(RideStatus))
    def test_terminal_states_are_final(self, terminal, target):
        ride = make_ride(terminal)
        with pytest.raises(InvalidTransition):
            ride.transition_to(target, driver_id="d-1")
        assert ride.status == terminal


class TestDriverStateMachine:
    def test_opt_in_sets_intent(self):
        state = DriverState("d-1")
        state.transition_to(DriverAvailability.AVAILABLE)
        assert state.intends_to_work
        assert state.available_since is not None

    def test_on_trip_requires_ride(self):
        state = DriverState("d-1", availability=DriverAvailability.AVAILABLE)
        with pytest.raises(InvalidTransition):
            state.transition_to(DriverAvailability.ON_TRIP)

    def test_on_trip_cannot_go_inactive(self):
        state = DriverState("d-1", availability=DriverAvailability.AVAILABLE)
        state.transition_to(DriverAvailability.ON_TRIP, ride_id="r-1")
        with pytest.raises(InvalidTransition):
            state.transition_to(DriverAvailability.INACTIVE)
        assert state.active_ride_id == "r-1"

    def test_opt_out_clears_intent(self):
        state = DriverState("d-1")
        state.transition_to(DriverAvailability.AVAILABLE)
        state.transition_to(DriverAvailability.OFFLINE)
        assert not state.intends_to_work

    def test_invariant_check_detects_mismatch(self):
        state = DriverState("d-1", availability=DriverAvailability.AVAILABLE, active_ride_id="r-1")
        with pytest.raises(InvalidTransition):
            state.check_invariants()
