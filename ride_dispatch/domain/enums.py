"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# State machine: maps current status -> set of valid next statuses.
# ACCEPTED -> PENDING is the requeue edge used when a driver backs out.
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.PENDING: {RideStatus.ACCEPTED, RideStatus.CANCELLED},
    RideStatus.ACCEPTED: {
        RideStatus.IN_PROGRESS,
        RideStatus.CANCELLED,
        RideStatus.PENDING,
    },
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

TERMINAL_RIDE_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})
DRIVER_BOUND_STATUSES = frozenset({RideStatus.ACCEPTED, RideStatus.IN_PROGRESS})


class DispatchState(str, enum.Enum):
    AWAITING_DISPATCH = "awaiting_dispatch"
    MATCHING = "matching"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    DISPATCH_FAILED = "dispatch_failed"
    CANCELLED = "cancelled"


class DriverAvailability(str, enum.Enum):
    OFFLINE = "offline"
    AVAILABLE = "available"
    ON_TRIP = "on_trip"
    INACTIVE = "inactive"


# ON_TRIP is entered only through a reservation and left only through a
# release, so the registry keeps active_ride_id in step with it.
# INACTIVE is set only by the stale sweep, and only from AVAILABLE. A driver
# on a trip is never swept inactive because that would orphan the ride.
DRIVER_TRANSITIONS: dict[DriverAvailability, set[DriverAvailability]] = {
    DriverAvailability.OFFLINE: {DriverAvailability.AVAILABLE},
    DriverAvailability.AVAILABLE: {
        DriverAvailability.ON_TRIP,
        DriverAvailability.OFFLINE,
        DriverAvailability.INACTIVE,
    },
    DriverAvailability.ON_TRIP: {DriverAvailability.AVAILABLE},
    DriverAvailability.INACTIVE: {
        DriverAvailability.AVAILABLE,
        DriverAvailability.OFFLINE,
    },
}


class DispatchOutcome(str, enum.Enum):
    """Result of a single dispatch cycle."""

    ACCEPTED = "accepted"
    ASSIGNED = "assigned"
    RETRY_SCHEDULED = "retry_scheduled"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
