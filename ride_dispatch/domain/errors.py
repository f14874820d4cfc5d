"""
Dispatch error taxonomy.

Transient errors (``StaleSample``, ``ReservationLost``,
``ConflictingTransition``, ``StoreUnavailable``) are handled by the component
that sees them.  ``InvalidTransition`` and ``DispatchExhausted`` escalate to
the caller / operator layer.
"""


class DispatchError(Exception):
    """Base class for every error raised by the dispatch engine."""


class InvalidCoordinate(DispatchError, ValueError):
    """Latitude outside [-90, 90] or longitude outside [-180, 180]."""

    def __init__(self, latitude: float, longitude: float):
        super().__init__(f"Invalid coordinate ({latitude}, {longitude})")
        self.latitude = latitude
        self.longitude = longitude


class StaleSample(DispatchError):
    """A position sample not newer than the stored one for that driver."""


class InvalidTransition(DispatchError):
    """A state change that the ride or driver state machine forbids."""


class ConflictingTransition(DispatchError):
    """Optimistic-concurrency collision; re-read and retry or abandon."""


class ReservationLost(DispatchError):
    """Another dispatch cycle claimed the driver first."""


class NoEligibleDrivers(DispatchError):
    """No candidate could be reserved in this cycle."""


class DispatchExhausted(DispatchError):
    """Automatic retries are used up; the ride needs manual dispatch."""

    def __init__(self, ride_id: str, attempts: int):
        super().__init__(
            f"Ride {ride_id} exhausted automatic dispatch after {attempts} attempts"
        )
        self.ride_id = ride_id
        self.attempts = attempts


class RideNotFound(DispatchError, LookupError):
    pass


class DriverNotFound(DispatchError, LookupError):
    pass


class StoreUnavailable(DispatchError):
    """The record store failed for a reason worth retrying."""
