"""
Record-store contracts used by the ledger and the registry.

Both repositories persist whole entities and support optimistic
compare-and-set: ``compare_and_set(entity, expected_version)`` writes the
entity only if the stored version still equals *expected_version*, bumps the
version, and reports whether the write happened.  Implementations raise
``StoreUnavailable`` for failures worth retrying.
"""

from __future__ import annotations

from typing import Optional, Protocol

from ride_dispatch.domain.entities import DriverState, RideRequest
from ride_dispatch.domain.enums import DispatchState, DriverAvailability


class DriverRepository(Protocol):
    async def get(self, driver_id: str) -> Optional[DriverState]: ...

    async def add(self, state: DriverState) -> DriverState: ...

    async def compare_and_set(
        self, state: DriverState, expected_version: int
    ) -> bool: ...

    async def list(
        self, availability: Optional[DriverAvailability] = None
    ) -> list[DriverState]: ...


class RideRepository(Protocol):
    async def get(self, ride_id: str) -> Optional[RideRequest]: ...

    async def get_by_idempotency_key(self, key: str) -> Optional[RideRequest]: ...

    async def add(self, ride: RideRequest) -> RideRequest: ...

    async def compare_and_set(
        self, ride: RideRequest, expected_version: int
    ) -> bool: ...

    async def list_active(
        self, dispatch_state: Optional[DispatchState] = None
    ) -> list[RideRequest]: ...
