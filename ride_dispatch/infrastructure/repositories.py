"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``async_sessionmaker`` and opens one short
unit-of-work per call, because the ledger and registry are long-lived and
must not hold a session across dispatch cycles.

Compare-and-set is a single ``UPDATE ... WHERE id = :id AND version = :v``;
a zero row count means another writer got there first.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import DriverModel, RideModel
from ride_dispatch.domain.entities import DriverState, RideRequest
from ride_dispatch.domain.enums import DispatchState, DriverAvailability, RideStatus
from ride_dispatch.domain.errors import ConflictingTransition, StoreUnavailable
from ride_dispatch.domain.geo import Point


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Mapping ───────────────────────────────────────────────────────────


def _driver_columns(state: DriverState) -> dict:
    return {
        "availability": state.availability.value,
        "rating": state.rating,
        "completed_trip_count": state.completed_trip_count,
        "active_ride_id": state.active_ride_id,
        "available_since": state.available_since,
        "intends_to_work": state.intends_to_work,
        "name": state.name,
        "phone": state.phone,
        "car_model": state.car_model,
        "car_plate": state.car_plate,
        "updated_at": state.updated_at,
    }


def _to_driver(row: DriverModel) -> DriverState:
    return DriverState(
        driver_id=row.id,
        availability=DriverAvailability(row.availability),
        rating=row.rating,
        completed_trip_count=row.completed_trip_count,
        active_ride_id=row.active_ride_id,
        available_since=_aware(row.available_since),
        intends_to_work=row.intends_to_work,
        name=row.name,
        phone=row.phone,
        car_model=row.car_model,
        car_plate=row.car_plate,
        version=row.version,
        updated_at=_aware(row.updated_at),
    )


def _ride_columns(ride: RideRequest) -> dict:
    return {
        "passenger_id": ride.passenger_id,
        "pickup_lat": ride.pickup.latitude,
        "pickup_lng": ride.pickup.longitude,
        "dropoff_lat": ride.dropoff.latitude,
        "dropoff_lng": ride.dropoff.longitude,
        "status": ride.status.value,
        "dispatch_state": ride.dispatch_state.value,
        "driver_id": ride.driver_id,
        "offered_driver_id": ride.offered_driver_id,
        "preferred_driver_id": ride.preferred_driver_id,
        "dispatch_attempts": ride.dispatch_attempts,
        "radius_km": ride.radius_km,
        "fare_estimate": ride.fare_estimate,
        "cancel_reason": ride.cancel_reason,
        "idempotency_key": ride.idempotency_key,
        "archived": ride.archived,
        "created_at": ride.created_at,
        "updated_at": ride.updated_at,
    }


def _to_ride(row: RideModel) -> RideRequest:
    return RideRequest(
        ride_id=row.id,
        passenger_id=row.passenger_id,
        pickup=Point(row.pickup_lat, row.pickup_lng),
        dropoff=Point(row.dropoff_lat, row.dropoff_lng),
        status=RideStatus(row.status),
        dispatch_state=DispatchState(row.dispatch_state),
        driver_id=row.driver_id,
        offered_driver_id=row.offered_driver_id,
        preferred_driver_id=row.preferred_driver_id,
        dispatch_attempts=row.dispatch_attempts,
        radius_km=row.radius_km,
        fare_estimate=row.fare_estimate,
        cancel_reason=row.cancel_reason,
        idempotency_key=row.idempotency_key,
        archived=row.archived,
        version=row.version,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


# ── Repositories ──────────────────────────────────────────────────────


class _SqlRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _cas(self, model, entity_id: str, expected_version: int, values: dict) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(model)
                    .where(model.id == entity_id, model.version == expected_version)
                    .values(**values, version=expected_version + 1)
                )
                await session.commit()
                return result.rowcount == 1
        except OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def _add(self, row) -> None:
        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
        except IntegrityError as exc:
            raise ConflictingTransition(f"Record {row.id} already exists") from exc
        except OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def _scalars(self, query) -> list:
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc


class SqlDriverRepository(_SqlRepository):
    async def get(self, driver_id: str) -> Optional[DriverState]:
        rows = await self._scalars(select(DriverModel).where(DriverModel.id == driver_id))
        return _to_driver(rows[0]) if rows else None

    async def add(self, state: DriverState) -> DriverState:
        await self._add(DriverModel(id=state.driver_id, version=1, **_driver_columns(state)))
        state.version = 1
        return state

    async def compare_and_set(self, state: DriverState, expected_version: int) -> bool:
        swapped = await self._cas(
            DriverModel, state.driver_id, expected_version, _driver_columns(state)
        )
        if swapped:
            state.version = expected_version + 1
        return swapped

    async def list(
        self, availability: Optional[DriverAvailability] = None
    ) -> list[DriverState]:
        query = select(DriverModel).order_by(DriverModel.id)
        if availability is not None:
            query = query.where(DriverModel.availability == availability.value)
        return [_to_driver(row) for row in await self._scalars(query)]


class SqlRideRepository(_SqlRepository):
    async def get(self, ride_id: str) -> Optional[RideRequest]:
        rows = await self._scalars(select(RideModel).where(RideModel.id == ride_id))
        return _to_ride(rows[0]) if rows else None

    async def get_by_idempotency_key(self, key: str) -> Optional[RideRequest]:
        rows = await self._scalars(
            select(RideModel).where(RideModel.idempotency_key == key)
        )
        return _to_ride(rows[0]) if rows else None

    async def add(self, ride: RideRequest) -> RideRequest:
        await self._add(RideModel(id=ride.ride_id, version=1, **_ride_columns(ride)))
        ride.version = 1
        return ride

    async def compare_and_set(self, ride: RideRequest, expected_version: int) -> bool:
        swapped = await self._cas(
            RideModel, ride.ride_id, expected_version, _ride_columns(ride)
        )
        if swapped:
            ride.version = expected_version + 1
        return swapped

    async def list_active(
        self, dispatch_state: Optional[DispatchState] = None
    ) -> list[RideRequest]:
        query = (
            select(RideModel)
            .where(RideModel.archived.is_(False))
            .order_by(RideModel.created_at)
        )
        if dispatch_state is not None:
            query = query.where(RideModel.dispatch_state == dispatch_state.value)
        return [_to_ride(row) for row in await self._scalars(query)]
