"""
SQLAlchemy ORM models.

Tables
------
* ``drivers`` -- availability state, scoring metadata and reservation
* ``rides``   -- ride requests with status and dispatch sub-state

Both tables carry a ``version`` column; repositories update rows with
``WHERE id = :id AND version = :expected`` (optimistic compare-and-set).

Indexes
-------
* **B-Tree** on ``drivers.availability`` for eligibility scans.
* **B-Tree** on ``rides.status``, ``rides.dispatch_state``,
  ``rides.passenger_id``, ``rides.idempotency_key`` and ``rides.archived``
  for the dispatcher's recovery scan and the admin escalation queue.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
)

from .database import Base


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(String(64), primary_key=True)
    availability = Column(String(16), nullable=False, default="offline")
    rating = Column(Float, nullable=False, default=5.0)
    completed_trip_count = Column(Integer, nullable=False, default=0)
    active_ride_id = Column(String(64), nullable=True)
    available_since = Column(DateTime(timezone=True), nullable=True)
    intends_to_work = Column(Boolean, nullable=False, default=False)

    name = Column(String(120), nullable=True)
    phone = Column(String(32), nullable=True)
    car_model = Column(String(120), nullable=True)
    car_plate = Column(String(32), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_drivers_availability", "availability"),)


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(String(64), primary_key=True)
    passenger_id = Column(String(64), nullable=False)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)

    status = Column(String(16), nullable=False, default="pending")
    dispatch_state = Column(String(24), nullable=False, default="awaiting_dispatch")
    driver_id = Column(String(64), nullable=True)
    offered_driver_id = Column(String(64), nullable=True)
    preferred_driver_id = Column(String(64), nullable=True)
    dispatch_attempts = Column(Integer, nullable=False, default=0)
    radius_km = Column(Float, nullable=False)
    fare_estimate = Column(Float, nullable=True)
    cancel_reason = Column(String(255), nullable=True)
    idempotency_key = Column(String(64), unique=True, nullable=True)
    archived = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_rides_status", "status"),
        Index("idx_rides_dispatch_state", "dispatch_state"),
        Index("idx_rides_passenger", "passenger_id"),
        Index("idx_rides_idempotency", "idempotency_key"),
        Index("idx_rides_archived", "archived"),
    )
