"""Initial schema: drivers and rides with optimistic-concurrency versions.

Revision ID: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("availability", sa.String(16), nullable=False, server_default="offline"),
        sa.Column("rating", sa.Float, nullable=False, server_default="5.0"),
        sa.Column("completed_trip_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("active_ride_id", sa.String(64), nullable=True),
        sa.Column("available_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("intends_to_work", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("name", sa.String(120), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("car_model", sa.String(120), nullable=True),
        sa.Column("car_plate", sa.String(32), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_drivers_availability", "drivers", ["availability"])

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("passenger_id", sa.String(64), nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column(
            "dispatch_state",
            sa.String(24),
            nullable=False,
            server_default="awaiting_dispatch",
        ),
        sa.Column("driver_id", sa.String(64), nullable=True),
        sa.Column("offered_driver_id", sa.String(64), nullable=True),
        sa.Column("preferred_driver_id", sa.String(64), nullable=True),
        sa.Column("dispatch_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("radius_km", sa.Float, nullable=False),
        sa.Column("fare_estimate", sa.Float, nullable=True),
        sa.Column("cancel_reason", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column("archived", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_dispatch_state", "rides", ["dispatch_state"])
    op.create_index("idx_rides_passenger", "rides", ["passenger_id"])
    op.create_index("idx_rides_idempotency", "rides", ["idempotency_key"])
    op.create_index("idx_rides_archived", "rides", ["archived"])


def downgrade() -> None:
    op.drop_table("rides")
    op.drop_table("drivers")
