"""Unit tests for the fare-estimate hook."""

import pytest

from ride_dispatch.domain import geo
from ride_dispatch.domain.geo import Point
from ride_dispatch.domain.pricing import FlatRatePricing


class TestFlatRatePricing:
    def test_base_plus_distance(self):
        pickup, dropoff = Point(-1.95, 30.06), Point(-1.95, 30.16)
        km = geo.distance(pickup, dropoff)
        pricing = FlatRatePricing(base_fare=1000, rate_per_km=500, minimum_fare=0)
        assert pricing(pickup, dropoff) == pytest.approx(1000 + km * 500, abs=0.01)

    def test_minimum_fare_applies_to_short_trips(self):
        p = Point(-1.95, 30.06)
        pricing = FlatRatePricing(base_fare=1000, rate_per_km=500, minimum_fare=1500)
        assert pricing(p, p) == 1500

    def test_rounded_to_cents(self):
        fare = FlatRatePricing()(Point(-1.95, 30.06), Point(-1.9441, 30.0619))
        assert fare == round(fare, 2)


class TestLedgerQuote:
    @pytest.mark.asyncio
    async def test_fare_estimate_attached_on_create(self, ledger):
        ride, created = await ledger.create(
            "p-1", Point(-1.95, 30.06), Point(-1.95, 30.16)
        )
        assert created
        assert ride.fare_estimate is not None
        assert ride.fare_estimate > 1500
