"""
Fare estimation hook.

Fare computation is owned by an external pricing service; the ledger only
invokes a ``PricingFunction`` when a ride is created and stores the quote.
``FlatRatePricing`` is the default used when no external function is wired:

    fare = max(base_fare + distance_km x rate_per_km, minimum_fare)
"""

from __future__ import annotations

from typing import Protocol

from .geo import Point, distance


class PricingFunction(Protocol):
    def __call__(self, pickup: Point, dropoff: Point) -> float: ...


class FlatRatePricing:
    def __init__(
        self,
        base_fare: float = 1000.0,
        rate_per_km: float = 500.0,
        minimum_fare: float = 1500.0,
    ):
        self.base_fare = base_fare
        self.rate_per_km = rate_per_km
        self.minimum_fare = minimum_fare

    def __call__(self, pickup: Point, dropoff: Point) -> float:
        fare = self.base_fare + distance(pickup, dropoff) * self.rate_per_km
        return round(max(fare, self.minimum_fare), 2)
