"""
Composite Match Scoring
=======================

Each (ride, driver) pair gets a score in ``[0, 1]``::

    score = w_rating     x rating / 5
          + w_proximity  x (1 - min(distance / radius, 1))
          + w_experience x min(trips / experience_cap, 1)
          + w_eta        x (1 - min(eta / eta_cap, 1))

Default weights are 0.40 / 0.35 / 0.15 / 0.10.  Sub-scores are normalised
against fixed caps rather than against the other candidates in the batch,
so a driver's score does not change when an unrelated driver joins the
candidate set.

Ranking
-------
Highest score first; ties broken by lower distance, then by the driver who
has been ``available`` longest.  A ride's preferred driver, when eligible,
is always ranked first.

Complexity: O(n log n) for n candidates.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from ride_dispatch.config import ScoringWeights

from .entities import DriverState, MatchCandidate

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


class MatchScorer:
    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        experience_cap: int = 500,
        eta_cap_minutes: float = 20.0,
    ):
        self.weights = weights or ScoringWeights()
        self.experience_cap = experience_cap
        self.eta_cap_minutes = eta_cap_minutes

    def score(
        self,
        candidate: MatchCandidate,
        driver_state: DriverState,
        radius_km: float,
    ) -> float:
        w = self.weights
        rating = max(0.0, min(driver_state.rating, 5.0)) / 5.0
        proximity = 1.0 - min(candidate.distance_km / radius_km, 1.0) if radius_km > 0 else 0.0
        experience = min(driver_state.completed_trip_count / self.experience_cap, 1.0)
        eta = 1.0 - min(candidate.eta_minutes / self.eta_cap_minutes, 1.0)

        total = (
            w.rating * rating
            + w.proximity * proximity
            + w.experience * experience
            + w.eta * eta
        )
        weight_sum = w.rating + w.proximity + w.experience + w.eta
        if weight_sum > 1.0:
            total /= weight_sum
        return round(max(0.0, min(total, 1.0)), 6)

    def rank(
        self,
        candidates: Iterable[tuple[MatchCandidate, DriverState]],
        radius_km: float,
        preferred_driver_id: Optional[str] = None,
    ) -> list[MatchCandidate]:
        """Score and order *candidates*, best first."""
        scored: list[tuple[MatchCandidate, DriverState]] = []
        for candidate, state in candidates:
            value = self.score(candidate, state, radius_km)
            scored.append(
                (
                    MatchCandidate(
                        driver_id=candidate.driver_id,
                        distance_km=candidate.distance_km,
                        eta_minutes=candidate.eta_minutes,
                        score=value,
                    ),
                    state,
                )
            )

        scored.sort(
            key=lambda pair: (
                pair[0].driver_id != preferred_driver_id,
                -pair[0].score,
                pair[0].distance_km,
                pair[1].available_since or _FAR_FUTURE,
            )
        )
        return [candidate for candidate, _ in scored]
