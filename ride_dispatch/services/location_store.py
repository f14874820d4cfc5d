"""
Latest-position store for the live fleet.

Spatial lookup
--------------
Positions are binned into H3 cells.  ``nearby`` walks the cells covering
the search circle, applies a bounding-box test and only then computes the
exact haversine distance, so a query touches the drivers around the pickup
instead of the whole fleet.  When the covering disk has more cells than
there are tracked drivers, a plain scan with the same bounding box is
cheaper and is used instead.

Complexity
----------
* ``update``:      O(1)
* ``nearby``:      O(c + m log m) -- c covering cells, m drivers inside them
* ``sweep_stale``: O(n) over tracked drivers

Ordering
--------
The recorded_at check, the write and the ``LocationChanged`` publish run
without yielding to the event loop, so per-driver samples are applied and
published in recorded_at order even when ingestion tasks interleave.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Optional

from ride_dispatch.domain import geo
from ride_dispatch.domain.entities import DriverPosition
from ride_dispatch.domain.enums import DriverAvailability
from ride_dispatch.domain.errors import StaleSample

from .driver_registry import DriverRegistry
from .event_bus import EventBus, LocationChanged

logger = logging.getLogger(__name__)


class LocationStore:
    def __init__(
        self,
        registry: DriverRegistry,
        bus: Optional[EventBus] = None,
        h3_resolution: int = 8,
    ):
        self.registry = registry
        self.bus = bus
        self.h3_resolution = h3_resolution
        self._positions: dict[str, DriverPosition] = {}
        self._cell_of: dict[str, str] = {}
        self._cells: dict[str, set[str]] = defaultdict(set)

    def __len__(self) -> int:
        return len(self._positions)

    def get(self, driver_id: str) -> Optional[DriverPosition]:
        return self._positions.get(driver_id)

    def snapshot(self) -> list[DriverPosition]:
        return list(self._positions.values())

    # ── Ingestion ─────────────────────────────────────────────────────

    async def update(self, position: DriverPosition) -> DriverPosition:
        """Apply *position*; raises ``StaleSample`` unless it is newer than the stored one."""
        driver_id = position.driver_id
        state = await self.registry.get(driver_id)

        previous = self._positions.get(driver_id)
        if previous is not None and position.recorded_at <= previous.recorded_at:
            raise StaleSample(
                f"Driver {driver_id}: sample at {position.recorded_at.isoformat()} "
                f"is not newer than {previous.recorded_at.isoformat()}"
            )

        self._positions[driver_id] = position
        self._reindex(driver_id, position)
        if self.bus is not None:
            self.bus.publish(
                LocationChanged(
                    driver_id=driver_id,
                    latitude=position.latitude,
                    longitude=position.longitude,
                    heading=position.heading,
                    speed=position.speed,
                    accuracy=position.accuracy,
                    recorded_at=position.recorded_at,
                )
            )

        if state.availability is DriverAvailability.INACTIVE:
            await self.registry.reactivate(driver_id)
        return position

    async def ingest(self, position: DriverPosition) -> bool:
        """Inbound-channel entry point: superseded samples are dropped, not fatal."""
        try:
            await self.update(position)
        except StaleSample as exc:
            logger.debug("Ignoring stale sample: %s", exc)
            return False
        return True

    def _reindex(self, driver_id: str, position: DriverPosition) -> None:
        cell = geo.cell_for(position.latitude, position.longitude, self.h3_resolution)
        old = self._cell_of.get(driver_id)
        if old == cell:
            return
        if old is not None:
            members = self._cells[old]
            members.discard(driver_id)
            if not members:
                del self._cells[old]
        self._cells[cell].add(driver_id)
        self._cell_of[driver_id] = cell

    # ── Queries ───────────────────────────────────────────────────────

    def within(
        self,
        point: geo.Point,
        radius_km: float,
        exclude: Iterable[str] = (),
    ) -> list[tuple[str, float]]:
        """Every tracked driver within *radius_km*, nearest first, regardless of state."""
        excluded = set(exclude)
        box = geo.bounding_box(point, radius_km)

        cells = geo.cells_covering(point, radius_km, self.h3_resolution)
        if len(cells) > len(self._positions):
            driver_ids: Iterable[str] = self._positions.keys()
        else:
            driver_ids = (d for cell in cells for d in self._cells.get(cell, ()))

        hits: list[tuple[str, float]] = []
        for driver_id in driver_ids:
            if driver_id in excluded:
                continue
            pos = self._positions[driver_id]
            if not geo.within_box(box, pos.latitude, pos.longitude):
                continue
            d = geo.haversine_km(point.latitude, point.longitude, pos.latitude, pos.longitude)
            if d <= radius_km:
                hits.append((driver_id, d))

        hits.sort(key=lambda hit: (hit[1], hit[0]))
        return hits

    async def nearby(
        self,
        point: geo.Point,
        radius_km: float,
        limit: int,
        exclude: Iterable[str] = (),
    ) -> list[tuple[str, float]]:
        """Available drivers within *radius_km* of *point*, nearest first, at most *limit*."""
        result: list[tuple[str, float]] = []
        for driver_id, d in self.within(point, radius_km, exclude):
            state = await self.registry.find(driver_id)
            if state is None or state.availability is not DriverAvailability.AVAILABLE:
                continue
            result.append((driver_id, d))
            if len(result) >= limit:
                break
        return result

    # ── Staleness ─────────────────────────────────────────────────────

    async def sweep_stale(self, now: datetime, timeout: float | timedelta) -> list[str]:
        """Mark available drivers whose last sample is older than *timeout* as inactive."""
        if not isinstance(timeout, timedelta):
            timeout = timedelta(seconds=timeout)

        stale = [
            driver_id
            for driver_id, pos in list(self._positions.items())
            if now - pos.recorded_at > timeout
        ]
        marked = []
        for driver_id in stale:
            if await self.registry.mark_inactive(driver_id):
                marked.append(driver_id)
        if marked:
            logger.info("Stale sweep marked %d driver(s) inactive", len(marked))
        return marked
