"""
Background Stale-Location Sweeper
=================================

Runs every ``SWEEP_INTERVAL_SECONDS`` (default 5 s) and marks available
drivers whose last GPS sample is older than ``STALE_TIMEOUT_SECONDS``
(default 30 s) as ``inactive`` so dispatch stops offering them rides.

With Redis configured, a distributed lock keeps the sweep to one API
process per interval.  The sweep never waits on dispatch: it only touches
the location store and per-driver registry entries.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis

from ride_dispatch.domain.entities import utcnow
from ride_dispatch.infrastructure.locks import DistributedLock
from ride_dispatch.services.location_store import LocationStore

logger = logging.getLogger(__name__)


class StaleSweeper:
    def __init__(
        self,
        locations: LocationStore,
        timeout_seconds: float = 30.0,
        interval_seconds: float = 5.0,
        redis: Optional[aioredis.Redis] = None,
    ):
        self.locations = locations
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self.redis = redis
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # ── Public API ────────────────────────────────────────────────────

    async def start(self) -> None:
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Stale sweeper started (interval=%ss, timeout=%ss)",
            self.interval_seconds, self.timeout_seconds,
        )

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Stale sweeper stopped")

    async def run_once(self, now: Optional[datetime] = None) -> list[str]:
        """One sweep.  Returns the driver ids marked inactive."""
        now = now or utcnow()
        if self.redis is None:
            return await self.locations.sweep_stale(now, self.timeout_seconds)

        lock = DistributedLock(self.redis, "stale_sweep", ttl_seconds=self.interval_seconds)
        if not await lock.acquire():
            logger.debug("Sweep lock held by another process; skipping")
            return []
        try:
            return await self.locations.sweep_stale(now, self.timeout_seconds)
        finally:
            await lock.release()

    # ── Internals ─────────────────────────────────────────────────────

    async def _loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Unhandled error in stale sweep")
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.interval_seconds
                )
                break
            except asyncio.TimeoutError:
                pass
