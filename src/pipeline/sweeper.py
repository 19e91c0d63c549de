# src/pipeline/sweeper.py — v1
"""Periodic expiry sweep.

The store's expire_older_than() is the only deletion path; this task just
calls it on an interval. A failed sweep is logged and the next one runs on
schedule.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime

from entitysynth.core.models import SweepStats
from entitysynth.core.values import utcnow
from entitysynth.store.base_store import BaseEntityStore
from entitysynth.tracking.stats import EngineStats

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Background task removing expired entities, relationships and tags."""

    def __init__(
        self,
        store: BaseEntityStore,
        interval_s: float = 60.0,
        stats: EngineStats | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._interval_s = interval_s
        self._stats = stats or EngineStats()
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> SweepStats:
        """Run a single sweep at ``now`` (default: the clock)."""
        result = await self._store.expire_older_than(now or self._clock())
        self._stats.incr("sweeps")
        self._stats.incr("swept_items", result.total)
        return result

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="expiry-sweeper")
        logger.info("Expiry sweeper started (every %.0fs)", self._interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Expiry sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Expiry sweep failed: %s", e, exc_info=True)
