"""
scheduler.py
------------

Background refresh for the hero snapshot.

Schedule:
  - One refresh right after startup, then one every `interval` seconds.
  - Manual triggers run in a background task owned by the scheduler.
  - At most one refresh runs at a time; a trigger that arrives mid-refresh is
    rejected with Conflict instead of being queued.
  - A successful refresh replaces the snapshot and flushes the cache. A failed
    one only updates the snapshot status.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional, Sequence

from .cache import TTLCache
from .errors import Conflict, EmptyResult
from .hero_data import Hero
from .metrics import build_leaderboard, build_tier_list
from .store import SnapshotStatus, SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600

HeroFetcher = Callable[[], Awaitable[Sequence[Hero]]]


class RefreshScheduler:
    """Runs fetch -> derive -> swap -> flush, periodically and on demand."""

    def __init__(
        self,
        store: SnapshotStore,
        fetch_heroes: HeroFetcher,
        cache: Optional[TTLCache] = None,
        interval: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self.store = store
        self.cache = cache
        self.interval = interval
        self._fetch_heroes = fetch_heroes
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._running

    def _claim(self) -> None:
        if self._running:
            raise Conflict("A refresh is already running")
        self._running = True

    async def refresh(self) -> bool:
        """Run one refresh cycle inline; True when a new snapshot was published."""
        self._claim()
        return await self._run_cycle()

    def trigger(self) -> asyncio.Task:
        """Start a refresh in the background and return its task without awaiting it."""
        self._claim()
        self.store.begin_refresh()
        self._task = asyncio.create_task(self._run_cycle(), name="mlbb-refresh")
        return self._task

    async def _run_cycle(self) -> bool:
        try:
            self.store.begin_refresh()
            logger.info("Starting refresh cycle")
            heroes = list(await self._fetch_heroes())
            if not heroes:
                raise EmptyResult("Provider returned no usable heroes")
            tier_list = build_tier_list(heroes)
            leaderboard = build_leaderboard(heroes)
            snapshot = self.store.commit(heroes, tier_list, leaderboard)
        except Exception as exc:
            snapshot = self.store.fail()
            logger.error(
                "Refresh failed (%s: %s); status=%s, consecutive failures=%d",
                type(exc).__name__,
                exc,
                snapshot.status.value,
                snapshot.consecutive_failures,
            )
            return False
        finally:
            self._running = False

        flushed = self.cache.flush_all() if self.cache is not None else 0
        logger.info(
            "Refresh done. Heroes: %d, Tiers: %d, Leaderboard: %d, cache entries flushed: %d",
            snapshot.hero_count,
            len(snapshot.tier_list),
            len(snapshot.leaderboard),
            flushed,
        )
        return True

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.refresh()
            except Conflict:
                logger.info("Scheduled refresh skipped; another refresh is still running")
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        """Launch the initial refresh followed by the periodic loop."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run_forever(), name="mlbb-refresh-loop")
        return self._loop_task

    async def stop(self) -> None:
        """Cancel the loop and any running refresh; an interrupted refresh counts as failed."""
        interrupted = self._running
        for task in (self._loop_task, self._task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._loop_task = None
        self._task = None
        # A task cancelled before its first step never reaches its finally block.
        self._running = False
        if interrupted and self.store.read().status is SnapshotStatus.SCRAPING:
            snapshot = self.store.fail()
            logger.warning("Refresh cancelled during shutdown; status=%s", snapshot.status.value)
