"""Tests for snapshot state transitions and the single-flight refresh scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from mlbbai.cache import TTLCache
from mlbbai.errors import Conflict, FetchTimeout
from mlbbai.hero_data import make_hero
from mlbbai.metrics import build_leaderboard, build_tier_list
from mlbbai.scheduler import RefreshScheduler
from mlbbai.store import SnapshotStatus, SnapshotStore


def _heroes():
    return [
        make_hero("HeroA", role="Fighter", win_rate=0.58, ban_rate=0.10, pick_rate=0.02, hero_id=1),
        make_hero("HeroB", role="Mage", win_rate=0.40, ban_rate=0.30, pick_rate=0.05, hero_id=2),
    ]


class ScriptedFetcher:
    """Returns (or raises) the next scripted outcome on every call."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else []
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class GatedFetcher:
    """Blocks inside the fetch until released so tests can observe a refresh mid-flight."""

    def __init__(self, heroes) -> None:
        self.heroes = heroes
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self):
        self.started.set()
        await self.release.wait()
        return self.heroes


def test_store_starts_initializing_and_empty() -> None:
    snapshot = SnapshotStore().read()
    assert snapshot.status is SnapshotStatus.INITIALIZING
    assert snapshot.heroes == ()
    assert snapshot.last_updated is None
    assert snapshot.last_updated_iso is None


def test_commit_then_fail_goes_stale_and_keeps_data() -> None:
    store = SnapshotStore()
    heroes = _heroes()
    stamp = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    store.begin_refresh()
    assert store.read().status is SnapshotStatus.SCRAPING

    committed = store.commit(heroes, build_tier_list(heroes), build_leaderboard(heroes), now=stamp)
    assert committed.status is SnapshotStatus.READY
    assert committed.last_updated_iso == "2026-01-02T03:04:05+00:00"
    assert committed.tier_list_dict() == {"S+": ["HeroA"], "C": ["HeroB"]}

    store.begin_refresh()
    assert store.read().heroes == committed.heroes
    stale = store.fail()
    assert stale.status is SnapshotStatus.STALE
    assert stale.heroes == committed.heroes
    assert stale.leaderboard == committed.leaderboard
    assert stale.last_updated == stamp
    assert stale.consecutive_failures == 1
    assert store.fail().consecutive_failures == 2


def test_fail_without_data_is_error() -> None:
    store = SnapshotStore()
    store.begin_refresh()
    snapshot = store.fail()
    assert snapshot.status is SnapshotStatus.ERROR
    assert snapshot.heroes == ()
    assert snapshot.tier_list == {}
    assert snapshot.consecutive_failures == 1


def test_successful_refresh_publishes_and_flushes_cache() -> None:
    store = SnapshotStore()
    cache = TTLCache()
    cache.set("hero_detail_1", {"name": "HeroA"})
    scheduler = RefreshScheduler(store, ScriptedFetcher(_heroes()), cache=cache)

    assert asyncio.run(scheduler.refresh()) is True

    snapshot = store.read()
    assert snapshot.status is SnapshotStatus.READY
    assert snapshot.hero_count == 2
    assert snapshot.tier_list_dict() == {"S+": ["HeroA"], "C": ["HeroB"]}
    assert [entry["name"] for entry in snapshot.leaderboard_dicts()[:2]] == ["HeroA", "HeroB"]
    assert len(snapshot.leaderboard) == 6
    assert snapshot.consecutive_failures == 0
    assert len(cache) == 0
    assert scheduler.in_flight is False


@pytest.mark.parametrize("outcome", [[], FetchTimeout("Timed out after 15s"), RuntimeError("boom")])
def test_failed_refresh_keeps_previous_snapshot_and_cache(outcome) -> None:
    store = SnapshotStore()
    cache = TTLCache()
    scheduler = RefreshScheduler(store, ScriptedFetcher(_heroes(), outcome), cache=cache)

    assert asyncio.run(scheduler.refresh()) is True
    good = store.read()
    cache.set("ai_analysis_1", "cached report")

    assert asyncio.run(scheduler.refresh()) is False
    snapshot = store.read()
    assert snapshot.status is SnapshotStatus.STALE
    assert snapshot.heroes == good.heroes
    assert snapshot.tier_list == good.tier_list
    assert snapshot.last_updated == good.last_updated
    assert snapshot.consecutive_failures == 1
    assert cache.get("ai_analysis_1") == "cached report"
    assert scheduler.in_flight is False


def test_first_refresh_failure_is_error() -> None:
    store = SnapshotStore()
    scheduler = RefreshScheduler(store, ScriptedFetcher(FetchTimeout("Timed out after 15s")))
    assert asyncio.run(scheduler.refresh()) is False
    assert store.read().status is SnapshotStatus.ERROR


def test_readers_see_old_snapshot_while_refresh_runs_and_trigger_conflicts() -> None:
    async def scenario():
        store = SnapshotStore()
        first = _heroes()
        await RefreshScheduler(store, ScriptedFetcher(first)).refresh()
        before = store.read()

        updated = [make_hero("HeroC", win_rate=0.55, hero_id=3)]
        fetcher = GatedFetcher(updated)
        scheduler = RefreshScheduler(store, fetcher)

        task = scheduler.trigger()
        await fetcher.started.wait()

        mid = store.read()
        assert mid.status is SnapshotStatus.SCRAPING
        assert mid.heroes == before.heroes
        assert mid.tier_list == before.tier_list
        assert scheduler.in_flight is True

        with pytest.raises(Conflict):
            scheduler.trigger()
        with pytest.raises(Conflict):
            await scheduler.refresh()

        fetcher.release.set()
        assert await task is True
        return store.read(), scheduler.in_flight

    after, in_flight = asyncio.run(scenario())
    assert [hero.name for hero in after.heroes] == ["HeroC"]
    assert after.tier_list_dict() == {"S": ["HeroC"]}
    assert in_flight is False


def test_start_runs_initial_refresh_then_stop_cancels_loop() -> None:
    async def scenario():
        store = SnapshotStore()
        fetcher = ScriptedFetcher(_heroes())
        scheduler = RefreshScheduler(store, fetcher, interval=3600)
        loop_task = scheduler.start()
        assert scheduler.start() is loop_task
        for _ in range(20):
            if store.read().status is SnapshotStatus.READY:
                break
            await asyncio.sleep(0)
        await scheduler.stop()
        return store.read(), fetcher.calls, loop_task

    snapshot, calls, loop_task = asyncio.run(scenario())
    assert snapshot.status is SnapshotStatus.READY
    assert calls == 1
    assert loop_task.cancelled()


def test_trigger_marks_scraping_before_the_task_runs() -> None:
    async def scenario():
        store = SnapshotStore()
        await RefreshScheduler(store, ScriptedFetcher(_heroes())).refresh()
        scheduler = RefreshScheduler(store, ScriptedFetcher(_heroes()))
        task = scheduler.trigger()
        status_now = store.read().status
        await task
        return status_now, store.read().status

    status_now, status_after = asyncio.run(scenario())
    assert status_now is SnapshotStatus.SCRAPING
    assert status_after is SnapshotStatus.READY


@pytest.mark.parametrize(("seed", "expected"), [(True, SnapshotStatus.STALE), (False, SnapshotStatus.ERROR)])
def test_stop_during_refresh_records_a_failure(seed: bool, expected: SnapshotStatus) -> None:
    async def scenario():
        store = SnapshotStore()
        if seed:
            await RefreshScheduler(store, ScriptedFetcher(_heroes())).refresh()
        fetcher = GatedFetcher(_heroes())
        scheduler = RefreshScheduler(store, fetcher)
        scheduler.trigger()
        await fetcher.started.wait()
        await scheduler.stop()
        return store.read(), scheduler.in_flight

    snapshot, in_flight = asyncio.run(scenario())
    assert snapshot.status is expected
    assert snapshot.consecutive_failures == 1
    assert snapshot.hero_count == (2 if seed else 0)
    assert in_flight is False
