"""End-to-end tests for the HTTP API using FastAPI's TestClient and in-memory fakes."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest
from fastapi.testclient import TestClient

from api import RateLimiter, build_services, create_app, hero_detail
from fakes import HERO_REPORT, FakeBackend, FakeClient, as_reply, rank_payload, rank_row
from mlbbai.config import Settings
from mlbbai.scheduler import RefreshScheduler

SECRET = "s3cret"


def _responses():
    return {
        "hero-rank": rank_payload(
            rank_row("HeroA", 0.58, 0.10, 0.02, hero_id=1, head="a.png", role="Fighter"),
            rank_row("HeroB", 0.40, 0.30, 0.05, hero_id=2, head="b.png", role="Mage"),
        ),
        "hero-detail/1": {"data": {"records": [{"data": {"name": "HeroA", "story": "Lore.", "durability": 70}}]}},
        "hero-counter/1": {"data": {"records": [{"data": {"counters": [{"name": "HeroB"}]}}]}},
        "hero-compatibility/1": {"data": []},
    }


def _services(responses=None, backend=None, refresh=True, **overrides):
    settings = Settings(scrape_secret=SECRET, rate_limit_requests=0, **overrides)
    services = build_services(settings, client=FakeClient(responses or _responses()), backend=backend)
    if refresh:
        asyncio.run(services.scheduler.refresh())
    return services


@pytest.fixture
def services():
    return _services()


@pytest.fixture
def client(services):
    return TestClient(create_app(services, run_background=False))


def test_status_before_first_refresh() -> None:
    client = TestClient(create_app(_services(refresh=False), run_background=False))
    body = client.get("/").json()
    assert body["status"] == "initializing"
    assert body["heroCount"] == 0
    assert body["lastUpdated"] is None
    assert client.get("/api/heroes").json()["count"] == 0
    assert client.get("/api/tier-list").json()["data"] == {}


def test_status_and_health(client) -> None:
    body = client.get("/").json()
    assert body["status"] == "ready"
    assert body["heroCount"] == 2
    assert body["consecutiveFailures"] == 0
    assert "GET /api/heroes" in body["endpoints"]
    assert client.get("/health").json() == {"ok": True}


def test_tier_list_and_leaderboard_after_refresh(client) -> None:
    tiers = client.get("/api/tier-list").json()
    assert tiers["data"] == {"S+": ["HeroA"], "C": ["HeroB"]}
    assert tiers["lastUpdated"]

    board = client.get("/api/leaderboard", params={"category": "Top Win Rate"}).json()
    assert board["count"] == 2
    assert [(entry["rank"], entry["name"], entry["points"]) for entry in board["data"]] == [
        (1, "HeroA", "58.0%"),
        (2, "HeroB", "40.0%"),
    ]

    banned = client.get("/api/leaderboard", params={"category": "banned"}).json()
    assert [entry["name"] for entry in banned["data"]] == ["HeroB", "HeroA"]

    assert client.get("/api/leaderboard").json()["count"] == 6
    assert client.get("/api/leaderboard", params={"limit": 1}).json()["count"] == 1
    for limit in (200, 0, -3, "abc"):
        response = client.get("/api/leaderboard", params={"limit": limit})
        assert response.status_code == 200
        assert response.json()["count"] == 6


def test_hero_list_filters_and_hides_raw_values(client) -> None:
    body = client.get("/api/heroes").json()
    assert body["count"] == 2
    for hero in body["data"]:
        assert not any(key.startswith("_") for key in hero)
    assert body["data"][0]["winRate"] == "58.0%"

    by_ban = client.get("/api/heroes", params={"sort": "banrate"}).json()
    assert [hero["name"] for hero in by_ban["data"]] == ["HeroB", "HeroA"]

    mages = client.get("/api/heroes", params={"role": "mage"}).json()
    assert [hero["name"] for hero in mages["data"]] == ["HeroB"]

    top = client.get("/api/heroes", params={"tier": "S+"}).json()
    assert [hero["name"] for hero in top["data"]] == ["HeroA"]

    unsorted = client.get("/api/heroes", params={"sort": "name"})
    assert unsorted.status_code == 200
    assert [hero["name"] for hero in unsorted.json()["data"]] == ["HeroA", "HeroB"]


def test_search_is_capped_and_tolerates_empty_query() -> None:
    rows = [rank_row(f"Hero{i:02d}", 0.5, hero_id=i) for i in range(12)]
    client = TestClient(create_app(_services({"hero-rank": rank_payload(*rows)}), run_background=False))

    body = client.get("/api/search", params={"q": "hero"}).json()
    assert body["count"] == 10
    assert body["data"][0]["name"] == "Hero00"
    assert client.get("/api/search", params={"q": "05"}).json()["count"] == 1
    empty = client.get("/api/search")
    assert empty.status_code == 200
    assert empty.json()["count"] == 0


def test_hero_detail_live_then_cache(client, services) -> None:
    assert client.get("/api/heroes/nobody").status_code == 404

    live = client.get("/api/heroes/heroa").json()
    assert live["source"] == "live"
    data = live["data"]
    assert data["name"] == "HeroA"
    assert data["role"] == "Fighter"
    assert data["img"] == "a.png"
    assert data["description"] == "Lore."
    assert data["stats"]["durability"] == 70.0
    assert data["counters"] == ["HeroB"]
    assert data["teammates"] == []
    assert data["build"] == []

    calls = len(services.client.calls)
    cached = client.get("/api/heroes/HeroA").json()
    assert cached["source"] == "cache"
    assert cached["data"] == data
    assert len(services.client.calls) == calls


def test_refresh_flushes_cached_detail(client, services) -> None:
    client.get("/api/heroes/heroa")
    asyncio.run(services.scheduler.refresh())
    assert client.get("/api/heroes/heroa").json()["source"] == "live"


def test_analyze_falls_back_without_backend(client) -> None:
    body = client.get("/api/analyze/HeroA").json()
    assert body["source"] == "fallback"
    assert body["hero"] == "HeroA"
    assert body["analysis"]["metaRating"].startswith("S+-tier pick")

    again = client.get("/api/analyze/heroa").json()
    assert again["source"] == "cache"

    unknown = client.get("/api/analyze/Mystery").json()
    assert unknown["source"] == "fallback"
    assert unknown["analysis"]["overview"] == "Mystery is a versatile hero in the current meta."


def test_analyze_uses_backend_report() -> None:
    backend = FakeBackend([as_reply(HERO_REPORT, fenced=True)])
    client = TestClient(create_app(_services(backend=backend), run_background=False))
    body = client.get("/api/analyze/HeroA").json()
    assert body["source"] == "ai"
    assert body["analysis"] == HERO_REPORT
    assert "Fighter" in backend.prompts[0]


def test_synergy_rejects_same_hero_and_is_order_independent(client) -> None:
    assert client.get("/api/synergy/HeroA/heroa").status_code == 400
    assert client.get("/api/synergy/HeroA/1").status_code == 400

    forward = client.get("/api/synergy/HeroA/HeroB").json()
    assert forward["source"] == "fallback"
    assert forward["heroes"] == ["HeroA", "HeroB"]
    assert forward["synergy"]["synergyScore"] == 65

    reverse = client.get("/api/synergy/HeroB/HeroA").json()
    assert reverse["source"] == "cache"
    assert reverse["synergy"] == forward["synergy"]


def test_scrape_requires_secret(client) -> None:
    assert client.post("/api/scrape").status_code == 401
    response = client.post("/api/scrape", headers={"X-Scrape-Secret": "wrong"})
    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}


def test_scrape_without_configured_secret_is_always_rejected() -> None:
    services = _services(refresh=False)
    services.settings = Settings(scrape_secret=None, rate_limit_requests=0)
    client = TestClient(create_app(services, run_background=False))
    assert client.post("/api/scrape", headers={"X-Scrape-Secret": ""}).status_code == 401
    assert client.post("/api/scrape", headers={"X-Scrape-Secret": "anything"}).status_code == 401


def test_scrape_accepts_once_then_conflicts_while_running() -> None:
    services = _services()

    async def slow_fetch():
        await asyncio.sleep(60)
        return []

    services.scheduler = RefreshScheduler(services.store, slow_fetch, cache=services.cache)
    headers = {"X-Scrape-Secret": SECRET}

    with TestClient(create_app(services, run_background=False)) as client:
        accepted = client.post("/api/scrape", headers=headers)
        assert accepted.status_code == 202
        assert accepted.json() == {"message": "Scrape started"}
        assert client.get("/").json()["status"] == "scraping"

        conflict = client.post("/api/scrape", headers=headers)
        assert conflict.status_code == 409

        # Existing data keeps being served while the refresh runs.
        assert client.get("/api/tier-list").json()["data"] == {"S+": ["HeroA"], "C": ["HeroB"]}

    assert services.scheduler.in_flight is False
    # Shutdown interrupted the refresh; the old data is kept as stale.
    assert services.store.read().status.value == "stale"
    assert services.store.read().hero_count == 2


def test_scrape_runs_refresh_in_background() -> None:
    services = _services(refresh=False)
    with TestClient(create_app(services, run_background=False)) as client:
        assert client.post("/api/scrape", headers={"X-Scrape-Secret": SECRET}).status_code == 202
        for _ in range(100):
            if client.get("/").json()["status"] == "ready":
                break
            time.sleep(0.01)
        assert client.get("/").json()["heroCount"] == 2


def test_rate_limit_returns_429_with_retry_after() -> None:
    services = _services()
    services.rate_limiter = RateLimiter(2, 60)
    client = TestClient(create_app(services, run_background=False))

    assert client.get("/health").status_code == 200
    assert client.get("/health").status_code == 200
    limited = client.get("/health")
    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) >= 1
    assert "2 requests per 60 seconds" in limited.json()["detail"]


def test_rate_limiter_sweep_drops_idle_clients() -> None:
    limiter = RateLimiter(1, 10)

    async def scenario():
        assert await limiter.check("1.2.3.4") is None
        retry_after = await limiter.check("1.2.3.4")
        assert retry_after is not None and 0 < retry_after <= 10
        await limiter.check("5.6.7.8")
        assert limiter.tracked_clients == 2
        assert await limiter.sweep(now=time.monotonic()) == 0
        return await limiter.sweep(now=time.monotonic() + 11)

    assert asyncio.run(scenario()) == 2
    assert limiter.tracked_clients == 0


def test_disabled_rate_limiter() -> None:
    limiter = RateLimiter(0, 60)
    assert limiter.describe() == "unlimited"
    assert asyncio.run(limiter.check("anyone")) is None


class GatedClient(FakeClient):
    """Holds one path's request open until the test releases it."""

    def __init__(self, responses, gated_path: str) -> None:
        super().__init__(responses)
        self.gated_path = gated_path
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_json(self, path, params=None):
        if path == self.gated_path:
            self.entered.set()
            self.release.wait(5)
        return super().get_json(path, params)


def test_detail_fetched_across_a_refresh_is_not_cached() -> None:
    gated = GatedClient(_responses(), "hero-detail/1")
    settings = Settings(scrape_secret=SECRET, rate_limit_requests=0)
    services = build_services(settings, client=gated)

    async def scenario():
        await services.scheduler.refresh()
        pending = asyncio.create_task(hero_detail("heroa", services))
        while not gated.entered.is_set():
            await asyncio.sleep(0.01)

        gated.responses["hero-rank"] = rank_payload(
            rank_row("HeroA", 0.40, 0.10, 0.02, hero_id=1, head="a.png", role="Fighter"),
            rank_row("HeroB", 0.58, 0.30, 0.05, hero_id=2, head="b.png", role="Mage"),
        )
        assert await services.scheduler.refresh() is True

        gated.release.set()
        return await pending

    stale = asyncio.run(scenario())
    assert stale["data"]["winRate"] == "58.0%"
    assert services.cache.get("hero_detail_1") is None

    client = TestClient(create_app(services, run_background=False))
    fresh = client.get("/api/heroes/heroa").json()
    assert fresh["source"] == "live"
    assert fresh["data"]["winRate"] == "40.0%"
