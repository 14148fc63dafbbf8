"""FastAPI entrypoint exposing MLBB hero statistics, tiers and generated analysis."""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

import pandas as pd
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from mlbbai.analysis import AnalysisService, AnthropicBackend, TextBackend
from mlbbai.cache import TTLCache
from mlbbai.config import Settings, configure_logging
from mlbbai.errors import Conflict, InvalidRequest, MLBBError, NotFound, RateLimited, Unauthorized
from mlbbai.hero_data import Hero, fetch_all, fetch_detail, find_hero, make_hero
from mlbbai.scheduler import RefreshScheduler
from mlbbai.stats_client import MLBBStatsClient
from mlbbai.store import SnapshotStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "MLBB Analysis API"
SEARCH_LIMIT = 10
DEFAULT_LEADERBOARD_LIMIT = 50
SORT_COLUMNS = ("winrate", "banrate", "pickrate")
ENDPOINTS = [
    "GET /api/heroes",
    "GET /api/heroes/:slug",
    "GET /api/search?q=",
    "GET /api/tier-list",
    "GET /api/leaderboard",
    "GET /api/analyze/:heroName",
    "GET /api/synergy/:hero1/:hero2",
    "POST /api/scrape (manual trigger)",
]


class RateLimiter:
    """Simple in-memory per-IP limiter using a sliding window."""

    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = max(0, int(limit))
        self.window = max(1, int(window_seconds))
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    @property
    def tracked_clients(self) -> int:
        return len(self._hits)

    def describe(self) -> str:
        if not self.enabled:
            return "unlimited"
        unit = "second" if self.window == 1 else "seconds"
        return f"{self.limit} requests per {self.window} {unit}"

    async def check(self, identity: str) -> Optional[float]:
        """Record a hit and return retry-after seconds when over the limit."""
        if not self.enabled:
            return None
        now = time.monotonic()
        window_start = now - self.window
        async with self._lock:
            dq = self._hits.get(identity)
            if dq is None:
                dq = deque()
                self._hits[identity] = dq
            while dq and dq[0] <= window_start:
                dq.popleft()
            if len(dq) >= self.limit:
                retry_after = max(0.0, self.window - (now - dq[0]))
                return retry_after
            dq.append(now)
            return None

    async def sweep(self, now: Optional[float] = None) -> int:
        """Forget clients with no hits inside the window; returns how many were dropped."""
        now = time.monotonic() if now is None else now
        window_start = now - self.window
        async with self._lock:
            idle = [key for key, dq in self._hits.items() if not dq or dq[-1] <= window_start]
            for key in idle:
                del self._hits[key]
        return len(idle)


@dataclass
class Services:
    """Everything the routes need, built once per application."""

    settings: Settings
    store: SnapshotStore
    cache: TTLCache
    client: MLBBStatsClient
    scheduler: RefreshScheduler
    analysis: AnalysisService
    rate_limiter: RateLimiter


def build_services(
    settings: Optional[Settings] = None,
    *,
    client: Optional[MLBBStatsClient] = None,
    backend: Optional[TextBackend] = None,
) -> Services:
    """Wire the store, cache, scheduler and analysis service from settings."""
    settings = settings or Settings.from_env()
    client = client or MLBBStatsClient(settings.api_base_url, timeout=settings.fetch_timeout)
    if backend is None and settings.anthropic_api_key:
        backend = AnthropicBackend(
            settings.anthropic_api_key,
            model=settings.ai_model,
            timeout=settings.ai_timeout,
        )
    store = SnapshotStore()
    cache = TTLCache(default_ttl=settings.cache_ttl)
    scheduler = RefreshScheduler(
        store,
        lambda: fetch_all(client),
        cache=cache,
        interval=settings.refresh_interval,
    )
    return Services(
        settings=settings,
        store=store,
        cache=cache,
        client=client,
        scheduler=scheduler,
        analysis=AnalysisService(backend, cache, ttl=settings.cache_ttl),
        rate_limiter=RateLimiter(settings.rate_limit_requests, settings.rate_limit_window),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def _detail_cache_key(hero: Hero) -> str:
    return f"hero_detail_{hero.identity}"


def _filter_heroes(
    heroes: List[Hero],
    *,
    role: Optional[str] = None,
    tier: Optional[str] = None,
    search: Optional[str] = None,
    sort: Optional[str] = None,
) -> List[Hero]:
    """Apply the listing filters and optional descending sort on a raw rate."""
    if not heroes:
        return []
    df = pd.DataFrame(
        {
            "name": [h.name for h in heroes],
            "role": [h.role for h in heroes],
            "tier": [h.tier for h in heroes],
            "winrate": [h.win_rate.sort_value for h in heroes],
            "banrate": [h.ban_rate.sort_value for h in heroes],
            "pickrate": [h.pick_rate.sort_value for h in heroes],
        }
    )
    if role:
        df = df[df["role"].str.lower().str.contains(role.strip().lower(), regex=False)]
    if tier:
        df = df[df["tier"].str.lower() == tier.strip().lower()]
    if search:
        needle = search.strip().lower()
        name_match = df["name"].str.lower().str.contains(needle, regex=False)
        role_match = df["role"].str.lower().str.contains(needle, regex=False)
        df = df[name_match | role_match]
    if sort in SORT_COLUMNS:
        df = df.sort_values(sort, ascending=False, kind="mergesort")
    return [heroes[position] for position in df.index]


def _parse_limit(raw: Optional[str]) -> int:
    """Positive integer limit; anything else falls back to the default."""
    try:
        value = int(raw) if raw is not None else DEFAULT_LEADERBOARD_LIMIT
    except ValueError:
        return DEFAULT_LEADERBOARD_LIMIT
    return value if value >= 1 else DEFAULT_LEADERBOARD_LIMIT


def _merge_detail(base: Dict[str, Any], detail: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay detail fields on the base hero without blanking known values."""
    merged = dict(base)
    for key, value in detail.items():
        if value in (None, "", [], {}) and key in merged:
            continue
        if key == "name" and merged.get("name"):
            continue
        merged[key] = value
    return merged


def _hero_for_analysis(services: Services, name: str) -> Hero:
    """Resolve a hero by name, falling back to a name-only record for unknown heroes."""
    hero = find_hero(services.store.read().heroes, name)
    if hero is None:
        return make_hero(name.strip())
    detail = services.cache.get(_detail_cache_key(hero))
    if detail:
        extra = {key: detail[key] for key in ("stats", "build") if key in detail}
        hero = replace(hero, detail=extra or None)
    return hero


def _error_response(exc: MLBBError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(int(exc.retry_after) + 1)}
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


router = APIRouter()


@router.get("/")
async def service_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Service status plus the endpoint catalog."""
    snapshot = services.store.read()
    return {
        "service": SERVICE_NAME,
        "status": snapshot.status.value,
        "lastUpdated": snapshot.last_updated_iso,
        "heroCount": snapshot.hero_count,
        "consecutiveFailures": snapshot.consecutive_failures,
        "endpoints": ENDPOINTS,
    }


@router.get("/health")
def health() -> Dict[str, bool]:
    """Simple liveness endpoint."""
    return {"ok": True}


@router.get("/api/heroes")
async def list_heroes(
    role: Optional[str] = Query(None, description="Keep heroes whose role contains this text."),
    tier: Optional[str] = Query(None, description="Keep heroes in this tier (S+, S, A, B, C, Unranked)."),
    sort: Optional[str] = Query(
        None,
        description="Sort descending by winrate, banrate or pickrate; other values are ignored.",
    ),
    search: Optional[str] = Query(None, description="Substring match on hero name or role."),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Filtered and sorted hero list from the current snapshot."""
    snapshot = services.store.read()
    heroes = _filter_heroes(list(snapshot.heroes), role=role, tier=tier, search=search, sort=sort)
    return {
        "count": len(heroes),
        "lastUpdated": snapshot.last_updated_iso,
        "data": [hero.to_dict() for hero in heroes],
    }


@router.get("/api/search")
async def search_heroes(
    q: str = Query("", description="Substring to look for in hero names and roles."),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Quick search capped at a handful of results."""
    if not q.strip():
        return {"query": q, "count": 0, "data": []}
    matches = _filter_heroes(list(services.store.read().heroes), search=q)[:SEARCH_LIMIT]
    return {"query": q, "count": len(matches), "data": [hero.to_dict() for hero in matches]}


@router.get("/api/heroes/{slug}")
async def hero_detail(slug: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Hero record merged with the provider's extended detail, cache first."""
    snapshot = services.store.read()
    base = find_hero(snapshot.heroes, slug)
    if base is None:
        raise NotFound(f"Unknown hero '{slug}'")

    cache_key = _detail_cache_key(base)
    cached = services.cache.get(cache_key)
    if cached is not None:
        return {"source": "cache", "data": cached}

    generation = services.cache.generation
    target = base.id if base.id is not None else base.name
    detail = await fetch_detail(services.client, target, snapshot.heroes)
    full = _merge_detail(base.to_dict(), detail)
    if not services.cache.set(cache_key, full, generation=generation):
        logger.info("Not caching detail for %s; a refresh replaced the snapshot meanwhile", base.name)
    return {"source": "live", "data": full}


@router.get("/api/tier-list")
async def tier_list(services: Services = Depends(get_services)) -> Dict[str, Any]:
    snapshot = services.store.read()
    return {"lastUpdated": snapshot.last_updated_iso, "data": snapshot.tier_list_dict()}


@router.get("/api/leaderboard")
async def leaderboard(
    category: Optional[str] = Query(
        None,
        description="Substring of the category name (Top Win Rate, Most Banned, Most Picked).",
    ),
    limit: Optional[str] = Query(None, description="Maximum number of entries to return (default 50)."),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    snapshot = services.store.read()
    entries = snapshot.leaderboard_dicts()
    if category:
        needle = category.strip().lower()
        entries = [entry for entry in entries if needle in str(entry["category"]).lower()]
    entries = entries[: _parse_limit(limit)]
    return {"lastUpdated": snapshot.last_updated_iso, "count": len(entries), "data": entries}


@router.get("/api/analyze/{name}")
async def analyze_hero(name: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Generated analysis for one hero; always answers, using a fallback report when needed."""
    hero = _hero_for_analysis(services, name)
    result = await services.analysis.analyze_hero(hero)
    return {"source": result.source, "hero": name, "analysis": result.to_dict()}


@router.get("/api/synergy/{name1}/{name2}")
async def synergy(
    name1: str,
    name2: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Generated synergy report for two different heroes; argument order does not matter."""
    if name1.strip().lower() == name2.strip().lower():
        raise InvalidRequest("Pick two different heroes for a synergy report.")
    first = _hero_for_analysis(services, name1)
    second = _hero_for_analysis(services, name2)
    if first.identity == second.identity:
        raise InvalidRequest("Pick two different heroes for a synergy report.")
    result = await services.analysis.analyze_pair(first, second)
    return {"source": result.source, "heroes": [name1, name2], "synergy": result.to_dict()}


@router.post("/api/scrape", status_code=202)
async def trigger_scrape(
    x_scrape_secret: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Start a background refresh; requires the shared secret header."""
    expected = services.settings.scrape_secret
    if not expected or not x_scrape_secret or not hmac.compare_digest(
        x_scrape_secret.encode("utf-8"), expected.encode("utf-8")
    ):
        raise Unauthorized("Unauthorized")
    try:
        services.scheduler.trigger()
    except Conflict:
        logger.info("Manual refresh rejected; one is already running")
        raise
    return {"message": "Scrape started"}


async def _sweep_rate_limits(limiter: RateLimiter, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        dropped = await limiter.sweep()
        if dropped:
            logger.debug("Rate limiter sweep dropped %d idle clients", dropped)


def create_app(services: Optional[Services] = None, *, run_background: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    With `run_background` the lifespan starts the refresh loop (initial refresh
    first, not awaited, so requests are served immediately) and the rate limiter
    sweep.
    """
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper: Optional[asyncio.Task] = None
        if run_background:
            services.scheduler.start()
            sweeper = asyncio.create_task(
                _sweep_rate_limits(services.rate_limiter, services.settings.rate_limit_sweep)
            )
            logger.info(
                "%s started; refreshing from %s every %ss",
                SERVICE_NAME,
                services.settings.api_base_url,
                services.settings.refresh_interval,
            )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
            await services.scheduler.stop()

    app = FastAPI(
        title=SERVICE_NAME,
        description="Hero statistics, tier lists, leaderboards and generated analysis for MLBB.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(MLBBError)
    async def handle_service_error(request: Request, exc: MLBBError) -> JSONResponse:
        return _error_response(exc)

    @app.middleware("http")
    async def enforce_rate_limit(request: Request, call_next):
        limiter = services.rate_limiter
        identity = request.client.host if request.client else "unknown"
        retry_after = await limiter.check(identity)
        if retry_after is not None:
            detail = (
                "Rate limit exceeded. "
                f"The API allows {limiter.describe()}. Please wait and try again."
            )
            return _error_response(RateLimited(detail, retry_after=retry_after))
        return await call_next(request)

    app.include_router(router)
    return app


def _default_app() -> FastAPI:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return create_app(build_services(settings))


app = _default_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.services.settings.port)
