"""
hero_data.py
------------

Higher-level data access helpers built on top of :mod:`stats_client`.
The provider reshapes its payloads often, so every parsing step is an explicit
adapter that returns ``None`` instead of raising. Adapters are tried in a
fixed priority order and the first strategy that yields heroes wins.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import FetchError, ShapeMismatch
from .metrics import classify_tier
from .stats_client import MLBBStatsClient

logger = logging.getLogger(__name__)

MISSING = "—"

# Exceptions an adapter may hit while poking at an unexpected payload.
_PARSE_ERRORS = (AttributeError, IndexError, KeyError, TypeError, ValueError)


# --------------------------------------------------------------------- #
# Canonical model
# --------------------------------------------------------------------- #


@dataclass(frozen=True)
class Rate:
    """A provider rate as a fraction in [0, 1]; ``raw`` is None when unknown."""

    raw: Optional[float] = None

    @property
    def display(self) -> str:
        if self.raw is None:
            return MISSING
        return f"{self.raw * 100:.1f}%"

    @property
    def sort_value(self) -> float:
        return self.raw if self.raw is not None else 0.0

    @classmethod
    def parse(cls, value: Any) -> "Rate":
        """
        Coerce a provider value into a Rate.

        Fractions (0.523) are taken as-is, percentages (52.3 or "52.3%") are
        scaled down, anything unparsable or out of range becomes unknown.
        """
        if value is None or isinstance(value, bool):
            return cls()
        percent = False
        if isinstance(value, str):
            text = value.strip()
            if text.endswith("%"):
                percent = True
                text = text[:-1].strip()
            try:
                number = float(text)
            except ValueError:
                return cls()
        elif isinstance(value, (int, float)):
            number = float(value)
        else:
            return cls()
        if number != number:  # NaN
            return cls()
        if percent or number > 1:
            number = number / 100
        if not 0 <= number <= 1:
            return cls()
        return cls(number)


@dataclass(frozen=True)
class Hero:
    """One playable hero and its current performance metrics."""

    name: str
    role: str = MISSING
    win_rate: Rate = field(default_factory=Rate)
    ban_rate: Rate = field(default_factory=Rate)
    pick_rate: Rate = field(default_factory=Rate)
    tier: str = "Unranked"
    id: Optional[int] = None
    image: str = ""
    detail: Optional[Dict[str, Any]] = None

    @property
    def identity(self) -> str:
        return str(self.id) if self.id is not None else self.name.lower()

    @property
    def slug(self) -> str:
        return hero_slug(self.name)

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        """JSON form used by the API; raw sort values only on request."""
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "winRate": self.win_rate.display,
            "banRate": self.ban_rate.display,
            "pickRate": self.pick_rate.display,
            "tier": self.tier,
            "img": self.image,
        }
        if include_raw:
            payload["_winRate"] = self.win_rate.sort_value
            payload["_banRate"] = self.ban_rate.sort_value
            payload["_pickRate"] = self.pick_rate.sort_value
        if self.detail:
            payload.update(self.detail)
        return payload


def make_hero(
    name: str,
    *,
    role: Optional[str] = None,
    win_rate: Any = None,
    ban_rate: Any = None,
    pick_rate: Any = None,
    hero_id: Any = None,
    image: Optional[str] = None,
) -> Hero:
    """Build a Hero from loosely typed values, deriving the tier from the win rate."""
    win = win_rate if isinstance(win_rate, Rate) else Rate.parse(win_rate)
    return Hero(
        name=name.strip(),
        role=(role or "").strip() or MISSING,
        win_rate=win,
        ban_rate=ban_rate if isinstance(ban_rate, Rate) else Rate.parse(ban_rate),
        pick_rate=pick_rate if isinstance(pick_rate, Rate) else Rate.parse(pick_rate),
        tier=classify_tier(win.raw),
        id=_coerce_id(hero_id),
        image=(image or "").strip(),
    )


def hero_slug(name: str) -> str:
    """Lower-case, dash-separated form of a hero name ("Yi Sun-shin" -> "yi-sun-shin")."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower())
    return slug.strip("-")


def find_hero(heroes: Iterable[Hero], name_or_slug: str) -> Optional[Hero]:
    """Case-insensitive lookup by name, slug, or numeric provider id."""
    needle = (name_or_slug or "").strip().lower()
    if not needle:
        return None
    candidates = list(heroes)
    for hero in candidates:
        if hero.name.lower() == needle:
            return hero
    for hero in candidates:
        if hero.slug == needle or (hero.id is not None and str(hero.id) == needle):
            return hero
    return None


def dedupe_heroes(heroes: Iterable[Optional[Hero]]) -> List[Hero]:
    """Drop empty results and repeated identities or names; first seen wins."""
    seen_ids: set[str] = set()
    seen_names: set[str] = set()
    unique: List[Hero] = []
    for hero in heroes:
        if hero is None:
            continue
        name_key = hero.name.lower()
        if hero.identity in seen_ids or name_key in seen_names:
            continue
        seen_ids.add(hero.identity)
        seen_names.add(name_key)
        unique.append(hero)
    return unique


# --------------------------------------------------------------------- #
# Field helpers
# --------------------------------------------------------------------- #


def _coerce_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _first(mapping: Dict[str, Any], *keys: str) -> Any:
    """Return the first present, non-empty value among `keys`."""
    for key in keys:
        value = mapping.get(key)
        if value is not None and value != "":
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (list, tuple)):
        parts = [str(v).strip() for v in value if isinstance(v, (str, int)) and str(v).strip()]
        return " / ".join(parts) or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


# --------------------------------------------------------------------- #
# Row adapters
# --------------------------------------------------------------------- #

RowAdapter = Callable[[Any], Optional[Hero]]


def parse_rank_row(row: Any) -> Optional[Hero]:
    """
    Adapter for the `hero-rank` row shape:
    row.data.main_hero.data.{name, head} plus
    row.data.{main_hero_win_rate, main_hero_ban_rate, main_hero_appearance_rate, main_heroid}.
    """
    try:
        if not isinstance(row, dict):
            return None
        data = row["data"] if isinstance(row.get("data"), dict) else row
        hero_data = _as_dict(_as_dict(data.get("main_hero")).get("data"))
        name = _text(_first(hero_data, "name", "hero_name"))
        if not name:
            return None
        return make_hero(
            name,
            role=_text(_first(hero_data, "role", "type", "hero_type", "sortlabel")),
            win_rate=data.get("main_hero_win_rate"),
            ban_rate=data.get("main_hero_ban_rate"),
            pick_rate=data.get("main_hero_appearance_rate"),
            hero_id=_first(data, "main_heroid") or _first(hero_data, "id", "heroid"),
            image=_text(_first(hero_data, "head", "image", "icon")),
        )
    except _PARSE_ERRORS as exc:
        logger.debug("Skipping unparsable rank row: %s", exc)
        return None


def parse_flat_row(row: Any) -> Optional[Hero]:
    """Adapter for flat rows that use any of the alternate field names seen over time."""
    try:
        if not isinstance(row, dict):
            return None
        data = row["data"] if isinstance(row.get("data"), dict) else row
        nested = _as_dict(_as_dict(data.get("hero")).get("data"))
        source = {**nested, **data}
        name = _text(_first(source, "name", "hero_name", "heroName"))
        if not name:
            return None
        return make_hero(
            name,
            role=_text(_first(source, "role", "roles", "type", "hero_type", "sortlabel")),
            win_rate=_first(source, "win_rate", "winRate", "winrate", "main_hero_win_rate"),
            ban_rate=_first(source, "ban_rate", "banRate", "banrate", "main_hero_ban_rate"),
            pick_rate=_first(
                source,
                "pick_rate",
                "pickRate",
                "pickrate",
                "appearance_rate",
                "main_hero_appearance_rate",
            ),
            hero_id=_first(source, "hero_id", "heroid", "heroId", "main_heroid", "id"),
            image=_text(_first(source, "image", "img", "icon", "head", "head_image", "avatar")),
        )
    except _PARSE_ERRORS as exc:
        logger.debug("Skipping unparsable flat row: %s", exc)
        return None


def extract_rows(payload: Any) -> List[Any]:
    """Locate the row list inside a provider envelope or raise ShapeMismatch."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ("records", "data", "heroes", "list"):
                if isinstance(data.get(key), list):
                    return data[key]
        for key in ("records", "heroes", "list"):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise ShapeMismatch(f"No row list found in payload of type {type(payload).__name__}")


# --------------------------------------------------------------------- #
# Fallback chain
# --------------------------------------------------------------------- #

RANK_PARAMS: Tuple[Tuple[str, Any], ...] = (("size", 200), ("index", 1))


@dataclass(frozen=True)
class FetchStrategy:
    """One endpoint + row adapter pairing in the hero list fallback chain."""

    name: str
    path: str
    adapter: RowAdapter
    params: Tuple[Tuple[str, Any], ...] = ()

    @property
    def request_key(self) -> Tuple[Any, ...]:
        return (self.path, self.params)


FETCH_STRATEGIES: Tuple[FetchStrategy, ...] = (
    FetchStrategy("hero-rank", "hero-rank", parse_rank_row, RANK_PARAMS),
    FetchStrategy("hero-rank/flat", "hero-rank", parse_flat_row, RANK_PARAMS),
    FetchStrategy("hero-list", "hero-list", parse_flat_row),
)


def apply_strategy(strategy: FetchStrategy, payload: Any) -> List[Hero]:
    """Parse a payload with one strategy; a shape mismatch yields no heroes."""
    try:
        rows = extract_rows(payload)
    except ShapeMismatch as exc:
        logger.info("Strategy %s: %s", strategy.name, exc)
        return []
    heroes = dedupe_heroes(strategy.adapter(row) for row in rows)
    skipped = len(rows) - len(heroes)
    if skipped:
        logger.debug("Strategy %s skipped %d of %d rows", strategy.name, skipped, len(rows))
    return heroes


def fetch_hero_list(
    client: MLBBStatsClient,
    strategies: Sequence[FetchStrategy] = FETCH_STRATEGIES,
) -> List[Hero]:
    """
    Run the fallback chain and return the first non-empty hero list.

    Each endpoint is requested at most once; a failed request only rules out
    the strategies that depend on it. An empty list means every strategy failed.
    """
    payloads: Dict[Tuple[Any, ...], Any] = {}
    failed: set[Tuple[Any, ...]] = set()

    for strategy in strategies:
        key = strategy.request_key
        if key in failed:
            continue
        if key not in payloads:
            try:
                payloads[key] = client.get_json(strategy.path, dict(strategy.params) or None)
            except FetchError as exc:
                logger.warning("Strategy %s: fetch failed: %s", strategy.name, exc)
                failed.add(key)
                continue
        heroes = apply_strategy(strategy, payloads[key])
        if heroes:
            logger.info("Strategy %s parsed %d heroes", strategy.name, len(heroes))
            return heroes
        logger.info("Strategy %s yielded no heroes", strategy.name)

    logger.error("Every hero list strategy came back empty")
    return []


async def fetch_all(
    client: MLBBStatsClient,
    strategies: Sequence[FetchStrategy] = FETCH_STRATEGIES,
) -> List[Hero]:
    """Async wrapper running the blocking fallback chain on a worker thread."""
    return await asyncio.to_thread(fetch_hero_list, client, strategies)


# --------------------------------------------------------------------- #
# Hero detail
# --------------------------------------------------------------------- #

STAT_FIELDS = ("durability", "offense", "control", "mobility", "support")
_NAME_LIST_KEYS = ("counters", "teammates", "sub_hero", "sub_heroes", "records", "data", "list")


def resolve_hero_id(identity_or_id: Any, known_heroes: Iterable[Hero]) -> Optional[int]:
    """Map a numeric id or a name/slug onto the provider's hero id."""
    direct = _coerce_id(identity_or_id)
    if direct is not None:
        return direct
    hero = find_hero(known_heroes, str(identity_or_id))
    return hero.id if hero is not None else None


def unwrap_record(payload: Any, max_depth: int = 8) -> Dict[str, Any]:
    """Peel {code, data}, {records: [...]} and {hero: {data}} envelopes down to one record."""
    current = payload
    for _ in range(max_depth):
        if isinstance(current, list):
            current = current[0] if current and isinstance(current[0], dict) else {}
            continue
        if not isinstance(current, dict):
            return {}
        for key in ("data", "records", "hero"):
            inner = current.get(key)
            if isinstance(inner, (dict, list)) and inner:
                current = inner
                break
        else:
            return current
    return current if isinstance(current, dict) else {}


def _item_name(item: Any) -> Optional[str]:
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, dict):
        direct = _text(_first(item, "name", "hero_name", "heroName", "item_name"))
        if direct:
            return direct
        nested = _as_dict(_as_dict(item.get("hero")).get("data"))
        return _text(_first(nested, "name", "hero_name"))
    return None


def collect_names(payload: Any, depth: int = 0) -> List[str]:
    """Find the first list of hero-like items in a payload and return their names."""
    if depth > 6:
        return []
    if isinstance(payload, list):
        names = [name for name in (_item_name(item) for item in payload) if name]
        if names:
            return names
        for item in payload:
            found = collect_names(item, depth + 1)
            if found:
                return found
        return []
    if isinstance(payload, dict):
        for key in _NAME_LIST_KEYS:
            if key in payload:
                found = collect_names(payload[key], depth + 1)
                if found:
                    return found
    return []


def parse_build(payload: Any) -> List[str]:
    """Item names of the first recommended build in an academy guide payload."""
    try:
        builds = extract_rows(payload)
    except ShapeMismatch:
        return []
    if not builds or not isinstance(builds[0], dict):
        return []
    top = unwrap_record(builds[0]) if "items" not in builds[0] else builds[0]
    items = top.get("items") or top.get("equipment") or []
    if not isinstance(items, list):
        return []
    return [name for name in (_item_name(_as_dict(i).get("item") or i) for i in items) if name]


def _stat_value(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def parse_detail(
    hero_id: int,
    detail: Any,
    counters: Any,
    compatibility: Any,
    build: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Assemble the detail fragment; missing sub-payloads become empty fields."""
    body = unwrap_record(detail)
    return {
        "name": _text(_first(body, "name", "hero_name")) or str(hero_id),
        "role": _text(_first(body, "role", "type", "hero_type", "sortlabel")),
        "description": _text(_first(body, "story", "lore", "description")) or "",
        "img": _text(_first(body, "head_image", "image", "head", "avatar")) or "",
        "stats": {stat: _stat_value(body.get(stat)) for stat in STAT_FIELDS},
        "build": list(build or []),
        "counters": collect_names(counters),
        "teammates": collect_names(compatibility),
    }


def _settled(label: str, hero_id: int, result: Any) -> Any:
    if isinstance(result, BaseException):
        logger.warning("Hero %s %s fetch failed: %s", hero_id, label, result)
        return None
    return result


async def fetch_detail(
    client: MLBBStatsClient,
    identity_or_id: Any,
    known_heroes: Iterable[Hero],
) -> Dict[str, Any]:
    """
    Fetch the extended record for one hero.

    Detail, counters, compatibility and the build guide are requested
    concurrently and independently; any of them failing just leaves its fields
    empty. An input that cannot be resolved to a provider id returns an empty
    fragment.
    """
    hero_id = resolve_hero_id(identity_or_id, known_heroes)
    if hero_id is None:
        logger.warning("No provider hero id for %r", identity_or_id)
        return {}

    logger.info("Fetching detail for hero id %s", hero_id)
    detail, counters, compatibility, guide = await asyncio.gather(
        asyncio.to_thread(client.get_json, f"hero-detail/{hero_id}"),
        asyncio.to_thread(client.get_json, f"hero-counter/{hero_id}"),
        asyncio.to_thread(client.get_json, f"hero-compatibility/{hero_id}"),
        asyncio.to_thread(client.get_json, f"academy/guide/{hero_id}/builds"),
        return_exceptions=True,
    )

    return parse_detail(
        hero_id,
        _settled("detail", hero_id, detail),
        _settled("counter", hero_id, counters),
        _settled("compatibility", hero_id, compatibility),
        parse_build(_settled("build guide", hero_id, guide)),
    )


__all__ = [
    "MISSING",
    "Rate",
    "Hero",
    "make_hero",
    "hero_slug",
    "find_hero",
    "dedupe_heroes",
    "parse_rank_row",
    "parse_flat_row",
    "extract_rows",
    "FetchStrategy",
    "FETCH_STRATEGIES",
    "apply_strategy",
    "fetch_hero_list",
    "fetch_all",
    "resolve_hero_id",
    "unwrap_record",
    "collect_names",
    "parse_build",
    "parse_detail",
    "fetch_detail",
]
