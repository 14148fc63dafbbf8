"""
analysis.py
-----------

Generated hero analysis and two-hero synergy reports.

The generative backend is treated as unreliable: every call is retried with
backoff, its output is cleaned and validated against a fixed schema, and when
all attempts fail a deterministic report built from the hero's known fields is
returned instead. Both outcomes are cached the same way.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Type, TypeVar, Union

import anthropic
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cache import TTLCache
from .config import DEFAULT_AI_MODEL
from .errors import BackendFailure
from .hero_data import MISSING, Hero
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

ANALYSIS_TTL_SECONDS = 3600
MAX_TOKENS = 1024

ReportT = TypeVar("ReportT", bound=BaseModel)


# --------------------------------------------------------------------- #
# Report schemas
# --------------------------------------------------------------------- #


class HeroAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    overview: str
    playstyle: str
    strengths: List[str]
    weaknesses: List[str]
    early_game: str = Field(alias="earlyGame")
    late_game: str = Field(alias="lateGame")
    tips: List[str]
    meta_rating: str = Field(alias="metaRating")
    difficulty: str

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class SynergyAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    synergy_score: int = Field(alias="synergyScore", ge=0, le=100)
    verdict: str
    combo_potential: str = Field(alias="comboPotential")
    lane_recommendation: str = Field(alias="laneRecommendation")
    strengths: List[str]
    weaknesses: List[str]
    counter_strategy: str = Field(alias="counterStrategy")
    tip: str

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


Report = Union[HeroAnalysis, SynergyAnalysis]


@dataclass(frozen=True)
class AnalysisResult:
    """A report plus where it came from: "ai", "fallback" or "cache"."""

    report: Report
    source: str

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"

    def to_dict(self) -> Dict[str, Any]:
        return self.report.to_dict()


# --------------------------------------------------------------------- #
# Backend
# --------------------------------------------------------------------- #


class TextBackend(Protocol):
    async def complete(self, prompt: str) -> str:
        ...


class AnthropicBackend:
    """Generative backend on the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_AI_MODEL,
        timeout: float = 30.0,
        max_tokens: int = MAX_TOKENS,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        # Retries are handled by RetryPolicy, not the SDK.
        self.client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )

    async def complete(self, prompt: str) -> str:
        message = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        parts = [block.text for block in message.content if getattr(block, "type", None) == "text"]
        if not parts:
            raise BackendFailure("Backend response contained no text")
        return "".join(parts)


# --------------------------------------------------------------------- #
# Output parsing
# --------------------------------------------------------------------- #

_FENCE_OPEN = re.compile(r"^```[a-zA-Z0-9_-]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown fence and any prose around the JSON object."""
    cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text.strip())).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    return cleaned


def parse_report(text: str, model: Type[ReportT]) -> ReportT:
    """Decode and validate backend output, raising BackendFailure on any problem."""
    cleaned = strip_code_fences(text or "")
    try:
        data = json.loads(cleaned)
    except ValueError as exc:
        raise BackendFailure(f"Backend returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise BackendFailure("Backend JSON is not an object")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise BackendFailure(f"Backend JSON does not match {model.__name__}: {exc}") from exc


# --------------------------------------------------------------------- #
# Prompts
# --------------------------------------------------------------------- #


def _known(value: Optional[str]) -> str:
    return value if value and value != MISSING else "N/A"


def build_hero_prompt(hero: Hero) -> str:
    lines = [
        "You are an elite Mobile Legends: Bang Bang analyst with deep knowledge of the current meta.",
        "",
        "Hero Data:",
        f"- Name: {hero.name}",
        f"- Role: {hero.role if hero.role != MISSING else 'Unknown'}",
        f"- Win Rate: {_known(hero.win_rate.display)}",
        f"- Ban Rate: {_known(hero.ban_rate.display)}",
        f"- Pick Rate: {_known(hero.pick_rate.display)}",
        f"- Tier: {_known(hero.tier)}",
    ]
    detail = hero.detail or {}
    stats = detail.get("stats") or {}
    if any(stats.values()):
        scores = ", ".join(f"{key.title()} {value}" for key, value in stats.items())
        lines.append(f"- Ability Scores: {scores}")
    build = detail.get("build") or []
    if build:
        lines.append(f"- Recommended Build: {', '.join(build)}")
    lines += [
        "",
        "Provide a comprehensive analysis. Return ONLY valid JSON, no markdown, no extra text:",
        "{",
        '  "overview": "2-3 sentences on this hero\'s identity and current meta role",',
        '  "playstyle": "How to play effectively: key mechanics, skill order, and combos",',
        '  "strengths": ["strength 1", "strength 2", "strength 3"],',
        '  "weaknesses": ["weakness 1", "weakness 2", "weakness 3"],',
        '  "earlyGame": "Early game strategy and laning priorities",',
        '  "lateGame": "Late game impact and win conditions",',
        '  "tips": ["actionable pro tip 1", "actionable pro tip 2", "actionable pro tip 3"],',
        '  "metaRating": "One sentence verdict on their current meta standing",',
        '  "difficulty": "Easy | Medium | Hard | Expert"',
        "}",
    ]
    return "\n".join(lines)


def _pair_line(position: int, hero: Hero) -> str:
    role = hero.role if hero.role != MISSING else "Unknown"
    return (
        f"Hero {position}: {hero.name} ({role}) - "
        f"Win Rate: {_known(hero.win_rate.display)}, Tier: {_known(hero.tier)}"
    )


def build_synergy_prompt(first: Hero, second: Hero) -> str:
    return "\n".join(
        [
            "You are an expert Mobile Legends: Bang Bang strategist.",
            "",
            "Analyze the team synergy between:",
            _pair_line(1, first),
            _pair_line(2, second),
            "",
            "Return ONLY valid JSON, no markdown, no extra text:",
            "{",
            '  "synergyScore": 78,',
            '  "verdict": "One sentence verdict on this combo\'s viability",',
            '  "comboPotential": "Specific ability interaction or combo sequence between these two heroes",',
            '  "laneRecommendation": "Best lane/role assignments for this duo",',
            '  "strengths": ["combined strength 1", "combined strength 2"],',
            '  "weaknesses": ["combined weakness 1", "combined weakness 2"],',
            '  "counterStrategy": "How opponents should play against this duo",',
            '  "tip": "One key tip to maximize this combo\'s effectiveness"',
            "}",
            "",
            "synergyScore: 0-100 integer. Be specific to these heroes, not generic.",
        ]
    )


# --------------------------------------------------------------------- #
# Fallback reports
# --------------------------------------------------------------------- #


def fallback_hero_analysis(hero: Hero) -> HeroAnalysis:
    role = hero.role.lower() if hero.role != MISSING else "versatile"
    if hero.win_rate.raw is not None:
        meta = f"{hero.tier}-tier pick at a {hero.win_rate.display} win rate in the current meta."
    else:
        meta = "Solid pick in the current meta."
    return HeroAnalysis(
        overview=f"{hero.name} is a {role} hero in the current meta.",
        playstyle="Focus on objectives and team coordination.",
        strengths=["Strong kit", "Good scaling", "Team utility"],
        weaknesses=["Situational", "Requires practice", "Item dependent"],
        early_game="Farm efficiently and secure early objectives.",
        late_game="Capitalize on power spikes and teamfights.",
        tips=["Master your skill combos", "Communicate with team", "Watch the minimap"],
        meta_rating=meta,
        difficulty="Medium",
    )


def fallback_synergy(first: Hero, second: Hero) -> SynergyAnalysis:
    return SynergyAnalysis(
        synergy_score=65,
        verdict=f"{first.name} and {second.name} can work well together with coordination.",
        combo_potential="Combine abilities for maximum effect in team fights.",
        lane_recommendation="Flexible lane assignments based on enemy picks.",
        strengths=["Complementary kits", "Good team fight presence"],
        weaknesses=["Requires coordination", "Can be countered by CC"],
        counter_strategy="Split push to avoid their team fight strength.",
        tip="Communicate cooldowns before engaging.",
    )


# --------------------------------------------------------------------- #
# Service
# --------------------------------------------------------------------- #


def hero_cache_key(hero: Hero) -> str:
    return f"ai_analysis_{hero.identity}"


def synergy_cache_key(first: Hero, second: Hero) -> str:
    low, high = sorted([first.identity, second.identity])
    return f"synergy_{low}_{high}"


class AnalysisService:
    """Cache-first, retrying, never-failing front for the generative backend."""

    def __init__(
        self,
        backend: Optional[TextBackend],
        cache: TTLCache,
        retry: Optional[RetryPolicy] = None,
        ttl: float = ANALYSIS_TTL_SECONDS,
    ) -> None:
        self.backend = backend
        self.cache = cache
        self.retry = retry or RetryPolicy(attempts=3, backoff_seconds=1.0)
        self.ttl = ttl
        # Keyed by (cache key, cache generation); a flush starts a new generation.
        self._inflight: Dict[Tuple[str, int], asyncio.Future] = {}

    async def analyze_hero(self, hero: Hero) -> AnalysisResult:
        return await self._cached(
            hero_cache_key(hero),
            label=f"analysis of {hero.name}",
            prompt=lambda: build_hero_prompt(hero),
            model=HeroAnalysis,
            fallback=lambda: fallback_hero_analysis(hero),
        )

    async def analyze_pair(self, first: Hero, second: Hero) -> AnalysisResult:
        # Canonical order so (A, B) and (B, A) produce the same prompt and entry.
        ordered = sorted([first, second], key=lambda h: h.identity)
        return await self._cached(
            synergy_cache_key(first, second),
            label=f"synergy of {ordered[0].name}/{ordered[1].name}",
            prompt=lambda: build_synergy_prompt(*ordered),
            model=SynergyAnalysis,
            fallback=lambda: fallback_synergy(*ordered),
        )

    async def _cached(
        self,
        key: str,
        *,
        label: str,
        prompt: Callable[[], str],
        model: Type[BaseModel],
        fallback: Callable[[], Report],
    ) -> AnalysisResult:
        hit = self.cache.get(key)
        if hit is not None:
            return replace(hit, source="cache")

        slot = (key, self.cache.generation)
        pending = self._inflight.get(slot)
        if pending is None:
            pending = asyncio.ensure_future(self._produce(slot, label, prompt(), model, fallback))
            self._inflight[slot] = pending
            pending.add_done_callback(lambda done: self._release(slot, done))
        return await asyncio.shield(pending)

    def _release(self, slot: Tuple[str, int], done: asyncio.Future) -> None:
        if self._inflight.get(slot) is done:
            del self._inflight[slot]

    async def _produce(
        self,
        slot: Tuple[str, int],
        label: str,
        prompt: str,
        model: Type[BaseModel],
        fallback: Callable[[], Report],
    ) -> AnalysisResult:
        if self.backend is None:
            logger.warning("No generative backend configured; serving fallback %s", label)
            result = AnalysisResult(fallback(), "fallback")
        else:
            try:
                report = await self.retry.call(lambda: self._generate(prompt, model), label=label)
                result = AnalysisResult(report, "ai")
            except Exception as exc:
                logger.error(
                    "%s failed after %d attempts (%s); serving fallback",
                    label.capitalize(),
                    self.retry.attempts,
                    exc,
                )
                result = AnalysisResult(fallback(), "fallback")
        key, generation = slot
        if not self.cache.set(key, result, self.ttl, generation=generation):
            logger.info("Discarding %s computed before the last refresh", label)
        return result

    async def _generate(self, prompt: str, model: Type[BaseModel]) -> Report:
        if self.backend is None:
            raise BackendFailure("No generative backend configured")
        try:
            text = await self.backend.complete(prompt)
        except BackendFailure:
            raise
        except Exception as exc:
            raise BackendFailure(f"{type(exc).__name__}: {exc}") from exc
        return parse_report(text, model)


__all__ = [
    "HeroAnalysis",
    "SynergyAnalysis",
    "AnalysisResult",
    "TextBackend",
    "AnthropicBackend",
    "strip_code_fences",
    "parse_report",
    "build_hero_prompt",
    "build_synergy_prompt",
    "fallback_hero_analysis",
    "fallback_synergy",
    "hero_cache_key",
    "synergy_cache_key",
    "AnalysisService",
]
