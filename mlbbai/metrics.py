"""
metrics.py
----------

Deterministic views derived from a hero list: tier classification, the tier
list and the three-category leaderboard. Everything here is a pure function of
its input so a snapshot's derived views always match its heroes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from .hero_data import Hero

TIER_ORDER: Tuple[str, ...] = ("S+", "S", "A", "B", "C", "Unranked")
UNRANKED = "Unranked"

# (minimum win rate percentage, label), checked top-down.
TIER_BANDS: Tuple[Tuple[float, str], ...] = (
    (56.0, "S+"),
    (53.0, "S"),
    (51.0, "A"),
    (49.0, "B"),
)

LEADERBOARD_SIZE = 10
LEADERBOARD_CATEGORIES: Tuple[Tuple[str, str], ...] = (
    ("Top Win Rate", "win_rate"),
    ("Most Banned", "ban_rate"),
    ("Most Picked", "pick_rate"),
)


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    name: str
    category: str
    metric_value: str
    role: str
    image: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "rank": self.rank,
            "name": self.name,
            "category": self.category,
            "points": self.metric_value,
            "role": self.role,
            "hero": self.name,
            "img": self.image,
        }


def classify_tier(raw_win_rate: Optional[float]) -> str:
    """Band a win rate fraction into a tier label; unknown rates are Unranked."""
    if raw_win_rate is None:
        return UNRANKED
    pct = raw_win_rate * 100
    for threshold, label in TIER_BANDS:
        if pct >= threshold:
            return label
    return "C"


def build_tier_list(heroes: Sequence["Hero"]) -> Dict[str, List[str]]:
    """
    Group hero names by tier.

    Known labels come first in TIER_ORDER; any other label follows in the order
    it was first seen. Empty tiers are omitted.
    """
    groups: Dict[str, List[str]] = {}
    for hero in heroes:
        groups.setdefault(hero.tier or UNRANKED, []).append(hero.name)

    ordered: Dict[str, List[str]] = {}
    for label in TIER_ORDER:
        if label in groups:
            ordered[label] = groups[label]
    for label, names in groups.items():
        if label not in ordered:
            ordered[label] = names
    return ordered


def top_by_metric(
    heroes: Sequence["Hero"],
    category: str,
    attribute: str,
    size: int = LEADERBOARD_SIZE,
) -> List[LeaderboardEntry]:
    """Rank heroes by one rate, highest first; ties keep their input order."""
    ranked = sorted(heroes, key=lambda h: getattr(h, attribute).sort_value, reverse=True)
    return [
        LeaderboardEntry(
            rank=position,
            name=hero.name,
            category=category,
            metric_value=getattr(hero, attribute).display,
            role=hero.role,
            image=hero.image,
        )
        for position, hero in enumerate(ranked[:size], start=1)
    ]


def build_leaderboard(heroes: Sequence["Hero"]) -> List[LeaderboardEntry]:
    """Concatenate the win, ban and pick top lists in that order."""
    entries: List[LeaderboardEntry] = []
    for category, attribute in LEADERBOARD_CATEGORIES:
        entries.extend(top_by_metric(heroes, category, attribute))
    return entries


__all__ = [
    "TIER_ORDER",
    "UNRANKED",
    "LEADERBOARD_SIZE",
    "LEADERBOARD_CATEGORIES",
    "LeaderboardEntry",
    "classify_tier",
    "build_tier_list",
    "top_by_metric",
    "build_leaderboard",
]
