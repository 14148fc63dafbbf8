"""
store.py
--------

Holds the service's current hero snapshot. A snapshot is an immutable value;
every state change builds a new one and swaps a single reference, so readers
always see heroes and derived views from the same refresh.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .hero_data import Hero
from .metrics import LeaderboardEntry


class SnapshotStatus(str, enum.Enum):
    INITIALIZING = "initializing"
    SCRAPING = "scraping"
    READY = "ready"
    STALE = "stale"
    ERROR = "error"


@dataclass(frozen=True)
class Snapshot:
    heroes: Tuple[Hero, ...] = ()
    tier_list: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    leaderboard: Tuple[LeaderboardEntry, ...] = ()
    last_updated: Optional[datetime] = None
    status: SnapshotStatus = SnapshotStatus.INITIALIZING
    consecutive_failures: int = 0

    @property
    def hero_count(self) -> int:
        return len(self.heroes)

    @property
    def last_updated_iso(self) -> Optional[str]:
        return self.last_updated.isoformat() if self.last_updated else None

    def tier_list_dict(self) -> Dict[str, List[str]]:
        return {label: list(names) for label, names in self.tier_list.items()}

    def leaderboard_dicts(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.leaderboard]


class SnapshotStore:
    """Single-reference holder for the current Snapshot."""

    def __init__(self, initial: Optional[Snapshot] = None) -> None:
        self._snapshot = initial or Snapshot()

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    def read(self) -> Snapshot:
        """Return the latest committed snapshot (never a partially built one)."""
        return self._snapshot

    def begin_refresh(self) -> Snapshot:
        """Mark a refresh as running; data fields are left untouched."""
        self._snapshot = replace(self._snapshot, status=SnapshotStatus.SCRAPING)
        return self._snapshot

    def commit(
        self,
        heroes: Sequence[Hero],
        tier_list: Mapping[str, Sequence[str]],
        leaderboard: Sequence[LeaderboardEntry],
        now: Optional[datetime] = None,
    ) -> Snapshot:
        """Publish a successful refresh as one new snapshot."""
        self._snapshot = Snapshot(
            heroes=tuple(heroes),
            tier_list={label: tuple(names) for label, names in tier_list.items()},
            leaderboard=tuple(leaderboard),
            last_updated=now or datetime.now(timezone.utc),
            status=SnapshotStatus.READY,
            consecutive_failures=0,
        )
        return self._snapshot

    def fail(self) -> Snapshot:
        """
        Record a failed refresh.

        With last-known-good heroes the snapshot goes stale and keeps serving
        them; without any it moves to error with empty data.
        """
        current = self._snapshot
        failures = current.consecutive_failures + 1
        if current.heroes:
            self._snapshot = replace(
                current,
                status=SnapshotStatus.STALE,
                consecutive_failures=failures,
            )
        else:
            self._snapshot = Snapshot(
                last_updated=current.last_updated,
                status=SnapshotStatus.ERROR,
                consecutive_failures=failures,
            )
        return self._snapshot
