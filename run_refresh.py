#!/usr/bin/env python3
"""CLI helper that runs one refresh against the provider and prints the derived views."""

import argparse
import asyncio

import pandas as pd

from mlbbai.config import Settings, configure_logging
from mlbbai.hero_data import fetch_all
from mlbbai.scheduler import RefreshScheduler
from mlbbai.stats_client import MLBBStatsClient
from mlbbai.store import SnapshotStatus, SnapshotStore


def main() -> None:
    parser = argparse.ArgumentParser(description="Fetch MLBB hero statistics and print tiers and leaderboards.")
    parser.add_argument(
        "--base-url",
        help="Override the statistics provider base URL (default: MLBB_API_BASE_URL or the public API).",
    )
    parser.add_argument(
        "--role",
        help="Only print heroes whose role contains this text.",
    )
    parser.add_argument(
        "--sort",
        choices=["winrate", "banrate", "pickrate"],
        default="winrate",
        help="Column to sort the hero table by, descending (default: winrate).",
    )
    parser.add_argument(
        "--category",
        help="Only print leaderboard categories containing this text (e.g. 'Banned').",
    )
    parser.add_argument(
        "--output",
        help="Optional path to write the hero table as a CSV instead of printing it.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every fallback strategy and fetch.",
    )
    args = parser.parse_args()

    settings = Settings.from_env()
    configure_logging("DEBUG" if args.verbose else "WARNING")
    client = MLBBStatsClient(args.base_url or settings.api_base_url, timeout=settings.fetch_timeout)
    store = SnapshotStore()
    scheduler = RefreshScheduler(store, lambda: fetch_all(client))

    try:
        asyncio.run(scheduler.refresh())
    finally:
        client.close()

    snapshot = store.read()
    if snapshot.status is not SnapshotStatus.READY:
        print(f"Refresh failed (status: {snapshot.status.value}). Re-run with --verbose for details.")
        return

    df = pd.DataFrame([hero.to_dict(include_raw=True) for hero in snapshot.heroes])
    if args.role:
        df = df[df["role"].str.lower().str.contains(args.role.lower(), regex=False)]
    sort_column = {"winrate": "_winRate", "banrate": "_banRate", "pickrate": "_pickRate"}[args.sort]
    df = df.sort_values(sort_column, ascending=False, kind="mergesort")

    if df.empty:
        print("No heroes matched the supplied filters.")
        return

    if args.output:
        df.drop(columns=["_winRate", "_banRate", "_pickRate"]).to_csv(args.output, index=False)
        print(f"Wrote {len(df)} rows to {args.output}")
        return

    display_cols = ["name", "role", "tier", "winRate", "banRate", "pickRate"]
    print(df[display_cols].to_string(index=False))

    print(f"\nTier list ({snapshot.last_updated_iso}):")
    for label, names in snapshot.tier_list.items():
        print(f"  {label:<9} {', '.join(names)}")

    board = pd.DataFrame(snapshot.leaderboard_dicts())
    if args.category:
        board = board[board["category"].str.lower().str.contains(args.category.lower(), regex=False)]
    for category, rows in board.groupby("category", sort=False):
        print(f"\n{category}:")
        print(rows[["rank", "name", "role", "points"]].to_string(index=False))


if __name__ == "__main__":
    main()
