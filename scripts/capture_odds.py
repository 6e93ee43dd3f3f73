#!/usr/bin/env python3
"""Capture a live odds snapshot from The Odds API and store it as raw quotes."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from cfbprice.cli import open_store, reports_dir
from cfbprice.config import load_config
from cfbprice.io import the_odds_api
from cfbprice.jobs import ingest_odds


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--season", type=int, required=True, help="Season year whose schedule the events match.")
    parser.add_argument("--regions", nargs="*", default=["us"], help="Regions to request (default: us).")
    parser.add_argument(
        "--markets",
        nargs="*",
        default=["spreads", "totals", "h2h"],
        help="Markets to request (default: spreads totals h2h).",
    )
    parser.add_argument(
        "--max-gap-hours",
        type=float,
        default=36.0,
        help="Largest kickoff/commence difference accepted when matching events (default: 36).",
    )
    parser.add_argument("--dry-run", action="store_true", help="Match and report without writing quotes.")
    parser.add_argument("--config", type=Path, help="YAML config path.")
    parser.add_argument("--store", type=Path, help="Store directory (default: store.root from config).")
    parser.add_argument("--reports", type=Path, help="Reports directory (default: reports.dir from config).")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = load_config(args.config)
    events = the_odds_api.fetch_current_odds(regions=args.regions, markets=args.markets)
    summary = ingest_odds(
        events,
        open_store(args, config),
        args.season,
        dry_run=args.dry_run,
        reports_dir=reports_dir(args, config),
        max_gap_hours=args.max_gap_hours,
    )
    print(summary.line())
    print(f"[ok] {summary.extra.get('quotes', 0)} quotes from {summary.processed} events")
    usage = the_odds_api.get_last_usage()
    if usage:
        print(f"[info] The Odds API usage: {usage}")
    if summary.skipped:
        print(f"[warn] {summary.skipped} events unmatched; see odds_unmatched.csv")
    return 0 if summary.ok else 1


if __name__ == "__main__":
    sys.exit(main())
