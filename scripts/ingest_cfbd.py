#!/usr/bin/env python3
"""Pull CFBD teams, games, betting lines and advanced game stats into the store."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from cfbprice.cli import open_store, reports_dir
from cfbprice.config import load_config
from cfbprice.io.cfbd import CFBDClient
from cfbprice.jobs import ingest_cfbd


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--season", type=int, required=True, help="Season year (e.g., 2024).")
    parser.add_argument("--weeks", type=int, nargs="+", required=True, help="Weeks to ingest.")
    parser.add_argument("--api-key", help="CFBD API key (defaults to CFBD_API_KEY env var).")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and report without writing to the store.")
    parser.add_argument("--config", type=Path, help="YAML config path.")
    parser.add_argument("--store", type=Path, help="Store directory (default: store.root from config).")
    parser.add_argument("--reports", type=Path, help="Reports directory (default: reports.dir from config).")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = load_config(args.config)
    client = CFBDClient(args.api_key)
    summary = ingest_cfbd(
        client,
        open_store(args, config),
        args.season,
        args.weeks,
        dry_run=args.dry_run,
        reports_dir=reports_dir(args, config),
    )
    print(summary.line())
    if summary.mismatches:
        print(f"[warn] {len(summary.mismatches)} team names could not be mapped; see team_mismatches.csv")
    return 0 if summary.ok else 1


if __name__ == "__main__":
    sys.exit(main())
