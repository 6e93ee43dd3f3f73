"""Argument handling shared by the scripts in ``scripts/``."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import load_config, section
from .io.store import JsonFileStore, Store
from .jobs import BatchSummary


def base_parser(description: Optional[str]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--season", type=int, required=True, help="Season year (e.g., 2024).")
    parser.add_argument(
        "--weeks",
        type=int,
        nargs="+",
        help="Weeks to process (default: every week in the store for the season).",
    )
    parser.add_argument("--version", required=True, help="Version tag written on every derived row.")
    parser.add_argument("--dry-run", action="store_true", help="Compute and write reports without upserting.")
    parser.add_argument("--config", type=Path, help="YAML config (defaults to CFBPRICE_CONFIG or config/defaults.yaml).")
    parser.add_argument("--store", type=Path, help="Store directory (default: store.root from config).")
    parser.add_argument("--reports", type=Path, help="Reports directory (default: reports.dir from config).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level.")
    return parser


def open_store(args: argparse.Namespace, config: Dict[str, Any]) -> Store:
    root = args.store or section(config, "store").get("root", "data/store")
    return JsonFileStore(root)


def reports_dir(args: argparse.Namespace, config: Dict[str, Any]) -> Path:
    return Path(args.reports or section(config, "reports").get("dir", "reports"))


def run_stage(
    args: argparse.Namespace,
    job: Callable[..., BatchSummary],
    **kwargs: Any,
) -> int:
    """Run ``job`` with the parsed arguments, print its summary and return an exit code."""

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config(args.config)
    summary = job(
        open_store(args, config),
        args.season,
        args.weeks,
        args.version,
        dry_run=args.dry_run,
        reports_dir=reports_dir(args, config),
        config=config,
        **kwargs,
    )
    print(summary.line())
    for name, path in summary.artifacts.items():
        print(f"  report {name}: {path}")
    for key, value in summary.extra.items():
        print(f"  {key}: {value}")
    if summary.mismatches:
        print(f"  unmapped names: {len(summary.mismatches)}")
    return 0 if summary.ok else 1
