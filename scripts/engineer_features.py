#!/usr/bin/env python3
"""Build opponent-adjusted features, run hygiene and gates, and persist them under a feature version.

Only games from earlier weeks feed each row's opponent and recency statistics,
so re-running a past week reproduces the same values.
"""

from __future__ import annotations

import sys

from cfbprice.cli import base_parser, run_stage
from cfbprice.jobs import run_features


def main() -> int:
    parser = base_parser(__doc__)
    parser.add_argument(
        "--consensus-version",
        help="Consensus version used for the sign-agreement diagnostic (default: latest available).",
    )
    args = parser.parse_args()
    return run_stage(args, run_features, consensus_version=args.consensus_version)


if __name__ == "__main__":
    sys.exit(main())
