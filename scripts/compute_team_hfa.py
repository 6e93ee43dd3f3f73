#!/usr/bin/env python3
"""Estimate team-specific home-field advantage and merge it into the ratings of a model version."""

from __future__ import annotations

import sys

from cfbprice.cli import base_parser, run_stage
from cfbprice.jobs import run_hfa


def main() -> int:
    args = base_parser(__doc__).parse_args()
    return run_stage(args, run_hfa)


if __name__ == "__main__":
    sys.exit(main())
