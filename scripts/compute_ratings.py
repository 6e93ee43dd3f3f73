#!/usr/bin/env python3
"""Compute efficiency ratings for a season under a model version."""

from __future__ import annotations

import sys

from cfbprice.cli import base_parser, run_stage
from cfbprice.jobs import run_ratings


def main() -> int:
    args = base_parser(__doc__).parse_args()
    return run_stage(args, run_ratings)


if __name__ == "__main__":
    sys.exit(main())
