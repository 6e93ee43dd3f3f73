#!/usr/bin/env python3
"""Resolve consensus spread/total/moneyline lines for a season."""

from __future__ import annotations

import sys

from cfbprice.cli import base_parser, run_stage
from cfbprice.jobs import run_consensus


def main() -> int:
    args = base_parser(__doc__).parse_args()
    return run_stage(args, run_consensus)


if __name__ == "__main__":
    sys.exit(main())
