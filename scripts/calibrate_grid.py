#!/usr/bin/env python3
"""Sweep (SoS weight, shrinkage) combinations, rescale ratings to the market and report GO / NO-GO.

Each finished combination is checkpointed in the store; re-running the same
version resumes where an interrupted sweep stopped.
"""

from __future__ import annotations

import sys

from cfbprice.cli import base_parser, run_stage
from cfbprice.jobs import run_calibration


def main() -> int:
    parser = base_parser(__doc__)
    parser.add_argument("--consensus-version", help="Consensus version to calibrate against.")
    parser.add_argument("--hfa-version", help="Model version whose team HFA values feed the regressions.")
    args = parser.parse_args()
    code = run_stage(
        args,
        run_calibration,
        consensus_version=args.consensus_version,
        hfa_version=args.hfa_version,
    )
    return code


if __name__ == "__main__":
    sys.exit(main())
