"""Market consensus, HFA, feature and calibration tooling for college football pricing."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional


def load_config(path: Optional[str | Path] = None, *, env_var: str = "CFBPRICE_CONFIG") -> Dict[str, Any]:
    """See :func:`cfbprice.config.load_config`; PyYAML is imported on first call."""

    from . import config

    return config.load_config(path, env_var=env_var)


__all__ = ["load_config"]
