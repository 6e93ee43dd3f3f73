"""Market line normalisation and consensus resolution."""

from __future__ import annotations

from .consensus import (
    ConsensusConfig,
    home_minus_away_spread,
    resolve_game,
    resolve_moneyline,
    resolve_spread,
    resolve_total,
    select_window,
)
from .lines import LineCheck, LineLimits, extract_value, looks_like_price_leak, normalize_quote

__all__ = [
    "ConsensusConfig",
    "LineCheck",
    "LineLimits",
    "extract_value",
    "home_minus_away_spread",
    "looks_like_price_leak",
    "normalize_quote",
    "resolve_game",
    "resolve_moneyline",
    "resolve_spread",
    "resolve_total",
    "select_window",
]
