"""Single-quote sanitising: point extraction and price-leak rejection."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..config import build_dataclass
from ..records import RawLineQuote

REJECT_MISSING = "missing"
REJECT_NON_FINITE = "non_finite"
REJECT_PRICE_LEAK = "price_leak"
REJECT_NEGATIVE_TOTAL = "negative_total"
REJECT_OUT_OF_RANGE = "out_of_range"
REJECT_MONEYLINE_GRANULARITY = "moneyline_granularity"
REJECT_UNKNOWN_MARKET = "unknown_market"


@dataclass(frozen=True)
class LineLimits:
    """Plausible ranges per market; values outside are rejected."""

    max_abs_spread: float = 60.0
    min_total: float = 20.0
    max_total: float = 120.0
    min_abs_moneyline: float = 100.0
    moneyline_step: int = 5

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "LineLimits":
        return build_dataclass(cls, values)


@dataclass(frozen=True)
class LineCheck:
    """Outcome of normalising one quote: a value or a rejection reason."""

    value: Optional[float]
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.reason is None


def extract_value(quote: RawLineQuote) -> Optional[float]:
    """Return the closing value when present, else the generic line value."""

    for candidate in (quote.closing_value, quote.line_value):
        if candidate is None:
            continue
        try:
            return float(candidate)
        except (TypeError, ValueError):
            continue
    return None


def _has_fraction(value: float) -> bool:
    return not math.isclose(value, round(value), abs_tol=1e-9)


def looks_like_price_leak(value: float) -> bool:
    """True when a point value is shaped like an American price.

    Prices are integers, multiples of 5 and at least 50 in magnitude
    (-110, +150, ...). Half and quarter points are always genuine points.
    """

    magnitude = abs(value)
    if magnitude < 50:
        return False
    if _has_fraction(magnitude):
        return False
    return int(round(magnitude)) % 5 == 0


def _looks_like_moneyline(value: float) -> bool:
    return abs(value) >= 100 and not _has_fraction(value) and int(round(abs(value))) % 5 == 0


def check_spread(value: float, limits: LineLimits) -> LineCheck:
    if looks_like_price_leak(value):
        return LineCheck(None, REJECT_PRICE_LEAK)
    if abs(value) > limits.max_abs_spread:
        return LineCheck(None, REJECT_OUT_OF_RANGE)
    return LineCheck(value)


def check_total(value: float, limits: LineLimits) -> LineCheck:
    if value < 0:
        return LineCheck(None, REJECT_NEGATIVE_TOTAL)
    # Totals of 55 or 60 are real; only price-shaped integers of 100+ are leaks.
    if _looks_like_moneyline(value):
        return LineCheck(None, REJECT_PRICE_LEAK)
    if value < limits.min_total or value > limits.max_total:
        return LineCheck(None, REJECT_OUT_OF_RANGE)
    return LineCheck(value)


def check_moneyline(value: float, limits: LineLimits) -> LineCheck:
    if abs(value) < limits.min_abs_moneyline or _has_fraction(value):
        return LineCheck(None, REJECT_MONEYLINE_GRANULARITY)
    if int(round(abs(value))) % limits.moneyline_step != 0:
        return LineCheck(None, REJECT_MONEYLINE_GRANULARITY)
    return LineCheck(value)


def normalize_quote(quote: RawLineQuote, limits: Optional[LineLimits] = None) -> LineCheck:
    """Classify ``quote`` into a usable numeric value or a rejection."""

    limits = limits or LineLimits()
    value = extract_value(quote)
    if value is None:
        return LineCheck(None, REJECT_MISSING)
    if not math.isfinite(value):
        return LineCheck(None, REJECT_NON_FINITE)
    market = (quote.market or "").lower()
    if market == "spread":
        return check_spread(value, limits)
    if market == "total":
        return check_total(value, limits)
    if market == "moneyline":
        return check_moneyline(value, limits)
    return LineCheck(None, REJECT_UNKNOWN_MARKET)


def round_half_point(value: float) -> float:
    """Round to the nearest 0.5, ties toward +inf."""

    return math.floor(value * 2.0 + 0.5) / 2.0


def round_to_step(value: float, step: int = 5) -> float:
    """Round to the nearest multiple of ``step``, ties toward +inf."""

    return float(math.floor(value / step + 0.5) * step)
