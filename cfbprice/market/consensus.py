"""Resolve many bookmaker quotes into one consensus value per game/market."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..config import build_dataclass
from ..records import MARKETS, ConsensusLine, QuoteWindow, RawLineQuote
from .lines import LineCheck, LineLimits, normalize_quote, round_half_point, round_to_step

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsensusConfig:
    window_before_minutes: int = 60
    window_after_minutes: int = 5
    limits: LineLimits = field(default_factory=LineLimits)

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "ConsensusConfig":
        values = dict(values or {})
        limits = LineLimits.from_mapping(values.pop("limits", None))
        base = build_dataclass(cls, values)
        return ConsensusConfig(base.window_before_minutes, base.window_after_minutes, limits)


def select_window(
    quotes: Sequence[RawLineQuote],
    kickoff: Optional[datetime],
    config: Optional[ConsensusConfig] = None,
) -> Tuple[List[RawLineQuote], QuoteWindow]:
    """Restrict ``quotes`` to the pre-kick window when it holds any quotes.

    Falls back to the whole history (window kind ``full_history``) when the
    kickoff is unknown or no quote is timestamped inside the window.
    """

    config = config or ConsensusConfig()
    if kickoff is not None:
        start = kickoff - timedelta(minutes=config.window_before_minutes)
        end = kickoff + timedelta(minutes=config.window_after_minutes)
        inside = [q for q in quotes if q.observed_at is not None and start <= q.observed_at <= end]
        if inside:
            return inside, QuoteWindow("pre_kick", start, end)
    return list(quotes), QuoteWindow("full_history")


def _ordered(quotes: Iterable[RawLineQuote]) -> List[RawLineQuote]:
    indexed = list(enumerate(quotes))
    indexed.sort(key=lambda item: (item[1].observed_at is None, item[1].observed_at or datetime.min, item[0]))
    return [quote for _, quote in indexed]


def _median(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return float(np.median(np.asarray(values, dtype=float)))


def _favored_by_quote(quote: RawLineQuote, value: float) -> Optional[str]:
    side = (quote.side or "").lower()
    if side not in {"home", "away"} or value == 0:
        return None
    if value < 0:
        return side
    return "away" if side == "home" else "home"


def _majority(votes: Iterable[Optional[str]]) -> Optional[str]:
    counts = Counter(vote for vote in votes if vote)
    if not counts:
        return None
    ranked = counts.most_common()
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return None
    return ranked[0][0]


@dataclass
class _Screened:
    accepted: List[Tuple[RawLineQuote, float]] = field(default_factory=list)
    excluded: int = 0
    reasons: Counter = field(default_factory=Counter)


def _screen(quotes: Iterable[RawLineQuote], limits: LineLimits) -> _Screened:
    screened = _Screened()
    for quote in _ordered(quotes):
        check: LineCheck = normalize_quote(quote, limits)
        if check.accepted and check.value is not None:
            screened.accepted.append((quote, check.value))
        else:
            screened.excluded += 1
            screened.reasons[check.reason] += 1
    return screened


def _line(
    game_id: str,
    market: str,
    window: QuoteWindow,
    screened: _Screened,
    *,
    value: Optional[float],
    books: Sequence[str],
    version: str,
    favored_side: Optional[str] = None,
    dog_value: Optional[float] = None,
) -> ConsensusLine:
    if not books:
        value = None
        favored_side = None
        dog_value = None
    return ConsensusLine(
        game_id=game_id,
        market=market,
        value=value,
        book_count=len(books),
        raw_count=len(screened.accepted),
        excluded_count=screened.excluded,
        window_kind=window.kind,
        window_start=window.start,
        window_end=window.end,
        favored_side=favored_side,
        dog_value=dog_value,
        books=tuple(sorted(books)),
        version=version,
    )


def resolve_spread(
    game_id: str,
    quotes: Sequence[RawLineQuote],
    window: QuoteWindow,
    *,
    limits: Optional[LineLimits] = None,
    version: str = "",
) -> ConsensusLine:
    """Favorite-centric (≤ 0) median of one half-point-rounded value per book."""

    screened = _screen(quotes, limits or LineLimits())
    per_book: Dict[str, float] = {}
    votes: Dict[str, Optional[str]] = {}
    for quote, value in screened.accepted:
        if quote.book in per_book:
            continue
        per_book[quote.book] = round_half_point(-abs(value))
        votes[quote.book] = _favored_by_quote(quote, value)
    consensus = _median(list(per_book.values()))
    if consensus is not None:
        consensus = min(consensus, 0.0) + 0.0  # drop -0.0
    favored = _majority(votes.values()) if consensus else None
    return _line(
        game_id, "spread", window, screened,
        value=consensus, books=list(per_book), version=version, favored_side=favored,
    )


def resolve_total(
    game_id: str,
    quotes: Sequence[RawLineQuote],
    window: QuoteWindow,
    *,
    limits: Optional[LineLimits] = None,
    version: str = "",
) -> ConsensusLine:
    screened = _screen(quotes, limits or LineLimits())
    per_book: Dict[str, float] = {}
    for quote, value in screened.accepted:
        per_book.setdefault(quote.book, value)
    return _line(
        game_id, "total", window, screened,
        value=_median(list(per_book.values())), books=list(per_book), version=version,
    )


def resolve_moneyline(
    game_id: str,
    quotes: Sequence[RawLineQuote],
    window: QuoteWindow,
    *,
    limits: Optional[LineLimits] = None,
    version: str = "",
) -> ConsensusLine:
    """Median favorite price (``value``) and median dog price (``dog_value``)."""

    limits = limits or LineLimits()
    screened = _screen(quotes, limits)
    favorites: Dict[str, float] = {}
    dogs: Dict[str, float] = {}
    votes: Dict[str, Optional[str]] = {}
    for quote, value in screened.accepted:
        rounded = round_to_step(value, limits.moneyline_step)
        if rounded < 0:
            if quote.book not in favorites:
                favorites[quote.book] = rounded
                votes.setdefault(quote.book, _favored_by_quote(quote, rounded))
        elif quote.book not in dogs:
            dogs[quote.book] = rounded
            votes.setdefault(quote.book, _favored_by_quote(quote, rounded))
    books = sorted(set(favorites) | set(dogs))
    return _line(
        game_id, "moneyline", window, screened,
        value=_median(list(favorites.values())),
        dog_value=_median(list(dogs.values())),
        books=books,
        version=version,
        favored_side=_majority(votes.values()),
    )


_RESOLVERS = {
    "spread": resolve_spread,
    "total": resolve_total,
    "moneyline": resolve_moneyline,
}


def resolve_game(
    game_id: str,
    quotes: Sequence[RawLineQuote],
    kickoff: Optional[datetime] = None,
    *,
    config: Optional[ConsensusConfig] = None,
    version: str = "",
    markets: Sequence[str] = MARKETS,
) -> Dict[str, ConsensusLine]:
    """Compute one :class:`ConsensusLine` per market for a single game.

    The window is chosen per market so a game whose spreads were captured
    pre-kick but whose totals were not still gets a totals consensus.
    """

    config = config or ConsensusConfig()
    by_market: Dict[str, List[RawLineQuote]] = {market: [] for market in markets}
    for quote in quotes:
        if quote.game_id != game_id:
            continue
        market = (quote.market or "").lower()
        if market in by_market:
            by_market[market].append(quote)

    resolved: Dict[str, ConsensusLine] = {}
    for market, market_quotes in by_market.items():
        windowed, window = select_window(market_quotes, kickoff, config)
        line = _RESOLVERS[market](game_id, windowed, window, limits=config.limits, version=version)
        if market_quotes and not line.is_priced:
            logger.warning(
                "Game %s %s unpriced: %d quotes, %d excluded",
                game_id, market, len(market_quotes), line.excluded_count,
            )
        resolved[market] = line
    return resolved


def home_minus_away_spread(line: Optional[ConsensusLine]) -> Optional[float]:
    """Convert a favorite-centric spread consensus to home-minus-away points.

    Positive means the home team is favored. ``None`` when the game is
    unpriced or the favored side is unknown for a non-zero line.
    """

    if line is None or line.value is None:
        return None
    if line.value == 0:
        return 0.0
    if line.favored_side == "home":
        return -line.value
    if line.favored_side == "away":
        return line.value
    return None
