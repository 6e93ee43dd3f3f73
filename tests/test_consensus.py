from datetime import datetime, timedelta, timezone

import pytest

from cfbprice.market.consensus import (
    ConsensusConfig,
    home_minus_away_spread,
    resolve_game,
    resolve_spread,
    select_window,
)
from cfbprice.records import QuoteWindow, RawLineQuote

KICKOFF = datetime(2024, 10, 5, 19, 30, tzinfo=timezone.utc)


def _spread(book, value, minutes_before=30, side="home"):
    return RawLineQuote(
        "g1", "spread", book, closing_value=value,
        observed_at=KICKOFF - timedelta(minutes=minutes_before), source="test", side=side,
    )


def test_three_book_median():
    quotes = [_spread("dk", -3.5), _spread("fd", -3.0), _spread("cz", -4.0)]
    line = resolve_game("g1", quotes, KICKOFF)["spread"]
    assert line.value == pytest.approx(-3.5)
    assert line.book_count == 3
    assert line.raw_count == 3
    assert line.favored_side == "home"
    assert line.pre_kick
    assert home_minus_away_spread(line) == pytest.approx(3.5)


def test_first_quote_per_book_wins():
    quotes = [
        _spread("dk", -3.0, minutes_before=50),
        _spread("dk", -10.0, minutes_before=10),
        _spread("dk", -10.0, minutes_before=5),
        _spread("fd", -4.0),
    ]
    line = resolve_game("g1", quotes, KICKOFF)["spread"]
    assert line.book_count == 2
    assert line.raw_count == 4
    assert line.value == pytest.approx(-3.5)


def test_underdog_quotes_normalize_to_favorite_form():
    quotes = [_spread("dk", 6.5), _spread("fd", 7.0), _spread("cz", 6.5)]
    line = resolve_game("g1", quotes, KICKOFF)["spread"]
    assert line.value == pytest.approx(-6.5)
    assert line.favored_side == "away"
    assert home_minus_away_spread(line) == pytest.approx(-6.5)


def test_window_falls_back_to_full_history():
    quotes = [_spread("dk", -3.0, minutes_before=600), _spread("fd", -3.0, minutes_before=500)]
    selected, window = select_window(quotes, KICKOFF)
    assert window.kind == "full_history"
    assert len(selected) == 2

    inside = quotes + [_spread("cz", -4.0, minutes_before=20)]
    selected, window = select_window(inside, KICKOFF, ConsensusConfig())
    assert window.kind == "pre_kick"
    assert [q.book for q in selected] == ["cz"]
    assert window.start == KICKOFF - timedelta(minutes=60)
    assert window.end == KICKOFF + timedelta(minutes=5)


def test_unknown_kickoff_uses_full_history():
    _, window = select_window([_spread("dk", -3.0)], None)
    assert window == QuoteWindow("full_history")


def test_excluded_quotes_are_counted_and_empty_means_unpriced():
    quotes = [_spread("dk", -110), _spread("fd", -115)]
    line = resolve_game("g1", quotes, KICKOFF)["spread"]
    assert line.value is None
    assert not line.is_priced
    assert line.book_count == 0
    assert line.excluded_count == 2
    assert home_minus_away_spread(line) is None


def test_markets_without_quotes_are_unpriced():
    lines = resolve_game("g1", [_spread("dk", -3.0)], KICKOFF)
    assert lines["total"].value is None
    assert lines["moneyline"].value is None
    assert lines["total"].raw_count == 0


def test_total_consensus_and_negative_rejection():
    quotes = [
        RawLineQuote("g1", "total", "dk", closing_value=52.5, observed_at=KICKOFF),
        RawLineQuote("g1", "total", "fd", closing_value=53.5, observed_at=KICKOFF),
        RawLineQuote("g1", "total", "cz", closing_value=-51.0, observed_at=KICKOFF),
    ]
    line = resolve_game("g1", quotes, KICKOFF)["total"]
    assert line.value == pytest.approx(53.0)
    assert line.book_count == 2
    assert line.excluded_count == 1


def test_moneyline_favorite_and_dog_medians():
    quotes = []
    for book, fav, dog in (("dk", -155, 135), ("fd", -150, 130), ("cz", -160, 140)):
        quotes.append(RawLineQuote("g1", "moneyline", book, line_value=fav, observed_at=KICKOFF, side="home"))
        quotes.append(RawLineQuote("g1", "moneyline", book, line_value=dog, observed_at=KICKOFF, side="away"))
    line = resolve_game("g1", quotes, KICKOFF)["moneyline"]
    assert line.value == pytest.approx(-155)
    assert line.dog_value == pytest.approx(135)
    assert line.book_count == 3
    assert line.favored_side == "home"


def test_pick_em_has_no_favored_side():
    window = QuoteWindow("full_history")
    line = resolve_spread("g1", [_spread("dk", 0.0), _spread("fd", 0.0)], window)
    assert line.value == 0.0
    assert line.favored_side is None
    assert home_minus_away_spread(line) == 0.0


@pytest.mark.parametrize(
    "values",
    [[-3.5, -3.0, -4.0], [7.0, -7.0, 6.5], [-0.25, 0.25], [-110, -3.0, 14.5, -14.5]],
)
def test_book_count_bounded_and_value_non_positive(values):
    quotes = [_spread(f"b{i % 2}", v) for i, v in enumerate(values)]
    line = resolve_game("g1", quotes, KICKOFF)["spread"]
    assert line.book_count <= line.raw_count
    assert line.book_count == len(set(line.books))
    assert line.value is None or line.value <= 0
