import math

import pytest

from cfbprice.market.lines import (
    REJECT_MISSING,
    REJECT_MONEYLINE_GRANULARITY,
    REJECT_NEGATIVE_TOTAL,
    REJECT_NON_FINITE,
    REJECT_OUT_OF_RANGE,
    REJECT_PRICE_LEAK,
    LineLimits,
    extract_value,
    looks_like_price_leak,
    normalize_quote,
    round_half_point,
    round_to_step,
)
from cfbprice.records import RawLineQuote


def _quote(market, line=None, closing=None):
    return RawLineQuote("g1", market, "book", line_value=line, closing_value=closing)


def test_extract_value_prefers_closing():
    assert extract_value(_quote("spread", line=-3.0, closing=-3.5)) == -3.5
    assert extract_value(_quote("spread", line=-3.0)) == -3.0
    assert extract_value(_quote("spread")) is None


@pytest.mark.parametrize(
    "value, leak",
    [(-110, True), (150, True), (55, True), (-7.5, False), (52.5, False), (49, False), (101, False)],
)
def test_price_leak_shape(value, leak):
    assert looks_like_price_leak(value) is leak


def test_spread_rejections():
    assert normalize_quote(_quote("spread", closing=-110)).reason == REJECT_PRICE_LEAK
    assert normalize_quote(_quote("spread", closing=-61.5)).reason == REJECT_OUT_OF_RANGE
    assert normalize_quote(_quote("spread", closing=math.nan)).reason == REJECT_NON_FINITE
    assert normalize_quote(_quote("spread")).reason == REJECT_MISSING
    check = normalize_quote(_quote("spread", closing=-6.5))
    assert check.accepted and check.value == -6.5


def test_total_keeps_integer_points_and_rejects_negatives():
    assert normalize_quote(_quote("total", closing=55)).value == 55
    assert normalize_quote(_quote("total", closing=-48.5)).reason == REJECT_NEGATIVE_TOTAL
    assert normalize_quote(_quote("total", closing=110)).reason == REJECT_PRICE_LEAK
    assert normalize_quote(_quote("total", closing=12.5)).reason == REJECT_OUT_OF_RANGE


def test_moneyline_granularity():
    assert normalize_quote(_quote("moneyline", line=-155)).value == -155
    assert normalize_quote(_quote("moneyline", line=135)).value == 135
    assert normalize_quote(_quote("moneyline", line=-95)).reason == REJECT_MONEYLINE_GRANULARITY
    assert normalize_quote(_quote("moneyline", line=-152)).reason == REJECT_MONEYLINE_GRANULARITY
    limits = LineLimits(moneyline_step=10)
    assert normalize_quote(_quote("moneyline", line=-155), limits).reason == REJECT_MONEYLINE_GRANULARITY


def test_rounding_ties_go_up():
    assert round_half_point(-3.25) == -3.0
    assert round_half_point(-3.3) == -3.5
    assert round_half_point(2.75) == 3.0
    assert round_to_step(-152.5) == -150.0
    assert round_to_step(133) == 135.0
