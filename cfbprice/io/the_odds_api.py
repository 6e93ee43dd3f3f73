"""The Odds API v4: live NCAAF odds flattened into raw line quotes."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from ..errors import CredentialError, ProviderError, ProviderNotFoundError, ProviderRateLimitError
from ..records import RawLineQuote, parse_timestamp

logger = logging.getLogger(__name__)

API_ROOT = "https://api.the-odds-api.com/v4"
SPORT_KEY = "americanfootball_ncaaf"
SOURCE = "the_odds_api"
KEY_ENV = "THE_ODDS_API_KEY"

# Provider market key -> internal market name.
MARKET_KEYS = {"spreads": "spread", "totals": "total", "h2h": "moneyline"}

_usage: Dict[str, str] = {}


def get_last_usage() -> Dict[str, str]:
    """Quota headers from the latest response (``requests_remaining``/``requests_used``)."""

    return dict(_usage)


def _resolve_key(api_key: Optional[str]) -> str:
    resolved = api_key or os.environ.get(KEY_ENV)
    if not resolved:
        raise CredentialError(f"{KEY_ENV} is not set; an Odds API key is required to fetch odds.")
    return resolved


def _remember_usage(headers: Mapping[str, Any]) -> None:
    _usage.clear()
    for header, name in (("x-requests-remaining", "requests_remaining"), ("x-requests-used", "requests_used")):
        value = headers.get(header)
        if value is not None:
            _usage[name] = value


def _raise_for_status(response: requests.Response, path: str) -> None:
    status = response.status_code
    if status < 400:
        return
    if status == 401:
        raise CredentialError(f"Odds API key rejected (401) for {path}")
    if status == 404:
        raise ProviderNotFoundError(f"Odds API returned 404 for {path}")
    if status == 429:
        raise ProviderRateLimitError(f"Odds API quota or rate limit hit (429) for {path}")
    raise ProviderError(f"Odds API {status} for {path}: {response.text[:200]}")


def _get(path: str, params: Mapping[str, Any], *, api_key: Optional[str] = None, timeout: int = 30) -> Any:
    query = {"apiKey": _resolve_key(api_key), **params}
    try:
        response = requests.get(f"{API_ROOT}{path}", params=query, timeout=timeout)
    except requests.Timeout as exc:
        raise ProviderRateLimitError(f"Odds API timed out on {path}") from exc
    except requests.RequestException as exc:
        raise ProviderError(f"Odds API request for {path} failed: {exc}") from exc
    _remember_usage(response.headers)
    _raise_for_status(response, path)
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(f"Odds API sent a non-JSON body for {path}") from exc


def fetch_current_odds(
    sport_key: str = SPORT_KEY,
    *,
    regions: Iterable[str] = ("us",),
    markets: Iterable[str] = tuple(MARKET_KEYS),
    api_key: Optional[str] = None,
    timeout: int = 30,
) -> List[dict]:
    """Current odds events for ``sport_key`` in American format."""

    params = {"regions": ",".join(regions), "markets": ",".join(markets), "oddsFormat": "american"}
    events = _get(f"/sports/{sport_key}/odds", params, api_key=api_key, timeout=timeout)
    if not isinstance(events, list):
        raise ProviderError(f"Odds API returned {type(events).__name__}, expected a list of events")
    logger.info("Fetched %d odds events for %s", len(events), sport_key)
    return events


def _alnum(label: Optional[str]) -> str:
    return "".join(ch for ch in (label or "").lower() if ch.isalnum())


def _outcome_side(name: Optional[str], home: str, away: str) -> Optional[str]:
    key = _alnum(name)
    if key == home:
        return "home"
    if key == away:
        return "away"
    return None


def quotes_from_event(event: dict, game_id: str) -> List[RawLineQuote]:
    """Flatten one odds event into :class:`RawLineQuote` rows.

    Spreads and moneylines keep one quote per outcome side so the resolver
    can infer the favorite; totals keep the ``over`` point only.
    """

    home = _alnum(event.get("home_team"))
    away = _alnum(event.get("away_team"))
    quotes: List[RawLineQuote] = []
    for book in event.get("bookmakers") or []:
        book_key = book.get("key")
        if not book_key:
            continue
        book_time = parse_timestamp(book.get("last_update"))
        for market in book.get("markets") or []:
            kind = MARKET_KEYS.get(market.get("key"))
            if kind is None:
                continue
            observed_at = parse_timestamp(market.get("last_update")) or book_time
            for outcome in market.get("outcomes") or []:
                if kind == "total" and _alnum(outcome.get("name")) != "over":
                    continue
                value = outcome.get("price") if kind == "moneyline" else outcome.get("point")
                if value is None:
                    continue
                quotes.append(
                    RawLineQuote(
                        game_id=game_id,
                        market=kind,
                        book=str(book_key),
                        line_value=float(value),
                        observed_at=observed_at,
                        source=SOURCE,
                        side=_outcome_side(outcome.get("name"), home, away),
                    )
                )
    return quotes
