"""CFBD API client and row parsers for games, lines and efficiency."""

from __future__ import annotations

import logging
import os
import random
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from ..errors import CredentialError, ProviderError, ProviderNotFoundError, ProviderRateLimitError
from ..names import TeamDirectory
from ..records import GameInfo, RawLineQuote, TeamGameEfficiency, parse_timestamp

logger = logging.getLogger(__name__)

BASE_URL = "https://api.collegefootballdata.com"
SOURCE = "cfbd"


class CFBDClient:
    """Minimal helper around CFBD HTTP endpoints.

    ``get`` returns the decoded JSON rows. Rate limits and timeouts raise
    :class:`ProviderRateLimitError` (after ``retries`` attempts), missing
    data raises :class:`ProviderNotFoundError`, and a rejected key raises
    :class:`CredentialError`.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        timeout: int = 30,
        retries: int = 3,
        base_backoff: float = 1.5,
        session: Optional[requests.Session] = None,
    ) -> None:
        api_key = api_key or os.environ.get("CFBD_API_KEY")
        if not api_key:
            raise CredentialError("CFBD API key not provided. Set CFBD_API_KEY env var or pass api_key.")
        self.headers = {"Authorization": f"Bearer {api_key}", "Accept": "application/json"}
        self.timeout = timeout
        self.retries = max(1, retries)
        self.base_backoff = base_backoff
        self.session = session or requests.Session()

    def _sleep(self, attempt: int) -> None:
        time.sleep(self.base_backoff * (2 ** attempt) + random.random())

    def get(self, path: str, **params: Any) -> List[dict]:
        url = BASE_URL + path
        query = {key: value for key, value in params.items() if value is not None}
        for attempt in range(self.retries):
            last = attempt == self.retries - 1
            try:
                response = self.session.get(url, headers=self.headers, params=query, timeout=self.timeout)
            except requests.Timeout as exc:
                if last:
                    raise ProviderRateLimitError(f"Timed out requesting {url}: {exc}") from exc
                self._sleep(attempt)
                continue
            except requests.RequestException as exc:
                raise ProviderError(f"Request failed for {url}: {exc}") from exc

            if response.status_code == 401:
                raise CredentialError("CFBD API rejected the key (401). Double-check the token and Bearer prefix.")
            if response.status_code == 404:
                raise ProviderNotFoundError(f"CFBD has no data at {path} for {query}")
            if response.status_code == 429 or response.status_code >= 500:
                if last:
                    if response.status_code == 429:
                        raise ProviderRateLimitError(f"CFBD rate limit exceeded (429) for {path}")
                    raise ProviderError(f"CFBD server error {response.status_code} for {path}")
                logger.warning("CFBD %s returned %s; retrying", path, response.status_code)
                self._sleep(attempt)
                continue
            if response.status_code >= 400:
                raise ProviderError(f"CFBD error {response.status_code} for {path}: {response.text[:200]}")
            try:
                return response.json()
            except ValueError as exc:
                raise ProviderError(f"Invalid JSON returned by CFBD for {path}: {response.text[:200]}") from exc
        raise ProviderError(f"CFBD request to {path} did not complete")  # pragma: no cover

    def games(self, season: int, week: Optional[int] = None, team: Optional[str] = None) -> List[dict]:
        return self.get("/games", year=season, week=week, team=team, seasonType="regular")

    def lines(self, season: int, week: Optional[int] = None, team: Optional[str] = None) -> List[dict]:
        return self.get("/lines", year=season, week=week, team=team)

    def advanced_game_stats(self, season: int, week: Optional[int] = None, team: Optional[str] = None) -> List[dict]:
        return self.get("/stats/game/advanced", year=season, week=week, team=team)

    def teams(self, season: int) -> List[dict]:
        return self.get("/teams", year=season)


def _float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _pick(row: dict, *keys: str) -> Any:
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    return None


def parse_teams(rows: Iterable[dict]) -> List[dict]:
    """Team records (``team_id`` = school name) for :class:`TeamDirectory`."""

    out = []
    for row in rows:
        school = row.get("school")
        if not school:
            continue
        aliases = [a for a in (row.get("abbreviation"), row.get("alt_name1"), row.get("altName1")) if a]
        out.append(
            {
                "team_id": school,
                "name": school,
                "conference": row.get("conference"),
                "classification": row.get("classification"),
                "aliases": aliases,
            }
        )
    return out


def parse_games(rows: Iterable[dict], directory: TeamDirectory) -> Tuple[List[GameInfo], int]:
    """Convert CFBD game rows; returns ``(games, skipped_unmapped)``."""

    games: List[GameInfo] = []
    skipped = 0
    for row in rows:
        home = directory.resolve(_pick(row, "homeTeam", "home_team"), source=SOURCE)
        away = directory.resolve(_pick(row, "awayTeam", "away_team"), source=SOURCE)
        if home is None or away is None:
            skipped += 1
            continue
        games.append(
            GameInfo(
                game_id=str(row["id"]),
                season=int(row["season"]),
                week=int(row["week"]),
                home_team=home,
                away_team=away,
                kickoff=parse_timestamp(_pick(row, "startDate", "start_date")),
                neutral_site=bool(_pick(row, "neutralSite", "neutral_site")),
                completed=bool(row.get("completed")),
                home_points=_float(_pick(row, "homePoints", "home_points")),
                away_points=_float(_pick(row, "awayPoints", "away_points")),
                season_type=str(_pick(row, "seasonType", "season_type") or "regular"),
            )
        )
    return games, skipped


def parse_lines(rows: Iterable[dict]) -> List[RawLineQuote]:
    """Expand CFBD ``/lines`` rows into one quote per provider/market.

    CFBD spreads are quoted for the home team; totals carry no side.
    """

    quotes: List[RawLineQuote] = []
    for row in rows:
        game_id = str(row["id"])
        for line in row.get("lines") or []:
            book = str(line.get("provider") or "unknown")
            spread = _float(line.get("spread"))
            spread_open = _float(_pick(line, "spreadOpen", "spread_open"))
            if spread is not None or spread_open is not None:
                quotes.append(
                    RawLineQuote(game_id, "spread", book, line_value=spread_open, closing_value=spread,
                                 source=SOURCE, side="home")
                )
            total = _float(_pick(line, "overUnder", "over_under"))
            total_open = _float(_pick(line, "overUnderOpen", "over_under_open"))
            if total is not None or total_open is not None:
                quotes.append(
                    RawLineQuote(game_id, "total", book, line_value=total_open, closing_value=total, source=SOURCE)
                )
            for side, key in (("home", "homeMoneyline"), ("away", "awayMoneyline")):
                price = _float(_pick(line, key, key.replace("Moneyline", "_moneyline")))
                if price is not None:
                    quotes.append(RawLineQuote(game_id, "moneyline", book, line_value=price, source=SOURCE, side=side))
    return quotes


_OFFENSE_FIELDS = {
    "epa": ("ppa",),
    "sr": ("successRate", "success_rate"),
    "explosiveness": ("explosiveness",),
    "ppo": ("pointsPerOpportunity", "points_per_opportunity"),
    "havoc": ("havoc",),
}


def _side_metric(side: dict, metric: str) -> Optional[float]:
    value = _pick(side, *_OFFENSE_FIELDS[metric])
    if isinstance(value, dict):
        value = value.get("total")
    return _float(value)


def parse_advanced_game_stats(
    rows: Iterable[dict],
    directory: TeamDirectory,
    games: Optional[Dict[str, GameInfo]] = None,
) -> Tuple[List[TeamGameEfficiency], int]:
    """Convert ``/stats/game/advanced`` rows into efficiency records.

    Havoc in CFBD is reported from the defense's perspective, so offensive
    havoc is the havoc rate the team's offense allowed.
    """

    out: List[TeamGameEfficiency] = []
    skipped = 0
    games = games or {}
    for row in rows:
        team = directory.resolve(row.get("team"), source=SOURCE)
        opponent = directory.resolve(row.get("opponent"), source=SOURCE)
        if team is None or opponent is None:
            skipped += 1
            continue
        game_id = str(_pick(row, "gameId", "game_id"))
        offense = row.get("offense") or {}
        defense = row.get("defense") or {}
        values: Dict[str, Optional[float]] = {}
        for metric in _OFFENSE_FIELDS:
            values[f"off_{metric}"] = _side_metric(offense, metric)
            values[f"def_{metric}"] = _side_metric(defense, metric)
        game = games.get(game_id)
        out.append(
            TeamGameEfficiency(
                team_id=team,
                opponent_id=opponent,
                game_id=game_id,
                season=int(row["season"]),
                week=int(row["week"]),
                game_date=game.kickoff if game else None,
                is_home=(game.home_team == team) if game else None,
                neutral_site=game.neutral_site if game else False,
                **values,
            )
        )
    return out, skipped
