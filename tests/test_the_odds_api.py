from __future__ import annotations

from datetime import datetime, timezone

import pytest

requests = pytest.importorskip("requests")

from cfbprice.errors import CredentialError, ProviderNotFoundError, ProviderRateLimitError
from cfbprice.io import the_odds_api
from cfbprice.io.reports import read_report
from cfbprice.io.store import MemoryStore
from cfbprice.jobs import ingest_odds
from cfbprice.market.consensus import resolve_game
from cfbprice.records import GameInfo, to_record


def _utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


EVENT = {
    "id": "event123",
    "commence_time": "2025-10-01T18:00:00Z",
    "home_team": "Home Team",
    "away_team": "Away Team",
    "bookmakers": [
        {
            "key": book,
            "last_update": "2025-10-01T17:30:00Z",
            "markets": [
                {
                    "key": "spreads",
                    "outcomes": [
                        {"name": "Home Team", "price": -110, "point": point},
                        {"name": "Away Team", "price": -110, "point": -point},
                    ],
                },
                {
                    "key": "totals",
                    "outcomes": [
                        {"name": "Over", "price": -115, "point": 51.5},
                        {"name": "Under", "price": -105, "point": 51.5},
                    ],
                },
                {
                    "key": "h2h",
                    "outcomes": [
                        {"name": "Home Team", "price": -150},
                        {"name": "Away Team", "price": 130},
                    ],
                },
            ],
        }
        for book, point in (("fanduel", -3.5), ("draftkings", -3.0), ("betmgm", -4.0))
    ],
}


def test_quotes_from_event_keeps_sides():
    quotes = the_odds_api.quotes_from_event(EVENT, "g1")
    spreads = [q for q in quotes if q.market == "spread"]
    totals = [q for q in quotes if q.market == "total"]
    assert len(spreads) == 6
    assert len(totals) == 3
    assert {q.side for q in spreads} == {"home", "away"}
    assert all(q.observed_at == _utc(2025, 10, 1, 17, 30) for q in quotes)
    assert all(q.source == "the_odds_api" for q in quotes)


def test_event_quotes_resolve_to_consensus():
    quotes = the_odds_api.quotes_from_event(EVENT, "g1")
    lines = resolve_game("g1", quotes, _utc(2025, 10, 1, 18))
    assert lines["spread"].value == pytest.approx(-3.5)
    assert lines["spread"].book_count == 3
    assert lines["spread"].favored_side == "home"
    assert lines["total"].value == pytest.approx(51.5)
    assert lines["moneyline"].value == pytest.approx(-150)
    assert lines["moneyline"].dog_value == pytest.approx(130)


class _Response:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = {"x-requests-remaining": "42"}
        self.text = ""

    def json(self):
        return self._payload


def test_fetch_requires_key(monkeypatch):
    monkeypatch.delenv("THE_ODDS_API_KEY", raising=False)
    with pytest.raises(CredentialError):
        the_odds_api.fetch_current_odds()


@pytest.mark.parametrize(
    "status, error",
    [(429, ProviderRateLimitError), (404, ProviderNotFoundError), (401, CredentialError)],
)
def test_fetch_maps_status_codes(monkeypatch, status, error):
    monkeypatch.setenv("THE_ODDS_API_KEY", "key")
    monkeypatch.setattr(the_odds_api.requests, "get", lambda *a, **k: _Response(status))
    with pytest.raises(error):
        the_odds_api.fetch_current_odds()


def test_fetch_records_usage(monkeypatch):
    monkeypatch.setenv("THE_ODDS_API_KEY", "key")
    monkeypatch.setattr(the_odds_api.requests, "get", lambda *a, **k: _Response(200, [EVENT]))
    assert the_odds_api.fetch_current_odds() == [EVENT]
    assert the_odds_api.get_last_usage() == {"requests_remaining": "42"}


def _store_with_game():
    store = MemoryStore()
    store.upsert(
        "teams",
        [
            {"team_id": "Georgia", "name": "Georgia", "conference": "SEC", "classification": "fbs"},
            {"team_id": "Alabama", "name": "Alabama", "conference": "SEC", "classification": "fbs"},
        ],
    )
    game = GameInfo("g1", 2025, 5, "Georgia", "Alabama", kickoff=_utc(2025, 10, 1, 18))
    store.upsert("games", [to_record(game)])
    return store


def _event(event_id, home, away, commence="2025-10-01T18:00:00Z"):
    return {
        "id": event_id,
        "commence_time": commence,
        "home_team": home,
        "away_team": away,
        "bookmakers": [
            {
                "key": "fanduel",
                "last_update": "2025-10-01T17:30:00Z",
                "markets": [
                    {
                        "key": "spreads",
                        "outcomes": [
                            {"name": home, "price": -110, "point": -2.5},
                            {"name": away, "price": -110, "point": 2.5},
                        ],
                    }
                ],
            }
        ],
    }


def test_ingest_odds_matches_events_to_games(tmp_path):
    store = _store_with_game()
    events = [
        _event("e1", "Georgia Bulldogs", "Alabama Crimson Tide"),
        _event("e2", "Nowhere Tech", "Alabama Crimson Tide"),
        _event("e3", "Georgia Bulldogs", "Alabama Crimson Tide", "2025-10-08T18:00:00Z"),
    ]
    summary = ingest_odds(events, store, 2025, reports_dir=tmp_path)
    assert summary.processed == 1
    assert summary.skipped == 2
    assert summary.extra["quotes"] == 2
    rows = store.read("market_quotes", game_id="g1")
    assert {row["side"] for row in rows} == {"home", "away"}
    unmatched = read_report(tmp_path / "odds_unmatched.csv")
    assert sorted(unmatched["reason"]) == ["kickoff_mismatch", "unmapped_team"]


def test_ingest_odds_dry_run_writes_nothing(tmp_path):
    store = _store_with_game()
    summary = ingest_odds([_event("e1", "Georgia", "Alabama")], store, 2025, dry_run=True, reports_dir=tmp_path)
    assert summary.processed == 1
    assert store.count("market_quotes") == 0
