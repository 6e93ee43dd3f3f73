import pytest

from cfbprice.io.store import JsonFileStore, MemoryStore


def _rating(team, version, **extra):
    return {"season": 2024, "team_id": team, "model_version": version, **extra}


def test_upsert_merges_secondary_columns():
    store = MemoryStore()
    store.upsert("team_season_ratings", [_rating("A", "v1", rating=12.0)])
    store.upsert("team_season_ratings", [_rating("A", "v1", hfa_team=2.4)])
    row = store.get("team_season_ratings", (2024, "A", "v1"))
    assert row["rating"] == 12.0
    assert row["hfa_team"] == 2.4
    assert store.count("team_season_ratings") == 1


def test_new_version_never_overwrites_old():
    store = MemoryStore()
    store.upsert("team_season_ratings", [_rating("A", "v1", rating=1.0)])
    store.upsert("team_season_ratings", [_rating("A", "v2", rating=2.0)])
    assert store.get("team_season_ratings", (2024, "A", "v1"))["rating"] == 1.0
    assert store.count("team_season_ratings", model_version="v2") == 1


def test_read_filters_accept_collections():
    store = MemoryStore()
    store.upsert("games", [{"game_id": str(i), "season": 2024, "week": i} for i in range(1, 6)])
    assert {r["game_id"] for r in store.read("games", week=[2, 4])} == {"2", "4"}
    assert store.count("games", season=2024, week=range(1, 4)) == 3
    assert store.read("games", week=9) == []


def test_key_validation():
    store = MemoryStore()
    with pytest.raises(ValueError):
        store.upsert("games", [{"season": 2024}])
    with pytest.raises(KeyError):
        store.read("not_a_table")


def test_quote_keys_allow_missing_provenance():
    store = MemoryStore()
    quote = {"game_id": "g1", "market": "spread", "book": "dk", "closing_value": -3.0}
    store.upsert("market_quotes", [quote, dict(quote, closing_value=-3.5)])
    assert store.count("market_quotes") == 1
    assert store.read("market_quotes")[0]["closing_value"] == -3.5


def test_json_store_round_trip(tmp_path):
    store = JsonFileStore(tmp_path / "store")
    store.upsert("team_season_ratings", [_rating("A", "v1", rating=3.5), _rating("B", "v1", rating=-1.0)])
    store.upsert("team_season_ratings", [_rating("A", "v1", hfa_team=2.0)])

    reopened = JsonFileStore(tmp_path / "store")
    assert reopened.get("team_season_ratings", (2024, "A", "v1")) == _rating("A", "v1", rating=3.5, hfa_team=2.0)
    assert reopened.count("team_season_ratings") == 2
    assert not list((tmp_path / "store").glob("*.tmp"))
