import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from cfbprice.features.engine import FeatureConfig, FeatureEngine, ewma_with_prior, talent_z_scores
from cfbprice.features.sequence import TeamSequence, recent_first
from cfbprice.names import TeamDirectory, TeamInfo
from cfbprice.records import TeamGameEfficiency, TeamPrior

START = datetime(2024, 8, 31, tzinfo=timezone.utc)


def _row(team, opp, week, *, days=None, **metrics):
    game_id = f"{week}-{'-'.join(sorted((team, opp)))}"
    date = START + timedelta(days=7 * (week - 1) if days is None else days)
    return TeamGameEfficiency(team, opp, game_id, 2024, week, game_date=date, **metrics)


def _opponent_rows():
    rows = [_row("O", f"P{w}", w, def_epa=0.1 * w, off_epa=0.2) for w in range(1, 5)]
    rows.append(_row("O", "X", 5, def_epa=9.0, off_epa=0.2))
    # Future outlier that must never reach week 5.
    rows.append(_row("O", "P6", 6, def_epa=5.0, off_epa=7.0))
    return rows


def test_week5_adjustment_ignores_same_week_and_future_rows():
    x_row = _row("X", "O", 5, off_epa=0.5, def_epa=0.1)
    engine = FeatureEngine(_opponent_rows() + [x_row])
    values = engine.nets_for(x_row)
    assert values["off_adj_epa"] == pytest.approx(0.5 - 0.25)
    assert values["def_adj_epa"] == pytest.approx(-(0.1 + 0.2))
    assert values["edge_epa"] == pytest.approx(0.25 + 0.3)

    without_future = FeatureEngine([r for r in _opponent_rows() if r.week < 6] + [x_row])
    assert without_future.nets_for(x_row) == values


def test_opponent_without_history_gives_null_nets():
    row = _row("X", "NEW", 1, off_epa=0.3, def_epa=0.0)
    values = FeatureEngine([row]).nets_for(row)
    assert values["off_adj_epa"] is None
    assert values["edge_epa"] is None


def test_ewma_prior_takes_missing_weight():
    assert ewma_with_prior([1.0, None], (0.6, 0.3, 0.1), 2.0) == pytest.approx(1.4)
    assert ewma_with_prior([], (0.6, 0.3, 0.1), -0.5) == pytest.approx(-0.5)
    assert ewma_with_prior([1.0, 2.0, 3.0], (0.6, 0.3, 0.1), 9.0) == pytest.approx(1.5)


def test_recency_uses_only_prior_games_and_flags_low_sample():
    rows = _opponent_rows()
    rows += [_row(f"P{w}", "O", w, off_epa=0.0, def_epa=0.0) for w in (1, 2, 3, 4, 6)]
    engine = FeatureEngine(rows, config=FeatureConfig(ewma_prior_scale={}))
    target = next(r for r in rows if r.team_id == "O" and r.week == 5)
    ewmas, low3, low5 = engine.recency(target)
    assert not low3
    assert low5
    # Opponents P1..P4 have no earlier games, so every prior net is null and the prior (0) fills in.
    assert ewmas["ewma3_off_adj_epa"] == pytest.approx(0.0)


def test_talent_prior_scales_ewma_for_first_game():
    priors = {"A": TeamPrior(2024, "A", talent=900.0), "B": TeamPrior(2024, "B", talent=500.0)}
    assert talent_z_scores(priors) == pytest.approx({"A": 1.0, "B": -1.0})
    row = _row("A", "B", 1, off_epa=0.2, def_epa=0.1)
    engine = FeatureEngine([row], priors=priors)
    ewmas, low3, low5 = engine.recency(row)
    assert low3 and low5
    assert ewmas["ewma3_off_adj_epa"] == pytest.approx(0.05)
    assert ewmas["ewma5_def_adj_sr"] == pytest.approx(0.02)


def test_context_flags():
    directory = TeamDirectory.from_teams(
        [
            TeamInfo("A", "Alpha", conference="SEC", classification="fbs"),
            TeamInfo("B", "Beta", conference="SEC", classification="fbs"),
            TeamInfo("C", "Gamma", conference="Sun Belt", classification="fbs"),
        ]
    )
    rows = [
        _row("A", "B", 1, days=0),
        _row("A", "C", 2, days=7),
        _row("A", "B", 4, days=21),
    ]
    rows = [dataclasses.replace(r, is_home=True) for r in rows]
    engine = FeatureEngine(rows, directory=directory)
    features = {f.week: f for f in engine.build(version="v1")}
    assert features[1].rest_days is None
    assert not features[1].bye_week
    assert features[1].conference_game is True
    assert features[2].conference_game is False
    assert features[2].rest_days == pytest.approx(7.0)
    assert features[4].rest_days == pytest.approx(14.0)
    assert features[4].bye_week
    assert features[1].is_p5 and features[1].is_fbs and not features[1].is_g5
    assert features[1].feature_version == "v1"


def test_sequence_slices_by_week():
    rows = [_row("O", f"P{w}", w) for w in (3, 1, 2, 2)]
    sequence = TeamSequence("O", 2024, rows)
    assert [r.week for r in sequence.before_week(2)] == [1]
    assert [r.week for r in sequence.before_week(3)] == [1, 2, 2]
    assert [r.week for r in recent_first(sequence.rows, 2)] == [3, 2]
