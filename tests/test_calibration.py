import pytest

pytest.importorskip("sklearn")

from cfbprice.model.calibration import (
    GATES_A,
    CalibrationConfig,
    CalibrationEngine,
    CalibrationResult,
    CalibrationState,
    CombinationOutcome,
    ElasticNetGrid,
    GridSpec,
    MarketFilters,
    RescaleConfig,
    RescaleMachine,
    RescaleStep,
    build_market_games,
    decide,
    evaluate_gates,
    failing_gates,
    next_factor,
)
from cfbprice.model.rating import RatingParams
from cfbprice.model.regression import ElasticNetFit
from cfbprice.names import TeamDirectory, TeamInfo
from cfbprice.records import ConsensusLine, GameInfo, ResidualBucket
from synthetic import ScaledComputer, market_games

PARAMS = RatingParams(calibration_factor=8.0)


def test_low_initial_slope_aborts_without_touching_factor():
    computer = ScaledComputer(compression=2.5)
    machine = RescaleMachine(computer, market_games(range(8, 12)), PARAMS)
    outcome = machine.run()
    assert outcome.state is CalibrationState.ABORTED_LOW_SLOPE
    assert outcome.factor == 8.0
    assert outcome.steps[0].fit.slope == pytest.approx(0.4, abs=0.02)
    assert computer.calls == 1
    assert "0.6" in outcome.message


def test_rescale_converges_to_unit_slope():
    computer = ScaledComputer(compression=0.8)
    machine = RescaleMachine(computer, market_games(range(8, 12)), PARAMS)
    assert machine.step() is CalibrationState.RESCALING
    assert machine.steps[0].fit.slope == pytest.approx(1.25, abs=0.03)
    outcome = machine.run()
    assert outcome.state is CalibrationState.CONVERGED
    assert outcome.factor == pytest.approx(10.0, rel=0.03)
    assert outcome.final_fit.slope == pytest.approx(1.0, abs=0.1)
    assert outcome.iterations == 1


def test_already_calibrated_ratings_converge_immediately():
    outcome = RescaleMachine(ScaledComputer(), market_games(range(8, 12)), PARAMS).run()
    assert outcome.state is CalibrationState.CONVERGED
    assert outcome.factor == 8.0
    assert outcome.iterations == 0


def test_unresponsive_ratings_exhaust_iterations():
    computer = ScaledComputer(compression=1 / 1.5, scales_with_factor=False)
    outcome = RescaleMachine(computer, market_games(range(8, 12)), PARAMS).run()
    assert outcome.state is CalibrationState.EXHAUSTED
    assert outcome.iterations == 5
    assert outcome.factor > 8.0


def test_slope_collapse_mid_loop_keeps_previous_factor():
    def computer(params):
        compression = 1 / 1.3 if params.calibration_factor == 8.0 else 3.0
        return ScaledComputer(compression, scales_with_factor=False)(params)

    outcome = RescaleMachine(computer, market_games(range(8, 12)), PARAMS).run()
    assert outcome.state is CalibrationState.ABORTED_LOW_SLOPE
    assert outcome.factor == 8.0
    assert outcome.final_fit.slope == pytest.approx(1.3, abs=0.05)


def test_no_games_is_insufficient_data():
    outcome = RescaleMachine(ScaledComputer(), [], PARAMS).run()
    assert outcome.state is CalibrationState.INSUFFICIENT_DATA
    assert outcome.final_fit is None


def test_missing_fit_while_rescaling_is_insufficient_data():
    machine = RescaleMachine(ScaledComputer(), market_games(range(8, 12)), PARAMS)
    machine.state = CalibrationState.RESCALING
    machine.steps = [RescaleStep(0, 8.0, None)]
    assert machine.step() is CalibrationState.INSUFFICIENT_DATA
    assert machine.done
    assert machine.factor == 8.0



def test_next_factor_clamps():
    config = RescaleConfig()
    assert next_factor(8.0, 1.25, config) == pytest.approx(10.0)
    assert next_factor(8.0, -1.25, config) == pytest.approx(10.0)
    assert next_factor(8.0, 100.0, config) == 200.0
    assert next_factor(8.0, 0.1, config) == 4.0


def _fit(**overrides):
    values = dict(
        l1_ratio=0.5, penalty=0.01, intercept=0.0, rating_coef=1.0, hfa_coef=1.0,
        wf_rmse=8.5, cv_rmse=8.4, rmse=8.0, r2=0.3, slope=1.0,
    )
    values.update(overrides)
    return ElasticNetFit(**values)


def test_gates_and_failure_categories():
    buckets = (ResidualBucket("0-7", 10, 0.5, 1.0), ResidualBucket("7-14", 10, -3.5, 1.0))
    gates = evaluate_gates(_fit(), buckets, GATES_A)
    assert gates["wf_rmse"] and gates["r2"] and gates["slope"]
    assert gates["bias_0_7"]
    assert not gates["bias_7_14"]

    gates = evaluate_gates(_fit(hfa_coef=-0.2, slope=1.3, wf_rmse=None), (), GATES_A)
    assert set(failing_gates(gates)) == {"sign:sign_hfa", "scaling:slope", "fit_quality:wf_rmse"}
    assert gates["bias_0_7"] and gates["bias_7_14"]


def _result(name, dataset, passed, wf=8.0):
    return CalibrationResult(
        combination=name, dataset=dataset, model_version=name, sos_weight=0.05, shrinkage_base=0.25,
        calibration_factor=8.0, rescale_state="converged", n_rows=40, wf_rmse=wf,
        gates={"r2": passed}, passed=passed,
    )


def _outcome(name, a_passed, b_passed, wf=8.0):
    return CombinationOutcome(
        name, PARAMS, None, {"A": _result(name, "A", a_passed, wf), "B": _result(name, "B", b_passed, wf)}
    )


def test_decision_levels():
    go = decide([_outcome("c1", False, True, 8.0), _outcome("c2", True, True, 8.9), _outcome("c3", True, True, 8.1)])
    assert (go.verdict, go.combination, go.confidence) == ("GO", "c3", "high")

    conditional = decide([_outcome("c1", False, True), _outcome("c2", False, False)])
    assert conditional.verdict == "CONDITIONAL_GO"
    assert conditional.combination == "c1"
    assert conditional.failing == {"A": ["fit_quality:r2"]}

    no_go = decide([_outcome("c1", False, False)])
    assert no_go.verdict == "NO_GO"
    assert no_go.failing["A"] == ["fit_quality:r2"]
    assert decide([]).verdict == "NO_GO"


def _small_config():
    return CalibrationConfig(
        grid=GridSpec(sos_weights=(0.05,), shrinkage_bases=(0.25, 0.30), base_version="test"),
        elastic_net=ElasticNetGrid(penalties=(0.001, 0.1), min_train_rows=5),
    )


def test_sweep_reaches_go_and_resumes_from_checkpoint():
    saved = {}

    def save(results):
        for result in results:
            saved.setdefault(result.combination, {})[result.dataset] = result

    def load(combination):
        return dict(saved.get(combination, {}))

    games = market_games()
    computer = ScaledComputer(compression=0.8)
    sweep = CalibrationEngine(computer, games, _small_config(), load_checkpoint=load, save_checkpoint=save).sweep()
    assert sweep.state is CalibrationState.GRID_COMPLETE
    assert [o.combination for o in sweep.outcomes] == ["test_sos5_shr25", "test_sos5_shr30"]
    assert sweep.decision.verdict == "GO"
    result = sweep.outcomes[0].results["A"]
    assert result.rescale_state == "converged"
    assert result.n_rows == 32
    assert result.passed
    assert result.coefficients["rating_diff"] > 0
    assert len(result.buckets) == 4
    assert set(saved) == {"test_sos5_shr25", "test_sos5_shr30"}

    again = ScaledComputer(compression=0.8)
    resumed = CalibrationEngine(again, games, _small_config(), load_checkpoint=load, save_checkpoint=save).sweep()
    assert again.calls == 0
    assert all(o.resumed for o in resumed.outcomes)
    assert resumed.decision == sweep.decision


def test_too_few_rows_fails_data_gate():
    engine = CalibrationEngine(ScaledComputer(), market_games(range(8, 9)), _small_config())
    outcome = engine.run_combination("thin", PARAMS)
    assert outcome.results["A"].gates == {"data": False}
    assert not outcome.results["A"].passed


def test_early_season_falls_back_to_secondary_dataset():
    # Weeks 1-7 leave the late-season dataset empty, so rescaling has nothing to fit.
    sweep = CalibrationEngine(ScaledComputer(), market_games(range(1, 8)), _small_config()).sweep()
    outcome = sweep.outcomes[0]
    assert outcome.rescale.state is CalibrationState.INSUFFICIENT_DATA
    assert outcome.results["A"].gates == {"data": False}
    assert outcome.results["B"].rescale_state == "insufficient_data"
    assert "rescale" not in outcome.results["B"].gates
    assert outcome.results["B"].passed
    assert sweep.decision.verdict == "CONDITIONAL_GO"
    assert sweep.decision.failing == {"A": ["fit_quality:data"]}


def test_checkpoint_from_another_season_or_week_set_is_recomputed():
    saved = {}

    def save(results):
        for result in results:
            saved.setdefault(result.combination, {})[result.dataset] = result

    def load(combination):
        return dict(saved.get(combination, {}))

    games = market_games()
    first = CalibrationEngine(
        ScaledComputer(), games, _small_config(), load_checkpoint=load, save_checkpoint=save, season=2024
    ).sweep()
    stored = first.outcomes[0].results["A"]
    assert stored.season == 2024
    assert stored.weeks == tuple(range(1, 12))

    other_season = ScaledComputer()
    sweep = CalibrationEngine(
        other_season, games, _small_config(), load_checkpoint=load, save_checkpoint=save, season=2025
    ).sweep()
    assert other_season.calls > 0
    assert not any(o.resumed for o in sweep.outcomes)
    assert saved["test_sos5_shr25"]["A"].season == 2025

    fewer_weeks = ScaledComputer()
    sweep = CalibrationEngine(
        fewer_weeks,
        market_games(range(1, 11)),
        _small_config(),
        load_checkpoint=load,
        save_checkpoint=save,
        season=2025,
    ).sweep()
    assert fewer_weeks.calls > 0
    assert not any(o.resumed for o in sweep.outcomes)
    assert saved["test_sos5_shr25"]["B"].weeks == tuple(range(1, 11))



def test_config_from_mapping():
    config = CalibrationConfig.from_mapping(
        {
            "grid": {"sos_weights": [0.05], "shrinkage_bases": [0.2, 0.4]},
            "gates": {"A": {"max_wf_rmse": 8.0, "min_r2": 0.3, "check_bias": True}},
            "datasets": [{"name": "A", "weeks": [9, 10]}],
        }
    )
    assert len(config.grid.combinations()) == 2
    assert config.thresholds("A").max_wf_rmse == 8.0
    assert config.dataset("A").weeks == (9, 10)


def test_build_market_games_skips_and_hfa():
    directory = TeamDirectory.from_teams(
        [TeamInfo(t, t, conference="SEC", classification="fbs") for t in ("A", "B", "C", "D")]
    )
    games = [
        GameInfo("g1", 2024, 9, "A", "B"),
        GameInfo("g2", 2024, 9, "C", "D", neutral_site=True),
        GameInfo("g3", 2024, 9, "B", "C"),
        GameInfo("g4", 2024, 9, "D", "A"),
        GameInfo("g5", 2024, 9, "A", "C"),
        GameInfo("g6", 2024, 9, "B", "D"),
    ]

    def line(gid, value, side, books=3):
        return ConsensusLine(gid, "spread", value, books, books, 0, "pre_kick", favored_side=side,
                             books=tuple(f"b{i}" for i in range(books)))

    spreads = {
        "g1": line("g1", -3.5, "home"),
        "g2": line("g2", -7.0, "away"),
        "g3": line("g3", -4.0, None),
        "g4": ConsensusLine("g4", "spread", None, 0, 2, 2, "full_history"),
        "g5": line("g5", -45.0, "home"),
        "g6": line("g6", -61.0, "home"),
    }
    rows, skipped = build_market_games(
        games, spreads, {"A": 9.5, "B": None}, directory=directory, filters=MarketFilters()
    )
    by_id = {r.game_id: r for r in rows}
    assert skipped == {"unknown_favorite": 1, "unpriced": 1, "extreme_spread": 1}
    assert by_id["g1"].market_spread == 3.5
    assert by_id["g1"].hfa == 7.0
    assert by_id["g2"].market_spread == -7.0
    assert by_id["g2"].hfa == 0.0
    assert by_id["g5"].market_spread == 35.0
    assert by_id["g1"].home_tier == "P5"
