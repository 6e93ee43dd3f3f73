"""Calibrate ratings against consensus market spreads.

The engine rescales the rating multiplier until the OLS slope of market
spread on rating difference is ~1, sweeps (SoS weight, shrinkage) pairs,
scores each pair with Elastic-Net on two evaluation sets and turns the
gate outcomes into a GO / CONDITIONAL_GO / NO_GO recommendation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..config import build_dataclass
from ..errors import InsufficientDataError
from ..market.consensus import home_minus_away_spread
from ..names import TeamDirectory
from ..records import CalibrationResult, ConsensusLine, GameInfo, ResidualBucket
from .rating import RatingComputer, RatingParams
from .regression import ElasticNetFit, OLSFit, fit_baseline_ols, residual_buckets, select_elastic_net

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Evaluation rows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MarketFilters:
    max_abs_spread: float = 60.0
    target_clip: float = 35.0
    hfa_clip: float = 7.0
    default_hfa: float = 2.0

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "MarketFilters":
        return build_dataclass(cls, values)


@dataclass(frozen=True)
class MarketGame:
    """A priced game ready for regression (market is home minus away)."""

    game_id: str
    week: int
    home_team: str
    away_team: str
    market_spread: float
    hfa: float
    book_count: int
    pre_kick: bool
    neutral_site: bool = False
    home_tier: Optional[str] = None
    away_tier: Optional[str] = None


def build_market_games(
    games: Iterable[GameInfo],
    spreads: Mapping[str, ConsensusLine],
    team_hfa: Mapping[str, Optional[float]],
    *,
    directory: Optional[TeamDirectory] = None,
    filters: Optional[MarketFilters] = None,
) -> Tuple[List[MarketGame], Dict[str, int]]:
    """Join games with their spread consensus.

    Returns the usable rows and a count of skip reasons (``unpriced``,
    ``unknown_favorite``, ``extreme_spread``).
    """

    filters = filters or MarketFilters()
    rows: List[MarketGame] = []
    skipped: Dict[str, int] = {}

    def skip(reason: str) -> None:
        skipped[reason] = skipped.get(reason, 0) + 1

    for game in games:
        line = spreads.get(game.game_id)
        if line is None or not line.is_priced:
            skip("unpriced")
            continue
        market = home_minus_away_spread(line)
        if market is None:
            skip("unknown_favorite")
            continue
        if abs(market) > filters.max_abs_spread:
            skip("extreme_spread")
            continue
        if game.neutral_site:
            hfa = 0.0
        else:
            value = team_hfa.get(game.home_team)
            hfa = filters.default_hfa if value is None else float(value)
            hfa = float(np.clip(hfa, -filters.hfa_clip, filters.hfa_clip))
        rows.append(
            MarketGame(
                game_id=game.game_id,
                week=game.week,
                home_team=game.home_team,
                away_team=game.away_team,
                market_spread=float(np.clip(market, -filters.target_clip, filters.target_clip)),
                hfa=hfa,
                book_count=line.book_count,
                pre_kick=line.pre_kick,
                neutral_site=game.neutral_site,
                home_tier=directory.tier(game.home_team) if directory else None,
                away_tier=directory.tier(game.away_team) if directory else None,
            )
        )
    return rows, skipped


@dataclass(frozen=True)
class DatasetSpec:
    name: str
    weeks: Tuple[int, ...]
    min_books: int = 3
    fbs_only: bool = False
    p5_involved: bool = False
    pre_kick_only: bool = False

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "DatasetSpec":
        return build_dataclass(cls, values)

    def accepts(self, game: MarketGame) -> bool:
        if game.week not in self.weeks or game.book_count < self.min_books:
            return False
        if self.pre_kick_only and not game.pre_kick:
            return False
        tiers = (game.home_tier, game.away_tier)
        if self.fbs_only and not all(t in ("P5", "G5") for t in tiers):
            return False
        if self.p5_involved:
            if "P5" not in tiers or not all(t in ("P5", "G5") for t in tiers):
                return False
        return True

    def select(self, games: Iterable[MarketGame]) -> List[MarketGame]:
        return [g for g in games if self.accepts(g)]


DATASET_A = DatasetSpec("A", weeks=(8, 9, 10, 11), min_books=3, fbs_only=True, pre_kick_only=True)
DATASET_B = DatasetSpec("B", weeks=tuple(range(1, 12)), min_books=3, p5_involved=True)


def design_arrays(
    games: Sequence[MarketGame], ratings: Mapping[str, float]
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """``(rating_diff, hfa, market, weeks)`` for games where both teams are rated."""

    usable = [g for g in games if g.home_team in ratings and g.away_team in ratings]
    rating_diff = np.asarray([ratings[g.home_team] - ratings[g.away_team] for g in usable], dtype=float)
    hfa = np.asarray([g.hfa for g in usable], dtype=float)
    market = np.asarray([g.market_spread for g in usable], dtype=float)
    weeks = np.asarray([g.week for g in usable], dtype=int)
    return rating_diff, hfa, market, weeks


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GateThresholds:
    max_wf_rmse: float
    min_r2: float
    slope_min: float = 0.9
    slope_max: float = 1.1
    check_bias: bool = False
    bias_0_7: float = 2.0
    bias_7_14: float = 3.0

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "GateThresholds":
        return build_dataclass(cls, values)


GATES_A = GateThresholds(max_wf_rmse=9.0, min_r2=0.20, check_bias=True)
GATES_B = GateThresholds(max_wf_rmse=9.5, min_r2=0.12)

GATE_CATEGORIES = {
    "slope": "scaling",
    "sign_rating_diff": "sign",
    "sign_hfa": "sign",
    "wf_rmse": "fit_quality",
    "r2": "fit_quality",
    "bias_0_7": "bias",
    "bias_7_14": "bias",
    "data": "fit_quality",
}


def _bucket_ok(buckets: Sequence[ResidualBucket], label: str, limit: float) -> bool:
    for bucket in buckets:
        if bucket.label == label:
            return bucket.mean is None or abs(bucket.mean) < limit
    return True


def evaluate_gates(
    fit: ElasticNetFit,
    buckets: Sequence[ResidualBucket],
    thresholds: GateThresholds,
) -> Dict[str, bool]:
    gates = {
        "wf_rmse": fit.wf_rmse is not None and fit.wf_rmse <= thresholds.max_wf_rmse,
        "r2": fit.r2 >= thresholds.min_r2,
        "slope": fit.slope is not None and thresholds.slope_min <= fit.slope <= thresholds.slope_max,
        "sign_rating_diff": fit.rating_coef > 0,
        "sign_hfa": fit.hfa_coef > 0,
    }
    if thresholds.check_bias:
        gates["bias_0_7"] = _bucket_ok(buckets, "0-7", thresholds.bias_0_7)
        gates["bias_7_14"] = _bucket_ok(buckets, "7-14", thresholds.bias_7_14)
    return gates


def failing_gates(gates: Mapping[str, bool]) -> List[str]:
    return [f"{GATE_CATEGORIES.get(name, 'other')}:{name}" for name, ok in gates.items() if not ok]


# ---------------------------------------------------------------------------
# Rescaling state machine
# ---------------------------------------------------------------------------


class CalibrationState(str, Enum):
    INITIAL_FIT = "initial_fit"
    RESCALING = "rescaling"
    CONVERGED = "converged"
    ABORTED_LOW_SLOPE = "aborted_low_slope"
    EXHAUSTED = "exhausted"
    INSUFFICIENT_DATA = "insufficient_data"
    GRID_COMPLETE = "grid_complete"


TERMINAL_RESCALE_STATES = frozenset(
    {
        CalibrationState.CONVERGED,
        CalibrationState.ABORTED_LOW_SLOPE,
        CalibrationState.EXHAUSTED,
        CalibrationState.INSUFFICIENT_DATA,
    }
)


@dataclass(frozen=True)
class RescaleConfig:
    target_slope: float = 1.0
    tolerance: float = 0.1
    min_slope: float = 0.6
    max_iterations: int = 5
    min_factor: float = 4.0
    max_factor: float = 200.0
    min_step: float = 0.01
    slope_floor: float = 0.01

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "RescaleConfig":
        return build_dataclass(cls, values)


def next_factor(factor: float, slope: float, config: RescaleConfig) -> float:
    """Multiplier update ``factor * |slope|`` clamped to the allowed range.

    Ratings scale linearly with the multiplier, so the market-on-rating slope
    scales with its inverse; multiplying by the slope lands on slope 1.
    """

    proposed = factor * max(config.slope_floor, abs(slope))
    return float(np.clip(proposed, config.min_factor, config.max_factor))


@dataclass(frozen=True)
class RescaleStep:
    iteration: int
    factor: float
    fit: Optional[OLSFit]


@dataclass
class RescaleOutcome:
    state: CalibrationState
    initial_factor: float
    factor: float
    steps: List[RescaleStep] = field(default_factory=list)
    message: str = ""

    @property
    def final_fit(self) -> Optional[OLSFit]:
        for step in reversed(self.steps):
            if step.factor == self.factor:
                return step.fit
        return None

    @property
    def iterations(self) -> int:
        return max(0, len(self.steps) - 1)


class RescaleMachine:
    """Drive the calibration multiplier toward an OLS slope of 1.

    States move ``INITIAL_FIT → RESCALING → …`` until one of the terminal
    states is reached. Every transition is taken by :meth:`step` so tests
    can walk the machine one fit at a time.
    """

    def __init__(
        self,
        compute_ratings: RatingComputer,
        games: Sequence[MarketGame],
        params: RatingParams,
        config: Optional[RescaleConfig] = None,
    ) -> None:
        self.compute_ratings = compute_ratings
        self.games = list(games)
        self.params = params
        self.config = config or RescaleConfig()
        self.state = CalibrationState.INITIAL_FIT
        self.factor = params.calibration_factor
        self.steps: List[RescaleStep] = []
        self.message = ""

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_RESCALE_STATES

    def _fit(self, factor: float) -> Optional[OLSFit]:
        ratings = self.compute_ratings(self.params.with_factor(factor))
        rating_diff, hfa, market, _ = design_arrays(self.games, ratings)
        try:
            fit = fit_baseline_ols(rating_diff, hfa, market)
        except InsufficientDataError as exc:
            logger.warning("OLS fit unavailable at factor %.3f: %s", factor, exc)
            fit = None
        self.steps.append(RescaleStep(len(self.steps), factor, fit))
        return fit

    def _converged(self, fit: OLSFit) -> bool:
        return abs(fit.slope - self.config.target_slope) <= self.config.tolerance

    def _finish(self, state: CalibrationState, message: str) -> CalibrationState:
        self.state = state
        self.message = message
        logger.info("Rescale %s: %s", state.value, message)
        return state

    def step(self) -> CalibrationState:
        if self.done:
            return self.state
        if self.state is CalibrationState.INITIAL_FIT:
            fit = self._fit(self.factor)
            if fit is None:
                return self._finish(CalibrationState.INSUFFICIENT_DATA, "baseline OLS is undetermined")
            if fit.slope < self.config.min_slope:
                return self._finish(
                    CalibrationState.ABORTED_LOW_SLOPE,
                    f"initial slope {fit.slope:.3f} < {self.config.min_slope}; rating compression, not scale",
                )
            if self._converged(fit):
                return self._finish(CalibrationState.CONVERGED, f"slope {fit.slope:.3f} within tolerance")
            self.state = CalibrationState.RESCALING
            return self.state

        # RESCALING
        last = self.steps[-1].fit
        if last is None:
            return self._finish(CalibrationState.INSUFFICIENT_DATA, f"no usable fit at factor {self.factor:.3f}")
        if self.steps[-1].iteration >= self.config.max_iterations:
            return self._finish(
                CalibrationState.EXHAUSTED, f"slope {last.slope:.3f} after {self.config.max_iterations} iterations"
            )
        proposed = next_factor(self.factor, last.slope, self.config)
        if abs(proposed - self.factor) < self.config.min_step:
            return self._finish(CalibrationState.EXHAUSTED, f"factor stalled at {self.factor:.3f}")
        fit = self._fit(proposed)
        if fit is None:
            return self._finish(CalibrationState.INSUFFICIENT_DATA, f"OLS undetermined at factor {proposed:.3f}")
        if fit.slope < self.config.min_slope:
            # Keep the last factor that produced a usable slope.
            return self._finish(
                CalibrationState.ABORTED_LOW_SLOPE,
                f"slope fell to {fit.slope:.3f} at factor {proposed:.3f}; keeping {self.factor:.3f}",
            )
        self.factor = proposed
        if self._converged(fit):
            return self._finish(CalibrationState.CONVERGED, f"slope {fit.slope:.3f} at factor {proposed:.3f}")
        if proposed >= self.config.max_factor:
            return self._finish(CalibrationState.EXHAUSTED, f"factor reached ceiling {self.config.max_factor}")
        return self.state

    def run(self) -> RescaleOutcome:
        while not self.done:
            self.step()
        return RescaleOutcome(
            state=self.state,
            initial_factor=self.params.calibration_factor,
            factor=self.factor,
            steps=list(self.steps),
            message=self.message,
        )


# ---------------------------------------------------------------------------
# Grid sweep
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GridSpec:
    sos_weights: Tuple[float, ...] = (0.03, 0.05, 0.07, 0.10)
    shrinkage_bases: Tuple[float, ...] = (0.20, 0.25, 0.30, 0.35, 0.40)
    base_version: str = "v2_7"
    initial_factor: float = 8.0

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "GridSpec":
        return build_dataclass(cls, values)

    def combinations(self) -> List[Tuple[str, RatingParams]]:
        combos = []
        for sos in self.sos_weights:
            for shrink in self.shrinkage_bases:
                name = combination_name(self.base_version, sos, shrink)
                combos.append((name, RatingParams(sos, shrink, self.initial_factor)))
        return combos


def combination_name(base: str, sos_weight: float, shrinkage_base: float) -> str:
    return f"{base}_sos{int(round(sos_weight * 100))}_shr{int(round(shrinkage_base * 100))}"


@dataclass(frozen=True)
class ElasticNetGrid:
    l1_ratios: Tuple[float, ...] = (0.25, 0.5, 0.75, 1.0)
    penalties: Tuple[float, ...] = (0.001, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0)
    min_train_rows: int = 20
    cv_folds: int = 5
    min_rows: int = 10

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "ElasticNetGrid":
        return build_dataclass(cls, values)


@dataclass(frozen=True)
class CalibrationConfig:
    grid: GridSpec = field(default_factory=GridSpec)
    rescale: RescaleConfig = field(default_factory=RescaleConfig)
    elastic_net: ElasticNetGrid = field(default_factory=ElasticNetGrid)
    filters: MarketFilters = field(default_factory=MarketFilters)
    datasets: Tuple[DatasetSpec, ...] = (DATASET_A, DATASET_B)
    gates: Tuple[Tuple[str, GateThresholds], ...] = (("A", GATES_A), ("B", GATES_B))
    rescale_dataset: str = "A"

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "CalibrationConfig":
        values = dict(values or {})
        default = cls()
        datasets = values.get("datasets")
        gates = values.get("gates")
        return cls(
            grid=GridSpec.from_mapping(values.get("grid")),
            rescale=RescaleConfig.from_mapping(values.get("rescale")),
            elastic_net=ElasticNetGrid.from_mapping(values.get("elastic_net")),
            filters=MarketFilters.from_mapping(values.get("filters")),
            datasets=tuple(DatasetSpec.from_mapping(d) for d in datasets) if datasets else default.datasets,
            gates=tuple((name, GateThresholds.from_mapping(g)) for name, g in gates.items())
            if gates
            else default.gates,
            rescale_dataset=str(values.get("rescale_dataset", default.rescale_dataset)),
        )

    def dataset(self, name: str) -> DatasetSpec:
        for spec in self.datasets:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def thresholds(self, name: str) -> GateThresholds:
        return dict(self.gates)[name]


@dataclass(frozen=True)
class Decision:
    verdict: str  # GO, CONDITIONAL_GO, NO_GO
    combination: Optional[str]
    confidence: Optional[str] = None
    failing: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class CombinationOutcome:
    combination: str
    params: RatingParams
    rescale: Optional[RescaleOutcome]
    results: Dict[str, CalibrationResult]
    resumed: bool = False


@dataclass
class SweepResult:
    state: CalibrationState
    outcomes: List[CombinationOutcome]
    decision: Decision

    def results(self) -> List[CalibrationResult]:
        return [r for o in self.outcomes for r in o.results.values()]


LoadCheckpoint = Callable[[str], Dict[str, CalibrationResult]]
SaveCheckpoint = Callable[[List[CalibrationResult]], None]


def _wf(result: CalibrationResult) -> float:
    return result.wf_rmse if result.wf_rmse is not None else float("inf")


def decide(outcomes: Sequence[CombinationOutcome], primary: str = "A", fallback: str = "B") -> Decision:
    """GO if any combination passes ``primary``; CONDITIONAL_GO on ``fallback``."""

    def passing(name: str) -> List[CombinationOutcome]:
        return [o for o in outcomes if name in o.results and o.results[name].passed]

    winners = passing(primary)
    if winners:
        best = min(winners, key=lambda o: _wf(o.results[primary]))
        return Decision("GO", best.combination, confidence="high")
    winners = passing(fallback)
    if winners:
        best = min(winners, key=lambda o: _wf(o.results[fallback]))
        failing = {primary: failing_gates(best.results[primary].gates)} if primary in best.results else {}
        return Decision("CONDITIONAL_GO", best.combination, confidence="reduced", failing=failing)
    scored = [o for o in outcomes if primary in o.results]
    if not scored:
        return Decision("NO_GO", None, failing={primary: ["fit_quality:data"]})
    best = min(scored, key=lambda o: _wf(o.results[primary]))
    failing = {name: failing_gates(result.gates) for name, result in best.results.items()}
    return Decision("NO_GO", best.combination, failing=failing)


class CalibrationEngine:
    """Run the (SoS weight, shrinkage) sweep for one season.

    Parameters
    ----------
    compute_ratings :
        Rating computer; called with the combination's parameters and the
        current calibration factor.
    games :
        Priced games (see :func:`build_market_games`).
    load_checkpoint / save_checkpoint :
        Optional persistence hooks. Combinations whose results load for
        every dataset are skipped; each finished combination is saved
        before the next starts.
    season :
        Season stamped on every result. Checkpointed results only count as
        done when their season and covered weeks match this run.
    """

    def __init__(
        self,
        compute_ratings: RatingComputer,
        games: Sequence[MarketGame],
        config: Optional[CalibrationConfig] = None,
        *,
        load_checkpoint: Optional[LoadCheckpoint] = None,
        save_checkpoint: Optional[SaveCheckpoint] = None,
        season: Optional[int] = None,
    ) -> None:
        self.compute_ratings = compute_ratings
        self.games = list(games)
        self.season = season
        self.weeks = tuple(sorted({g.week for g in self.games}))
        self.config = config or CalibrationConfig()
        self.load_checkpoint = load_checkpoint
        self.save_checkpoint = save_checkpoint

    def rescale(self, params: RatingParams) -> RescaleOutcome:
        games = self.config.dataset(self.config.rescale_dataset).select(self.games)
        return RescaleMachine(self.compute_ratings, games, params, self.config.rescale).run()

    def evaluate(
        self,
        combination: str,
        params: RatingParams,
        rescale: RescaleOutcome,
        dataset: DatasetSpec,
    ) -> CalibrationResult:
        tuned = params.with_factor(rescale.factor)
        ratings = self.compute_ratings(tuned)
        rating_diff, hfa, market, weeks = design_arrays(dataset.select(self.games), ratings)
        enet = self.config.elastic_net
        baseline = rescale.final_fit.as_dict() if rescale.final_fit else {}
        common = dict(
            combination=combination,
            dataset=dataset.name,
            model_version=combination,
            sos_weight=params.sos_weight,
            shrinkage_base=params.shrinkage_base,
            calibration_factor=rescale.factor,
            rescale_state=rescale.state.value,
            n_rows=len(market),
            baseline=baseline,
            season=self.season,
            weeks=self.weeks,
        )
        if len(market) < enet.min_rows:
            logger.warning("%s/%s: only %d rows; not scored", combination, dataset.name, len(market))
            return CalibrationResult(gates={"data": False}, **common)
        try:
            fit = select_elastic_net(
                rating_diff, hfa, market, weeks,
                l1_ratios=enet.l1_ratios,
                penalties=enet.penalties,
                min_train_rows=enet.min_train_rows,
                cv_folds=enet.cv_folds,
            )
        except InsufficientDataError as exc:
            logger.warning("%s/%s: Elastic-Net unavailable: %s", combination, dataset.name, exc)
            return CalibrationResult(gates={"data": False}, **common)
        buckets = residual_buckets(market, fit.predictions)
        gates = evaluate_gates(fit, buckets, self.config.thresholds(dataset.name))
        return CalibrationResult(
            coefficients=fit.coefficients,
            l1_ratio=fit.l1_ratio,
            penalty=fit.penalty,
            wf_rmse=fit.wf_rmse,
            cv_rmse=fit.cv_rmse,
            r2=fit.r2,
            slope=fit.slope,
            buckets=buckets,
            gates=gates,
            passed=all(gates.values()),
            **common,
        )

    def _covers(self, saved: Mapping[str, CalibrationResult]) -> bool:
        if not saved or not all(d.name in saved for d in self.config.datasets):
            return False
        return all(r.season == self.season and tuple(r.weeks) == self.weeks for r in saved.values())

    def run_combination(self, combination: str, params: RatingParams) -> CombinationOutcome:
        if self.load_checkpoint is not None:
            saved = self.load_checkpoint(combination)
            if self._covers(saved):
                logger.info("Skipping %s (checkpointed)", combination)
                return CombinationOutcome(combination, params, None, saved, resumed=True)
            if saved:
                logger.info("Recomputing %s: checkpoint is for another season or week set", combination)
        rescale = self.rescale(params)
        results = {d.name: self.evaluate(combination, params, rescale, d) for d in self.config.datasets}
        if self.save_checkpoint is not None:
            self.save_checkpoint(list(results.values()))
        return CombinationOutcome(combination, params, rescale, results)

    def sweep(self) -> SweepResult:
        outcomes = [self.run_combination(name, params) for name, params in self.config.grid.combinations()]
        names = [d.name for d in self.config.datasets]
        primary = names[0] if names else "A"
        fallback = names[1] if len(names) > 1 else primary
        decision = decide(outcomes, primary, fallback)
        logger.info("Calibration sweep complete: %s (%s)", decision.verdict, decision.combination or "-")
        return SweepResult(CalibrationState.GRID_COMPLETE, outcomes, decision)
