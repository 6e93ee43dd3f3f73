"""Regression fits against market spreads: OLS baseline and Elastic-Net."""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import ElasticNet
from sklearn.model_selection import KFold

from ..errors import InsufficientDataError
from ..records import ResidualBucket
from .linalg import LinearSolver, NormalEquationSolver

logger = logging.getLogger(__name__)

SS_TOT_EPS = 1e-4
WF_TIE_TOLERANCE = 1e-3
BUCKET_EDGES: Tuple[Tuple[str, float, float], ...] = (
    ("0-7", 0.0, 7.0),
    ("7-14", 7.0, 14.0),
    ("14-28", 14.0, 28.0),
    (">28", 28.0, math.inf),
)


def rmse(y: Sequence[float], pred: Sequence[float]) -> float:
    y = np.asarray(y, dtype=float)
    pred = np.asarray(pred, dtype=float)
    return float(np.sqrt(np.mean((y - pred) ** 2)))


def r_squared(y: Sequence[float], pred: Sequence[float]) -> float:
    """Coefficient of determination; 0 when ``y`` has no spread."""

    y = np.asarray(y, dtype=float)
    pred = np.asarray(pred, dtype=float)
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    if ss_tot <= SS_TOT_EPS:
        return 0.0
    ss_res = float(np.sum((y - pred) ** 2))
    return 1.0 - ss_res / ss_tot


def calibration_slope(y: Sequence[float], pred: Sequence[float]) -> Optional[float]:
    """Slope of ``y`` regressed on ``pred`` (1.0 means well scaled)."""

    y = np.asarray(y, dtype=float)
    pred = np.asarray(pred, dtype=float)
    if len(y) < 2:
        return None
    var = float(np.sum((pred - pred.mean()) ** 2))
    if var <= 0:
        return None
    return float(np.sum((pred - pred.mean()) * (y - y.mean())) / var)


@dataclass(frozen=True)
class OLSFit:
    slope: float
    intercept: float
    hfa_coef: float
    rmse: float
    r2: float
    n: int

    def as_dict(self) -> dict:
        return {
            "slope": self.slope,
            "intercept": self.intercept,
            "hfa_coef": self.hfa_coef,
            "rmse": self.rmse,
            "r2": self.r2,
            "n": float(self.n),
        }


def fit_baseline_ols(
    rating_diff: Sequence[float],
    hfa: Sequence[float],
    y: Sequence[float],
    solver: Optional[LinearSolver] = None,
) -> OLSFit:
    """OLS of ``y`` on ``[1, rating_diff, hfa]``.

    Raises :class:`~cfbprice.errors.InsufficientDataError` (or its
    ``SingularMatrixError`` subclass) when the fit is undetermined.
    """

    solver = solver or NormalEquationSolver()
    X = np.column_stack([np.asarray(rating_diff, dtype=float), np.asarray(hfa, dtype=float)])
    y_arr = np.asarray(y, dtype=float)
    intercept, coef = solver.fit(X, y_arr)
    pred = intercept + X @ coef
    return OLSFit(
        slope=float(coef[0]),
        intercept=float(intercept),
        hfa_coef=float(coef[1]),
        rmse=rmse(y_arr, pred),
        r2=r_squared(y_arr, pred),
        n=len(y_arr),
    )


class ElasticNetSolver:
    """scikit-learn ``ElasticNet`` behind the :class:`LinearSolver` interface."""

    def __init__(self, l1_ratio: float, penalty: float, *, max_iter: int = 10000) -> None:
        self.l1_ratio = l1_ratio
        self.penalty = penalty
        self.max_iter = max_iter

    def fit(self, X: np.ndarray, y: np.ndarray) -> tuple[float, np.ndarray]:
        model = ElasticNet(alpha=self.penalty, l1_ratio=self.l1_ratio, fit_intercept=True, max_iter=self.max_iter)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=ConvergenceWarning)
            model.fit(np.asarray(X, dtype=float), np.asarray(y, dtype=float))
        return float(model.intercept_), np.asarray(model.coef_, dtype=float)


SolverFactory = Callable[[], LinearSolver]


def _predict(solver: LinearSolver, X_train, y_train, X_test) -> np.ndarray:
    intercept, coef = solver.fit(X_train, y_train)
    return intercept + np.asarray(X_test, dtype=float) @ coef


def walk_forward_rmse(
    X: np.ndarray,
    y: np.ndarray,
    weeks: Sequence[int],
    make_solver: SolverFactory,
    *,
    min_train_rows: int = 1,
) -> Tuple[Optional[float], int]:
    """Mean RMSE over folds that train on earlier weeks and test on the next.

    Returns ``(None, 0)`` when no fold has enough training rows.
    """

    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    weeks_arr = np.asarray(weeks)
    scores: List[float] = []
    ordered = sorted(set(int(w) for w in weeks_arr))
    for i in range(1, len(ordered)):
        train = weeks_arr < ordered[i]
        test = weeks_arr == ordered[i]
        if train.sum() < max(min_train_rows, 1) or not test.any():
            continue
        pred = _predict(make_solver(), X[train], y[train], X[test])
        scores.append(rmse(y[test], pred))
    if not scores:
        return None, 0
    return float(np.mean(scores)), len(scores)


def kfold_rmse(X: np.ndarray, y: np.ndarray, make_solver: SolverFactory, *, n_splits: int = 5) -> Optional[float]:
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    if len(y) < n_splits or n_splits < 2:
        return None
    scores = []
    for train_idx, test_idx in KFold(n_splits=n_splits).split(X):
        pred = _predict(make_solver(), X[train_idx], y[train_idx], X[test_idx])
        scores.append(rmse(y[test_idx], pred))
    return float(np.mean(scores))


@dataclass(frozen=True)
class ElasticNetFit:
    l1_ratio: float
    penalty: float
    intercept: float
    rating_coef: float
    hfa_coef: float
    wf_rmse: Optional[float]
    cv_rmse: Optional[float]
    rmse: float
    r2: float
    slope: Optional[float]
    predictions: Tuple[float, ...] = ()

    @property
    def coefficients(self) -> dict:
        return {"intercept": self.intercept, "rating_diff": self.rating_coef, "hfa": self.hfa_coef}


def pick_best(candidates: Sequence[ElasticNetFit]) -> ElasticNetFit:
    """Lowest walk-forward RMSE; CV RMSE decides among fits within tolerance of it.

    Missing scores rank last. Remaining ties keep grid order.
    """

    if not candidates:
        raise InsufficientDataError("no Elastic-Net candidates to choose from")

    def score(value: Optional[float]) -> float:
        return value if value is not None else math.inf

    best_wf = min(score(c.wf_rmse) for c in candidates)
    close = [
        (index, c)
        for index, c in enumerate(candidates)
        if score(c.wf_rmse) == best_wf or score(c.wf_rmse) - best_wf < WF_TIE_TOLERANCE
    ]
    return min(close, key=lambda pair: (score(pair[1].cv_rmse), pair[0]))[1]



def select_elastic_net(
    rating_diff: Sequence[float],
    hfa: Sequence[float],
    y: Sequence[float],
    weeks: Sequence[int],
    *,
    l1_ratios: Sequence[float] = (0.25, 0.5, 0.75, 1.0),
    penalties: Sequence[float] = (0.001, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0),
    min_train_rows: int = 20,
    cv_folds: int = 5,
) -> ElasticNetFit:
    """Grid-search Elastic-Net hyperparameters.

    Candidates are ranked by walk-forward RMSE with k-fold CV RMSE breaking
    ties within 0.001. The chosen candidate is refit on all rows to report
    coefficients, R² and calibration slope.
    """

    X = np.column_stack([np.asarray(rating_diff, dtype=float), np.asarray(hfa, dtype=float)])
    y_arr = np.asarray(y, dtype=float)
    if len(y_arr) < 3:
        raise InsufficientDataError(f"need at least 3 rows for Elastic-Net, got {len(y_arr)}")

    candidates: List[ElasticNetFit] = []
    for l1_ratio in l1_ratios:
        for penalty in penalties:
            def make_solver(l1=l1_ratio, lam=penalty) -> LinearSolver:
                return ElasticNetSolver(l1, lam)

            wf, _ = walk_forward_rmse(X, y_arr, weeks, make_solver, min_train_rows=min_train_rows)
            cv = kfold_rmse(X, y_arr, make_solver, n_splits=cv_folds)
            intercept, coef = make_solver().fit(X, y_arr)
            pred = intercept + X @ coef
            candidates.append(
                ElasticNetFit(
                    l1_ratio=float(l1_ratio),
                    penalty=float(penalty),
                    intercept=intercept,
                    rating_coef=float(coef[0]),
                    hfa_coef=float(coef[1]),
                    wf_rmse=wf,
                    cv_rmse=cv,
                    rmse=rmse(y_arr, pred),
                    r2=r_squared(y_arr, pred),
                    slope=calibration_slope(y_arr, pred),
                    predictions=tuple(float(p) for p in pred),
                )
            )
    best = pick_best(candidates)
    logger.debug(
        "Elastic-Net best l1=%.2f lambda=%.3f wf_rmse=%s", best.l1_ratio, best.penalty, best.wf_rmse
    )
    return best


def residual_buckets(y: Sequence[float], pred: Sequence[float]) -> Tuple[ResidualBucket, ...]:
    """Residual (market minus prediction) stats by |market spread| bucket."""

    y_arr = np.asarray(y, dtype=float)
    resid = y_arr - np.asarray(pred, dtype=float)
    magnitude = np.abs(y_arr)
    buckets = []
    for label, lo, hi in BUCKET_EDGES:
        mask = (magnitude >= lo) & (magnitude < hi)
        n = int(mask.sum())
        if n == 0:
            buckets.append(ResidualBucket(label, 0, None, None))
            continue
        values = resid[mask]
        buckets.append(ResidualBucket(label, n, float(values.mean()), float(values.std())))
    return tuple(buckets)
