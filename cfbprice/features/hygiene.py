"""Batch hygiene (winsorize + standardize) and feature-store gates."""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..config import build_dataclass
from ..records import TeamGameAdjustedFeature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HygieneConfig:
    lower_pct: float = 0.01
    upper_pct: float = 0.99
    zero_variance_std: float = 1e-4
    required_features: Tuple[str, ...] = (
        "off_adj_sr",
        "off_adj_explosiveness",
        "def_adj_sr",
        "def_adj_explosiveness",
        "edge_sr",
        "edge_explosiveness",
    )
    strict_weeks: Tuple[int, ...] = (8, 9, 10, 11)
    strict_null_threshold: float = 0.05
    null_threshold: float = 0.15
    sign_agreement_threshold: float = 0.70
    sign_feature: str = "edge_epa"
    max_persist_diff: float = 0.05

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "HygieneConfig":
        return build_dataclass(cls, values)


@dataclass(frozen=True)
class FeatureStats:
    feature: str
    count: int
    nulls: int
    mean: Optional[float] = None
    std: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    lower: Optional[float] = None
    upper: Optional[float] = None
    winsorized_pct: float = 0.0
    zero_variance: bool = False


@dataclass
class HygieneResult:
    features: List[TeamGameAdjustedFeature]
    stats: List[FeatureStats] = field(default_factory=list)

    @property
    def zero_variance(self) -> List[str]:
        return [s.feature for s in self.stats if s.zero_variance]


def winsor_bounds(values: Sequence[float], lower_pct: float = 0.01, upper_pct: float = 0.99) -> Tuple[float, float]:
    """Order-statistic bounds at ``floor(n·p)`` (upper index capped at n-1)."""

    ordered = np.sort(np.asarray(values, dtype=float))
    n = len(ordered)
    lo = ordered[int(math.floor(n * lower_pct))]
    hi = ordered[min(n - 1, int(math.floor(n * upper_pct)))]
    return float(lo), float(hi)


def _feature_columns(features: Iterable[TeamGameAdjustedFeature]) -> List[str]:
    columns: Dict[str, None] = {}
    for feature in features:
        for key in feature.values:
            columns.setdefault(key, None)
    return list(columns)


def _clean_column(
    raw: List[Optional[float]], name: str, config: HygieneConfig
) -> Tuple[List[Optional[float]], FeatureStats]:
    present_idx = [i for i, v in enumerate(raw) if v is not None and math.isfinite(v)]
    nulls = len(raw) - len(present_idx)
    if not present_idx:
        return [None] * len(raw), FeatureStats(name, len(raw), nulls, zero_variance=True)

    values = np.asarray([raw[i] for i in present_idx], dtype=float)
    lo, hi = winsor_bounds(values, config.lower_pct, config.upper_pct)
    clipped = np.clip(values, lo, hi)
    winsorized_pct = float(np.mean(clipped != values)) * 100.0
    mean = float(clipped.mean())
    std = float(clipped.std())
    stats = FeatureStats(
        feature=name,
        count=len(raw),
        nulls=nulls,
        mean=mean,
        std=std,
        min=float(values.min()),
        max=float(values.max()),
        lower=lo,
        upper=hi,
        winsorized_pct=winsorized_pct,
        zero_variance=std < config.zero_variance_std,
    )
    out: List[Optional[float]] = [None] * len(raw)
    if stats.zero_variance:
        logger.warning("Feature %s has ~zero variance (std=%.2e); nulling", name, std)
        return out, dataclasses.replace(stats, nulls=len(raw))
    for i, value in zip(present_idx, clipped):
        out[i] = float((value - mean) / std)
    return out, stats


def apply_hygiene(
    features: Sequence[TeamGameAdjustedFeature],
    config: Optional[HygieneConfig] = None,
) -> HygieneResult:
    """Winsorize at the configured percentiles then z-score within the batch.

    Non-finite inputs count as nulls. A near-constant feature is nulled for
    every row and flagged in the stats.
    """

    config = config or HygieneConfig()
    if not features:
        return HygieneResult([])
    columns = _feature_columns(features)
    cleaned: Dict[str, List[Optional[float]]] = {}
    stats: List[FeatureStats] = []
    for name in columns:
        out, column_stats = _clean_column([f.values.get(name) for f in features], name, config)
        cleaned[name] = out
        stats.append(column_stats)
    rows = [
        dataclasses.replace(feature, values={name: cleaned[name][i] for name in columns})
        for i, feature in enumerate(features)
    ]
    return HygieneResult(rows, stats)


@dataclass
class FeatureGateReport:
    completeness: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    zero_variance: List[str] = field(default_factory=list)
    non_finite: List[str] = field(default_factory=list)
    sign_agreement: Optional[float] = None
    sign_agreement_n: int = 0
    sign_threshold: float = 0.70

    @property
    def passed(self) -> bool:
        return not self.failures

    @property
    def sign_agreement_ok(self) -> Optional[bool]:
        if self.sign_agreement is None:
            return None
        return self.sign_agreement >= self.sign_threshold


def sign_agreement(
    features: Iterable[TeamGameAdjustedFeature],
    market_home_spreads: Mapping[str, Optional[float]],
    feature: str = "edge_epa",
) -> Tuple[Optional[float], int]:
    """Share of rows where the edge sign matches the market favorite.

    ``market_home_spreads`` maps game id to home-minus-away points (positive
    when home is favored). Diagnostic only.
    """

    agree = 0
    total = 0
    for row in features:
        edge = row.values.get(feature)
        market = market_home_spreads.get(row.game_id)
        if edge is None or market is None or edge == 0 or market == 0 or row.is_home is None:
            continue
        team_favored = market > 0 if row.is_home else market < 0
        total += 1
        if (edge > 0) == team_favored:
            agree += 1
    if total == 0:
        return None, 0
    return agree / total, total


def evaluate_feature_gates(
    cleaned: HygieneResult,
    config: Optional[HygieneConfig] = None,
    *,
    raw_features: Optional[Sequence[TeamGameAdjustedFeature]] = None,
    market_home_spreads: Optional[Mapping[str, Optional[float]]] = None,
) -> FeatureGateReport:
    """Null-rate, zero-variance and finiteness checks on a cleaned batch.

    The sign-agreement canary is computed on ``raw_features`` when a market
    map is supplied; it is reported but never added to ``failures``.
    """

    config = config or HygieneConfig()
    report = FeatureGateReport(
        zero_variance=cleaned.zero_variance, sign_threshold=config.sign_agreement_threshold
    )
    by_week: Dict[int, List[TeamGameAdjustedFeature]] = {}
    for row in cleaned.features:
        by_week.setdefault(row.week, []).append(row)

    for feature in config.required_features:
        for week in sorted(by_week):
            rows = by_week[week]
            nulls = sum(1 for r in rows if r.values.get(feature) is None)
            total = len(rows)
            pct = 100.0 * (total - nulls) / total if total else 0.0
            report.completeness.append(
                {"feature": feature, "week": week, "total": total, "nulls": nulls, "completeness_pct": round(pct, 2)}
            )
            threshold = config.strict_null_threshold if week in config.strict_weeks else config.null_threshold
            if total and nulls / total > threshold:
                report.failures.append(
                    f"null_rate:{feature}:week{week}:{nulls}/{total} > {threshold:.0%}"
                )

    for name in report.zero_variance:
        report.failures.append(f"zero_variance:{name}")

    for row in cleaned.features:
        for name, value in row.values.items():
            if value is not None and not math.isfinite(value) and name not in report.non_finite:
                report.non_finite.append(name)
    for name in report.non_finite:
        report.failures.append(f"non_finite:{name}")

    if market_home_spreads is not None:
        report.sign_agreement, report.sign_agreement_n = sign_agreement(
            raw_features if raw_features is not None else cleaned.features,
            market_home_spreads,
            config.sign_feature,
        )
        if report.sign_agreement is not None and report.sign_agreement < config.sign_agreement_threshold:
            logger.warning(
                "Sign agreement %.1f%% below %.0f%% (diagnostic only)",
                100 * report.sign_agreement, 100 * config.sign_agreement_threshold,
            )
    return report
