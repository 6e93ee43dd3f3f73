"""Opponent-adjusted efficiency features with recency EWMAs and context flags."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..config import build_dataclass
from ..names import TeamDirectory
from ..records import METRICS, TeamGameAdjustedFeature, TeamGameEfficiency, TeamPrior
from .sequence import SeasonLedger, TeamSequence, recent_first

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureConfig:
    ewma_3_weights: Tuple[float, ...] = (0.6, 0.3, 0.1)
    ewma_5_weights: Tuple[float, ...] = (0.4, 0.3, 0.15, 0.1, 0.05)
    ewma_metrics: Tuple[str, ...] = ("off_adj_epa", "def_adj_epa", "off_adj_sr", "def_adj_sr")
    # Talent z-score → adjusted-net units, per EWMA metric.
    ewma_prior_scale: Dict[str, float] = field(
        default_factory=lambda: {
            "off_adj_epa": 0.05,
            "def_adj_epa": 0.05,
            "off_adj_sr": 0.02,
            "def_adj_sr": 0.02,
        }
    )
    bye_week_days: float = 10.0

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "FeatureConfig":
        return build_dataclass(cls, values)


def adjusted_feature_names() -> List[str]:
    names: List[str] = []
    for metric in METRICS:
        names.extend([f"off_adj_{metric}", f"def_adj_{metric}", f"edge_{metric}"])
    return names


def ewma_feature_names(config: Optional[FeatureConfig] = None) -> List[str]:
    config = config or FeatureConfig()
    names: List[str] = []
    for window in (3, 5):
        names.extend(f"ewma{window}_{metric}" for metric in config.ewma_metrics)
    return names


def _minus(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None or b is None:
        return None
    return a - b


def adjusted_nets(row: TeamGameEfficiency, opponent: TeamSequence) -> Dict[str, Optional[float]]:
    """Adjusted offense/defense nets and edges for one team-game.

    Opponent inputs are the opponent's averages over weeks before
    ``row.week``; the same-game opponent row is never consulted.
    """

    values: Dict[str, Optional[float]] = {}
    for metric in METRICS:
        opp_def = opponent.season_to_date(row.week, "def", metric)
        opp_off = opponent.season_to_date(row.week, "off", metric)
        off_adj = _minus(row.metric("off", metric), opp_def)
        team_def = row.metric("def", metric)
        def_adj = None if team_def is None or opp_off is None else -(team_def + opp_off)
        values[f"off_adj_{metric}"] = off_adj
        values[f"def_adj_{metric}"] = def_adj
        values[f"edge_{metric}"] = _minus(off_adj, def_adj)
    return values


def ewma_with_prior(
    values: Sequence[Optional[float]],
    weights: Sequence[float],
    prior: float,
) -> float:
    """Weighted average of most-recent-first ``values``.

    Weight on missing slots (too few games, or a null value) goes to
    ``prior`` so the result is always defined.
    """

    total_weight = float(sum(weights))
    if total_weight <= 0:
        return prior
    acc = 0.0
    used = 0.0
    for weight, value in zip(weights, values):
        if value is None:
            continue
        acc += weight * value
        used += weight
    acc += (total_weight - used) * prior
    return acc / total_weight


def talent_z_scores(priors: Mapping[str, TeamPrior]) -> Dict[str, float]:
    talents = {team: p.talent for team, p in priors.items() if p.talent is not None}
    if not talents:
        return {}
    arr = np.asarray(list(talents.values()), dtype=float)
    std = float(arr.std())
    mean = float(arr.mean())
    if std <= 0:
        return {team: 0.0 for team in talents}
    return {team: (value - mean) / std for team, value in talents.items()}


class FeatureEngine:
    """Build :class:`TeamGameAdjustedFeature` rows for one season.

    Parameters
    ----------
    rows :
        Efficiency rows for the whole season to date. Rows after the target
        weeks may be present; slicing keeps them out of every statistic.
    priors :
        Preseason priors keyed by team id (talent drives the EWMA prior).
    directory :
        Optional team directory supplying conference and tier flags.
    """

    def __init__(
        self,
        rows: Iterable[TeamGameEfficiency],
        *,
        priors: Optional[Mapping[str, TeamPrior]] = None,
        directory: Optional[TeamDirectory] = None,
        config: Optional[FeatureConfig] = None,
    ) -> None:
        self.ledger = SeasonLedger(rows)
        self.priors = dict(priors or {})
        self.directory = directory
        self.config = config or FeatureConfig()
        self._talent_z = talent_z_scores(self.priors)
        self._nets: Dict[Tuple[str, str], Dict[str, Optional[float]]] = {}

    def nets_for(self, row: TeamGameEfficiency) -> Dict[str, Optional[float]]:
        key = (row.game_id, row.team_id)
        if key not in self._nets:
            opponent = self.ledger.team(row.season, row.opponent_id)
            self._nets[key] = adjusted_nets(row, opponent)
        return self._nets[key]

    def prior_for(self, team_id: str, metric: str) -> float:
        scale = self.config.ewma_prior_scale.get(metric, 0.0)
        return self._talent_z.get(team_id, 0.0) * scale

    def recency(self, row: TeamGameEfficiency) -> Tuple[Dict[str, float], bool, bool]:
        sequence = self.ledger.team(row.season, row.team_id)
        prior_rows = sequence.before_week(row.week)
        values: Dict[str, float] = {}
        for window, weights in ((3, self.config.ewma_3_weights), (5, self.config.ewma_5_weights)):
            recent = recent_first(prior_rows, len(weights))
            for metric in self.config.ewma_metrics:
                series = [self.nets_for(prev).get(metric) for prev in recent]
                values[f"ewma{window}_{metric}"] = ewma_with_prior(
                    series, weights, self.prior_for(row.team_id, metric)
                )
        n_prior = len(prior_rows)
        return values, n_prior < len(self.config.ewma_3_weights), n_prior < len(self.config.ewma_5_weights)

    def context(self, row: TeamGameEfficiency) -> Dict[str, Any]:
        sequence = self.ledger.team(row.season, row.team_id)
        previous = sequence.previous(row.game_id)
        rest_days: Optional[float] = None
        if previous is not None and previous.game_date and row.game_date:
            rest_days = (row.game_date - previous.game_date).total_seconds() / 86400.0
        flags: Dict[str, Any] = {
            "is_home": row.is_home,
            "neutral_site": bool(row.neutral_site),
            "rest_days": rest_days,
            "bye_week": rest_days is not None and rest_days > self.config.bye_week_days,
            "conference_game": None,
        }
        if self.directory is not None:
            info = self.directory.get(row.team_id)
            own_conf = self.directory.conference(row.team_id)
            opp_conf = self.directory.conference(row.opponent_id)
            if own_conf and opp_conf:
                flags["conference_game"] = own_conf == opp_conf
            if info is not None:
                flags.update(is_fbs=info.is_fbs, is_p5=info.is_p5, is_g5=info.is_g5, is_fcs=info.is_fcs)
        return flags

    def build_row(self, row: TeamGameEfficiency, version: str) -> TeamGameAdjustedFeature:
        values: Dict[str, Optional[float]] = dict(self.nets_for(row))
        ewmas, low3, low5 = self.recency(row)
        values.update(ewmas)
        return TeamGameAdjustedFeature(
            game_id=row.game_id,
            team_id=row.team_id,
            feature_version=version,
            season=row.season,
            week=row.week,
            opponent_id=row.opponent_id,
            values=values,
            low_sample_3g=low3,
            low_sample_5g=low5,
            **self.context(row),
        )

    def build(self, weeks: Optional[Iterable[int]] = None, *, version: str = "") -> List[TeamGameAdjustedFeature]:
        wanted = set(weeks) if weeks is not None else None
        features = [
            self.build_row(row, version)
            for row in self.ledger.rows()
            if wanted is None or row.week in wanted
        ]
        logger.info("Built %d feature rows (version=%s)", len(features), version or "-")
        return features
