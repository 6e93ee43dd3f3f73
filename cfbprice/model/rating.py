"""Season rating computation used by the calibration loop."""

from __future__ import annotations

import dataclasses
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

import numpy as np

from ..records import TeamGameEfficiency, TeamSeasonRating

INDEX_METRICS = ("epa", "sr", "explosiveness")


@dataclass(frozen=True)
class RatingParams:
    sos_weight: float = 0.05
    shrinkage_base: float = 0.25
    calibration_factor: float = 8.0
    games_weight: float = 0.3
    full_sample_games: int = 8

    def with_factor(self, factor: float) -> "RatingParams":
        return dataclasses.replace(self, calibration_factor=factor)


class RatingComputer(Protocol):
    """Anything that turns rating parameters into ``{team_id: rating}``."""

    def __call__(self, params: RatingParams) -> Dict[str, float]:
        ...


@dataclass(frozen=True)
class TeamIndexes:
    team_id: str
    offense: float
    defense: float
    games: int
    opponents: Tuple[str, ...] = ()

    @property
    def power(self) -> float:
        return self.offense + self.defense


def _zscore(values: Dict[str, float]) -> Dict[str, float]:
    if not values:
        return {}
    arr = np.asarray(list(values.values()), dtype=float)
    std = float(arr.std())
    if std <= 0:
        return {team: 0.0 for team in values}
    mean = float(arr.mean())
    return {team: (value - mean) / std for team, value in values.items()}


def season_indexes(
    rows: Iterable[TeamGameEfficiency],
    *,
    through_week: Optional[int] = None,
) -> Dict[str, TeamIndexes]:
    """Composite offense/defense indexes from season-average efficiency.

    Each metric is z-scored across teams; defense z-scores are negated so a
    higher index is always better. Null metrics are left out of a team's
    average rather than counted as zero.
    """

    per_team: Dict[str, List[TeamGameEfficiency]] = defaultdict(list)
    for row in rows:
        if through_week is not None and row.week > through_week:
            continue
        per_team[row.team_id].append(row)

    z_by_key: Dict[Tuple[str, str], Dict[str, float]] = {}
    for side in ("off", "def"):
        for metric in INDEX_METRICS:
            means = {}
            for team, games in per_team.items():
                present = [g.metric(side, metric) for g in games if g.metric(side, metric) is not None]
                if present:
                    means[team] = float(np.mean(present))
            z_by_key[(side, metric)] = _zscore(means)

    indexes: Dict[str, TeamIndexes] = {}
    for team, games in per_team.items():
        off = [z_by_key[("off", m)][team] for m in INDEX_METRICS if team in z_by_key[("off", m)]]
        dfn = [-z_by_key[("def", m)][team] for m in INDEX_METRICS if team in z_by_key[("def", m)]]
        indexes[team] = TeamIndexes(
            team_id=team,
            offense=float(np.mean(off)) if off else 0.0,
            defense=float(np.mean(dfn)) if dfn else 0.0,
            games=len(games),
            opponents=tuple(g.opponent_id for g in games),
        )
    return indexes


def shrinkage_factor(games: int, params: RatingParams) -> float:
    """Share of the rating pulled toward zero; larger for thin samples."""

    thin = max(0.0, 1.0 - games / float(params.full_sample_games))
    return min(1.0, params.shrinkage_base + thin * params.games_weight)


class EfficiencyRatingComputer:
    """Default :class:`RatingComputer` backed by season efficiency rows."""

    def __init__(self, rows: Iterable[TeamGameEfficiency], *, through_week: Optional[int] = None) -> None:
        self.indexes = season_indexes(rows, through_week=through_week)

    def __call__(self, params: RatingParams) -> Dict[str, float]:
        base = {team: idx.power for team, idx in self.indexes.items()}
        ratings: Dict[str, float] = {}
        for team, idx in self.indexes.items():
            opp_power = [base[o] for o in idx.opponents if o in base]
            sos = float(np.mean(opp_power)) if opp_power else 0.0
            adjusted = idx.power + params.sos_weight * sos
            kept = 1.0 - shrinkage_factor(idx.games, params)
            ratings[team] = adjusted * kept * params.calibration_factor
        return ratings

    def rating_rows(self, params: RatingParams, *, season: int, model_version: str) -> List[TeamSeasonRating]:
        ratings = self(params)
        rows = []
        for team, rating in sorted(ratings.items()):
            idx = self.indexes[team]
            scale = params.calibration_factor * (1.0 - shrinkage_factor(idx.games, params))
            rows.append(
                TeamSeasonRating(
                    season=season,
                    team_id=team,
                    model_version=model_version,
                    rating=rating,
                    offense=idx.offense * scale,
                    defense=idx.defense * scale,
                    games=idx.games,
                )
            )
        return rows
