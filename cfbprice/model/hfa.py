"""Team-specific home-field advantage via residuals and empirical-Bayes shrinkage."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from ..config import build_dataclass
from ..records import GameInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HFAConfig:
    default_hfa: float = 2.0
    prior_strength: float = 8.0
    min_hfa: float = 0.5
    max_hfa: float = 5.0
    league_mean_min: float = 1.0
    league_mean_max: float = 4.0
    league_outlier_abs: float = 20.0
    low_sample_threshold: int = 4
    low_sample_max_weight: float = 0.4
    min_games: int = 2
    outlier_abs: float = 8.0
    postseason_week: int = 15

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "HFAConfig":
        return build_dataclass(cls, values)


@dataclass(frozen=True)
class TeamResiduals:
    """Eligible residuals for one team, already oriented as home edge."""

    team_id: str
    home: Tuple[float, ...] = ()
    away: Tuple[float, ...] = ()
    skipped: int = 0

    @property
    def n_home(self) -> int:
        return len(self.home)

    @property
    def n_away(self) -> int:
        return len(self.away)

    @property
    def n_total(self) -> int:
        return self.n_home + self.n_away

    @property
    def raw(self) -> Optional[float]:
        """Game-count-weighted average of home and flipped away residuals."""

        if self.n_total == 0:
            return None
        home_mean = float(np.mean(self.home)) if self.home else 0.0
        away_mean = float(np.mean(self.away)) if self.away else 0.0
        return (self.n_home * home_mean + self.n_away * away_mean) / self.n_total


@dataclass(frozen=True)
class TeamHFA:
    team_id: str
    season: int
    raw: Optional[float]
    shrunk: float
    n_home: int
    n_away: int
    shrink_weight: float
    league_mean: float
    capped: bool = False
    low_sample: bool = False
    outlier: bool = False

    @property
    def n_total(self) -> int:
        return self.n_home + self.n_away


@dataclass
class SeasonHFA:
    season: int
    league_mean: float
    teams: Dict[str, TeamHFA] = field(default_factory=dict)
    skipped_games: int = 0
    skipped_teams: List[str] = field(default_factory=list)


def is_eligible(game: GameInfo, config: HFAConfig) -> bool:
    """Final, non-neutral, regular-season games with both scores."""

    if not game.completed or game.neutral_site:
        return False
    if game.week >= config.postseason_week or (game.season_type or "").lower() == "postseason":
        return False
    return game.home_margin is not None


def team_residuals(
    team_id: str,
    games: Iterable[GameInfo],
    ratings: Mapping[str, Optional[float]],
    config: Optional[HFAConfig] = None,
) -> TeamResiduals:
    """Collect residuals (observed minus expected margin) for ``team_id``.

    Expected margin is own minus opponent rating plus the default HFA at
    home (minus it away). Away residuals are sign-flipped so both sides read
    as "extra edge at home". Games with an unknown rating are skipped.
    """

    config = config or HFAConfig()
    own = ratings.get(team_id)
    home: List[float] = []
    away: List[float] = []
    skipped = 0
    for game in games:
        if team_id not in (game.home_team, game.away_team) or not is_eligible(game, config):
            continue
        at_home = game.home_team == team_id
        opponent = game.away_team if at_home else game.home_team
        opp_rating = ratings.get(opponent)
        if own is None or opp_rating is None:
            skipped += 1
            continue
        margin = game.home_margin if at_home else -game.home_margin  # type: ignore[operator]
        if at_home:
            expected = own - opp_rating + config.default_hfa
            home.append(margin - expected)
        else:
            expected = own - opp_rating - config.default_hfa
            away.append(-(margin - expected))
    return TeamResiduals(team_id, tuple(home), tuple(away), skipped)


def league_mean_hfa(raw_values: Iterable[Optional[float]], config: Optional[HFAConfig] = None) -> float:
    """Median raw HFA after dropping |value| > 20, clamped to [1, 4]."""

    config = config or HFAConfig()
    usable = [v for v in raw_values if v is not None and abs(v) <= config.league_outlier_abs]
    if not usable:
        return config.default_hfa
    median = float(np.median(usable))
    return float(np.clip(median, config.league_mean_min, config.league_mean_max))


def shrink_weight(n_total: int, config: Optional[HFAConfig] = None) -> float:
    config = config or HFAConfig()
    if n_total < config.min_games:
        return 0.0
    weight = n_total / (n_total + config.prior_strength)
    if n_total < config.low_sample_threshold:
        weight = min(weight, config.low_sample_max_weight)
    return weight


def shrink_hfa(
    residuals: TeamResiduals,
    season: int,
    league_mean: float,
    config: Optional[HFAConfig] = None,
) -> TeamHFA:
    config = config or HFAConfig()
    raw = residuals.raw
    n_total = residuals.n_total
    weight = shrink_weight(n_total, config)
    low_sample = n_total < config.low_sample_threshold
    outlier = raw is not None and abs(raw) > config.outlier_abs
    if n_total < config.min_games or raw is None:
        return TeamHFA(
            residuals.team_id, season, raw, league_mean, residuals.n_home, residuals.n_away,
            0.0, league_mean, capped=False, low_sample=low_sample, outlier=outlier,
        )
    blended = weight * raw + (1.0 - weight) * league_mean
    clamped = float(np.clip(blended, config.min_hfa, config.max_hfa))
    return TeamHFA(
        residuals.team_id, season, raw, clamped, residuals.n_home, residuals.n_away,
        weight, league_mean, capped=clamped != blended, low_sample=low_sample, outlier=outlier,
    )


def estimate_season_hfa(
    season: int,
    games: Iterable[GameInfo],
    ratings: Mapping[str, Optional[float]],
    config: Optional[HFAConfig] = None,
    teams: Optional[Iterable[str]] = None,
) -> SeasonHFA:
    """Estimate shrunk HFA for every team appearing in ``games``.

    Teams without a rating get no estimate and are listed in
    ``skipped_teams``.
    """

    config = config or HFAConfig()
    games = [g for g in games if g.season == season]
    if teams is None:
        teams = sorted({g.home_team for g in games} | {g.away_team for g in games})

    residuals: Dict[str, TeamResiduals] = {}
    skipped_teams: List[str] = []
    skipped_games = 0
    for team_id in teams:
        if ratings.get(team_id) is None:
            skipped_teams.append(team_id)
            continue
        result = team_residuals(team_id, games, ratings, config)
        skipped_games += result.skipped
        residuals[team_id] = result

    league_mean = league_mean_hfa((r.raw for r in residuals.values()), config)
    logger.info(
        "Season %s league HFA %.2f from %d teams (%d skipped)",
        season, league_mean, len(residuals), len(skipped_teams),
    )
    estimates = {
        team_id: shrink_hfa(result, season, league_mean, config)
        for team_id, result in residuals.items()
    }
    return SeasonHFA(season, league_mean, estimates, skipped_games, skipped_teams)
