"""Model-level helpers: HFA, ratings and market calibration."""

from .calibration import (
    CalibrationConfig,
    CalibrationEngine,
    CalibrationState,
    DatasetSpec,
    GateThresholds,
    GridSpec,
    MarketGame,
    RescaleConfig,
    RescaleMachine,
    build_market_games,
    decide,
)
from .hfa import HFAConfig, SeasonHFA, TeamHFA, estimate_season_hfa, league_mean_hfa, shrink_hfa, team_residuals
from .rating import EfficiencyRatingComputer, RatingComputer, RatingParams
from .regression import OLSFit, fit_baseline_ols, residual_buckets, select_elastic_net

__all__ = [
    "CalibrationConfig",
    "CalibrationEngine",
    "CalibrationState",
    "DatasetSpec",
    "EfficiencyRatingComputer",
    "GateThresholds",
    "GridSpec",
    "HFAConfig",
    "MarketGame",
    "OLSFit",
    "RatingComputer",
    "RatingParams",
    "RescaleConfig",
    "RescaleMachine",
    "SeasonHFA",
    "TeamHFA",
    "build_market_games",
    "decide",
    "estimate_season_hfa",
    "fit_baseline_ols",
    "league_mean_hfa",
    "residual_buckets",
    "select_elastic_net",
    "shrink_hfa",
    "team_residuals",
]
