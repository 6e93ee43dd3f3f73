"""Opponent-adjusted feature engineering."""

from __future__ import annotations

from .engine import FeatureConfig, FeatureEngine, adjusted_nets, ewma_with_prior
from .hygiene import (
    FeatureGateReport,
    HygieneConfig,
    HygieneResult,
    apply_hygiene,
    evaluate_feature_gates,
    winsor_bounds,
)
from .sequence import SeasonLedger, SequenceKey, TeamSequence

__all__ = [
    "FeatureConfig",
    "FeatureEngine",
    "FeatureGateReport",
    "HygieneConfig",
    "HygieneResult",
    "SeasonLedger",
    "SequenceKey",
    "TeamSequence",
    "adjusted_nets",
    "apply_hygiene",
    "evaluate_feature_gates",
    "ewma_with_prior",
    "winsor_bounds",
]
