"""Convenience exports for the standings simulator package."""

from .errors import (
    InvalidConfigurationError,
    MissingFeatureError,
    MissingInputError,
    PremStandingsError,
    StrengthConsistencyError,
)
from .simulator import (
    build_fixtures,
    estimate_strengths,
    expected_points_table,
    match_outcome_probs,
    plan_season,
    probability_summary,
    simulate_batch,
    simulate_match,
    simulate_season,
    simulate_standings,
    DEFAULT_HOME_ADVANTAGE,
    DEFAULT_SIMULATIONS,
)
from .features import build_features, load_team_stats

__all__ = [
    "build_fixtures",
    "estimate_strengths",
    "expected_points_table",
    "match_outcome_probs",
    "plan_season",
    "probability_summary",
    "simulate_batch",
    "simulate_match",
    "simulate_season",
    "simulate_standings",
    "build_features",
    "load_team_stats",
    "DEFAULT_HOME_ADVANTAGE",
    "DEFAULT_SIMULATIONS",
    "PremStandingsError",
    "MissingFeatureError",
    "InvalidConfigurationError",
    "StrengthConsistencyError",
    "MissingInputError",
]
