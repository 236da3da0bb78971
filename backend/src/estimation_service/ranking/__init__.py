"""Ranking stages: hard filters, coarse, fine and explore."""

from estimation_service.ranking.coarse import coarse_rank, compute_coarse_features
from estimation_service.ranking.explore import (
    ExploreConfig,
    ExploreDecision,
    ExplorePolicy,
    adapt_epsilon,
    should_force_off,
)
from estimation_service.ranking.features import (
    DEFAULT_COARSE_WEIGHTS,
    DEFAULT_FEATURE_POLICY,
    DEFAULT_FINE_WEIGHTS,
    FeatureDefaults,
    PriceRange,
    RankedCandidate,
    estimate_cost,
    estimate_latency,
)
from estimation_service.ranking.filters import FilterReasons, apply_hard_filters, filter_reason
from estimation_service.ranking.fine import FineRanker, FineRankTimeout, compute_fine_features

__all__ = [
    "DEFAULT_COARSE_WEIGHTS",
    "DEFAULT_FEATURE_POLICY",
    "DEFAULT_FINE_WEIGHTS",
    "ExploreConfig",
    "ExploreDecision",
    "ExplorePolicy",
    "FeatureDefaults",
    "FilterReasons",
    "FineRankTimeout",
    "FineRanker",
    "PriceRange",
    "RankedCandidate",
    "adapt_epsilon",
    "apply_hard_filters",
    "coarse_rank",
    "compute_coarse_features",
    "compute_fine_features",
    "estimate_cost",
    "estimate_latency",
    "filter_reason",
    "should_force_off",
]
