"""
Feature vocabulary, default-value policy and scoring primitives.

Every feature is normalized into [0, 1]. Values used when an input is
unknown live in FeatureDefaults so they can be audited in one place.
"""

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict

from estimation_service.contracts.candidate import Candidate
from estimation_service.contracts.metrics import SegmentMetrics
from estimation_service.contracts.ranking import TaskInput

LANG_MATCH = "lang_match"
CATEGORY_MATCH = "category_match"
STYLE_MATCH = "style_match"
WINDOW_FIT = "window_fit"
JSON_SUPPORT = "json_support"
PRICE_TIER = "price_tier"
HISTORICAL_QUALITY = "historical_quality"

SEGMENT_QUALITY = "segment_quality"
SEGMENT_LATENCY = "segment_latency"
SEGMENT_COST = "segment_cost"
RECENT_STABILITY = "recent_stability"

COARSE_FEATURES = (
    LANG_MATCH,
    CATEGORY_MATCH,
    STYLE_MATCH,
    WINDOW_FIT,
    JSON_SUPPORT,
    PRICE_TIER,
    HISTORICAL_QUALITY,
)
FINE_FEATURES = COARSE_FEATURES + (
    SEGMENT_QUALITY,
    SEGMENT_LATENCY,
    SEGMENT_COST,
    RECENT_STABILITY,
)

DEFAULT_COARSE_WEIGHTS: dict[str, float] = {
    LANG_MATCH: 1.0,
    CATEGORY_MATCH: 0.8,
    STYLE_MATCH: 0.6,
    WINDOW_FIT: 0.5,
    JSON_SUPPORT: 0.4,
    PRICE_TIER: 0.3,
    HISTORICAL_QUALITY: 0.7,
}

DEFAULT_FINE_WEIGHTS: dict[str, float] = {
    **DEFAULT_COARSE_WEIGHTS,
    SEGMENT_QUALITY: 1.0,
    SEGMENT_LATENCY: 0.6,
    SEGMENT_COST: 0.5,
    RECENT_STABILITY: 0.8,
}

# Estimated prompt+completion tokens per length hint.
TOKENS_BY_LENGTH_HINT = {"short": 1000, "medium": 2000, "long": 4000}
DEFAULT_ESTIMATED_TOKENS = 2000
DEFAULT_EXPECTED_LATENCY_MS = 3000.0

LATENCY_RANGE_MS = (1000.0, 10000.0)
COST_RANGE_USD = (0.001, 0.5)


class FeatureDefaults(BaseModel):
    """Values substituted when the evidence for a feature is missing."""

    model_config = ConfigDict(frozen=True)

    category_match: float = 0.5
    style_match: float = 0.5
    window_fit_insufficient: float = 0.5
    historical_quality: float = 0.7
    segment_quality: float = 0.7
    segment_latency: float = 0.5
    segment_cost: float = 0.5
    recent_stability: float = 0.8


DEFAULT_FEATURE_POLICY = FeatureDefaults()


@dataclass(frozen=True)
class PriceRange:
    min: float = 0.001
    max: float = 0.1


@dataclass
class RankedCandidate:
    """Scoring result threaded through coarse, fine and explore stages."""

    candidate: Candidate
    pool_index: int
    coarse_score: float
    features: dict[str, float] = field(default_factory=dict)
    fine_score: float | None = None
    metrics: SegmentMetrics | None = None
    metrics_degraded: bool = False

    @property
    def final_score(self) -> float:
        return self.fine_score if self.fine_score is not None else self.coarse_score


def normalize(value: float, low: float, high: float) -> float:
    """Scale into [0, 1]; degenerate ranges map to 0."""
    if high <= low:
        return 0.0
    return max(0.0, min(1.0, (value - low) / (high - low)))


def linear_score(features: dict[str, float], weights: dict[str, float]) -> float:
    """Weighted mean of features over the weight keys."""
    total_weight = sum(weights.values())
    if total_weight <= 0:
        return 0.0
    score = sum(w * features.get(name, 0.0) for name, w in weights.items())
    return score / total_weight


def estimate_tokens(task: TaskInput) -> int:
    if task.length_hint is None:
        return DEFAULT_ESTIMATED_TOKENS
    return TOKENS_BY_LENGTH_HINT[task.length_hint]


def estimate_cost(candidate: Candidate, task: TaskInput) -> float:
    """Expected USD for one call, from unit price per 1k tokens."""
    return candidate.unit_price * estimate_tokens(task) / 1000.0


def estimate_latency(candidate: Candidate, metrics: SegmentMetrics | None = None) -> float:
    if metrics is not None and metrics.avg_latency is not None:
        return metrics.avg_latency
    if candidate.dynamic_metrics.avg_latency_ms is not None:
        return candidate.dynamic_metrics.avg_latency_ms
    return DEFAULT_EXPECTED_LATENCY_MS
