"""Coarse ranker: cheap, stateless scoring over the whole filtered pool."""

from typing import Any

from estimation_service.contracts.candidate import Candidate
from estimation_service.contracts.ranking import TaskInput
from estimation_service.ranking.features import (
    CATEGORY_MATCH,
    DEFAULT_COARSE_WEIGHTS,
    DEFAULT_FEATURE_POLICY,
    HISTORICAL_QUALITY,
    JSON_SUPPORT,
    LANG_MATCH,
    PRICE_TIER,
    STYLE_MATCH,
    WINDOW_FIT,
    FeatureDefaults,
    PriceRange,
    RankedCandidate,
    estimate_tokens,
    linear_score,
    normalize,
)

DEFAULT_COARSE_TOP_K = 8


def _task_category(task: TaskInput, task_features: dict[str, Any] | None) -> str | None:
    if task_features:
        category = task_features.get("category")
        if isinstance(category, str) and category:
            return category
    return task.category


def compute_coarse_features(
    candidate: Candidate,
    task: TaskInput,
    task_features: dict[str, Any] | None = None,
    price_range: PriceRange = PriceRange(),
    policy: FeatureDefaults = DEFAULT_FEATURE_POLICY,
) -> dict[str, float]:
    """Build the coarse feature vector for one candidate."""
    features: dict[str, float] = {}

    features[LANG_MATCH] = 1.0 if task.language in candidate.languages else 0.0

    category = _task_category(task, task_features)
    candidate_categories = candidate.static_capability.categories
    if category and category in candidate_categories:
        features[CATEGORY_MATCH] = 1.0
    else:
        features[CATEGORY_MATCH] = policy.category_match

    strength_tags = set(candidate.static_capability.strength_tags)
    if task.style_tags and strength_tags:
        overlap = sum(1 for tag in task.style_tags if tag in strength_tags)
        features[STYLE_MATCH] = overlap / len(task.style_tags)
    else:
        features[STYLE_MATCH] = policy.style_match

    if candidate.max_context >= estimate_tokens(task):
        features[WINDOW_FIT] = 1.0
    else:
        features[WINDOW_FIT] = policy.window_fit_insufficient

    features[JSON_SUPPORT] = 1.0 if candidate.capabilities.json_mode else 0.0

    features[PRICE_TIER] = 1.0 - normalize(candidate.unit_price, price_range.min, price_range.max)

    quality = candidate.dynamic_metrics.quality_score
    features[HISTORICAL_QUALITY] = quality if quality is not None else policy.historical_quality

    return features


def coarse_rank(
    candidates: list[Candidate],
    task: TaskInput,
    task_features: dict[str, Any] | None = None,
    weights: dict[str, float] | None = None,
    top_k: int = DEFAULT_COARSE_TOP_K,
    price_range: PriceRange = PriceRange(),
    policy: FeatureDefaults = DEFAULT_FEATURE_POLICY,
) -> list[RankedCandidate]:
    """
    Score every candidate and keep the top_k.

    Sorted by descending score; the sort is stable so ties keep pool order.
    """
    if top_k < 1:
        raise ValueError("top_k must be >= 1")
    active_weights = weights if weights is not None else DEFAULT_COARSE_WEIGHTS

    scored = []
    for index, candidate in enumerate(candidates):
        features = compute_coarse_features(candidate, task, task_features, price_range, policy)
        scored.append(
            RankedCandidate(
                candidate=candidate,
                pool_index=index,
                coarse_score=linear_score(features, active_weights),
                features=features,
            )
        )

    scored.sort(key=lambda r: -r.coarse_score)
    return scored[:top_k]
