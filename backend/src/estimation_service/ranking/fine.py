"""Fine ranker: re-scores coarse survivors with per-segment outcome metrics."""

from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Protocol

from estimation_service.contracts.metrics import SegmentMetrics
from estimation_service.logging_config import get_logger
from estimation_service.ranking.features import (
    COST_RANGE_USD,
    DEFAULT_FEATURE_POLICY,
    DEFAULT_FINE_WEIGHTS,
    LATENCY_RANGE_MS,
    RECENT_STABILITY,
    SEGMENT_COST,
    SEGMENT_LATENCY,
    SEGMENT_QUALITY,
    FeatureDefaults,
    RankedCandidate,
    linear_score,
    normalize,
)

logger = get_logger(__name__)


class CandidateMetricsSource(Protocol):
    def get_candidate(self, candidate_id: str, segment_key: str) -> SegmentMetrics | None: ...


class FineRankTimeout(TimeoutError):
    """Fine scoring did not finish inside the remaining request budget."""


def compute_fine_features(
    ranked: RankedCandidate,
    metrics: SegmentMetrics | None,
    policy: FeatureDefaults = DEFAULT_FEATURE_POLICY,
) -> dict[str, float]:
    """Extend the coarse feature vector with segment evidence."""
    features = dict(ranked.features)

    if metrics is not None and metrics.quality_score is not None:
        features[SEGMENT_QUALITY] = metrics.quality_score
    else:
        features[SEGMENT_QUALITY] = policy.segment_quality

    if metrics is not None and metrics.avg_latency is not None:
        features[SEGMENT_LATENCY] = 1.0 - normalize(metrics.avg_latency, *LATENCY_RANGE_MS)
    else:
        features[SEGMENT_LATENCY] = policy.segment_latency

    if metrics is not None and metrics.avg_cost is not None:
        features[SEGMENT_COST] = 1.0 - normalize(metrics.avg_cost, *COST_RANGE_USD)
    else:
        features[SEGMENT_COST] = policy.segment_cost

    stability = ranked.candidate.dynamic_metrics.stability_score
    features[RECENT_STABILITY] = stability if stability is not None else policy.recent_stability

    return features


def fine_sort_key(ranked: RankedCandidate) -> tuple[float, float, int]:
    """Descending fine score, then descending coarse score, then pool order."""
    return (-(ranked.fine_score or 0.0), -ranked.coarse_score, ranked.pool_index)


class FineRanker:
    """Metrics-enriched re-rank of the coarse top-K.

    Each candidate is scored independently on its own worker; the merge
    sorts deterministically so concurrency never changes the ordering.
    """

    def __init__(
        self,
        metrics_source: CandidateMetricsSource,
        weights: dict[str, float] | None = None,
        policy: FeatureDefaults = DEFAULT_FEATURE_POLICY,
    ):
        self.metrics_source = metrics_source
        self.weights = weights if weights is not None else DEFAULT_FINE_WEIGHTS
        self.policy = policy

    def rank(
        self,
        coarse_results: list[RankedCandidate],
        segment_key: str,
        timeout_s: float | None = None,
    ) -> list[RankedCandidate]:
        """
        Re-score coarse results for a segment.

        Args:
            coarse_results: Output of coarse_rank
            segment_key: Metrics bucket for the request
            timeout_s: Remaining request budget; None waits indefinitely

        Returns:
            New RankedCandidate list ordered by fine score

        Raises:
            FineRankTimeout: when scoring does not finish within timeout_s
        """
        if not coarse_results:
            return []

        executor = ThreadPoolExecutor(
            max_workers=len(coarse_results),
            thread_name_prefix="fine-rank",
        )
        try:
            futures = [
                executor.submit(self._score_one, ranked, segment_key) for ranked in coarse_results
            ]
            done, pending = wait(futures, timeout=timeout_s, return_when=FIRST_EXCEPTION)
            if pending:
                for future in pending:
                    future.cancel()
                raise FineRankTimeout(
                    f"Fine ranking exceeded budget with {len(pending)} candidates pending"
                )
            results = [future.result() for future in futures]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results.sort(key=fine_sort_key)
        return results

    def _score_one(self, ranked: RankedCandidate, segment_key: str) -> RankedCandidate:
        metrics: SegmentMetrics | None = None
        degraded = False
        try:
            metrics = self.metrics_source.get_candidate(ranked.candidate.id, segment_key)
        except Exception as e:
            # One candidate's metrics failing degrades only that candidate
            degraded = True
            logger.warning(
                "segment_metrics_lookup_failed",
                candidate_id=ranked.candidate.id,
                segment_key=segment_key,
                error_type=type(e).__name__,
            )

        features = compute_fine_features(ranked, metrics, self.policy)
        return RankedCandidate(
            candidate=ranked.candidate,
            pool_index=ranked.pool_index,
            coarse_score=ranked.coarse_score,
            features=features,
            fine_score=linear_score(features, self.weights),
            metrics=metrics,
            metrics_degraded=degraded,
        )
