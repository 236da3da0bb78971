"""Rolling segment metrics built from outcomes joined to their decisions."""

import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable

from estimation_service.contracts.decision import Decision, Outcome
from estimation_service.contracts.metrics import DecisionStats, SegmentMetrics
from estimation_service.logging_config import get_logger
from estimation_service.services.decision_store import DecisionStore

logger = get_logger(__name__)

RollupKey = tuple[str, str | None]


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


def summarize(
    segment_key: str,
    outcomes: list[Outcome],
    candidate_id: str | None = None,
    computed_at: datetime | None = None,
) -> SegmentMetrics:
    """
    Collapse outcomes into one SegmentMetrics row.

    Means skip missing values; rejection rate is over every outcome.
    An empty list yields sample_count=0 with every statistic unset.
    """
    stamp = computed_at or datetime.now(timezone.utc)
    if not outcomes:
        return SegmentMetrics(
            segment_key=segment_key, candidate_id=candidate_id, sample_count=0, computed_at=stamp
        )

    qualities = [o.quality_score for o in outcomes if o.quality_score is not None]
    edits = [o.edit_distance for o in outcomes if o.edit_distance is not None]
    costs = [o.cost_actual for o in outcomes if o.cost_actual is not None]
    latencies = [o.latency_ms for o in outcomes if o.latency_ms is not None]
    rejected = sum(1 for o in outcomes if o.rejected)

    return SegmentMetrics(
        segment_key=segment_key,
        candidate_id=candidate_id,
        quality_score=_mean(qualities),
        edit_rate=_mean(edits),
        rejection_rate=rejected / len(outcomes),
        avg_cost=_mean(costs),
        avg_latency=_mean(latencies),
        sample_count=len(outcomes),
        latest_recorded_at=max(o.recorded_at for o in outcomes),
        computed_at=stamp,
    )


class SegmentMetricsAggregator:
    """
    Materialized rollups per segment and per (candidate, segment).

    refresh() rebuilds every rollup in one pass over the trailing window and
    is driven by the maintenance runner. Reads serve the rollup when it is
    younger than max_staleness_s and compute on demand otherwise.
    """

    def __init__(
        self,
        decision_store: DecisionStore,
        window_hours: float = 24.0,
        max_staleness_s: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        if window_hours <= 0:
            raise ValueError("window_hours must be > 0")
        self._store = decision_store
        self.window = timedelta(hours=window_hours)
        self.max_staleness = timedelta(seconds=max_staleness_s)
        self._clock = clock
        self._rollups: dict[RollupKey, SegmentMetrics] = {}
        self._lock = threading.Lock()

    def compute(self, segment_key: str, candidate_id: str | None = None) -> SegmentMetrics:
        """Aggregate straight from the decision store, bypassing rollups."""
        now = self._now()
        pairs = self._store.list_outcomes_since(now - self.window, segment_key, candidate_id)
        return summarize(segment_key, [o for _, o in pairs], candidate_id, computed_at=now)

    def get_segment(self, segment_key: str) -> SegmentMetrics | None:
        """Segment-wide metrics, or None when the window has no outcomes."""
        return self._get((segment_key, None))

    def get_candidate(self, candidate_id: str, segment_key: str) -> SegmentMetrics | None:
        """Metrics for outcomes of decisions that chose candidate_id in the segment."""
        return self._get((segment_key, candidate_id))

    def invalidate(self, segment_key: str, candidate_id: str | None = None) -> None:
        """Drop rollups so the next read recomputes. Cheap; no aggregation happens here."""
        with self._lock:
            self._rollups.pop((segment_key, None), None)
            if candidate_id is not None:
                self._rollups.pop((segment_key, candidate_id), None)

    def refresh(self) -> dict[str, SegmentMetrics]:
        """
        Rebuild all rollups over the trailing window.

        Returns:
            Segment-level metrics keyed by segment key
        """
        now = self._now()
        pairs = self._store.list_outcomes_since(now - self.window)

        grouped: dict[RollupKey, list[Outcome]] = defaultdict(list)
        for decision, outcome in pairs:
            grouped[(decision.segment_key, None)].append(outcome)
            grouped[(decision.segment_key, decision.chosen_candidate_id)].append(outcome)

        rollups = {
            key: summarize(key[0], outcomes, key[1], computed_at=now)
            for key, outcomes in grouped.items()
        }
        with self._lock:
            self._rollups = rollups

        segments = {key[0]: m for key, m in rollups.items() if key[1] is None}
        logger.info("segment_metrics_refreshed", segments=len(segments), rollups=len(rollups))
        return segments

    def decision_stats(self, segment_key: str | None = None) -> DecisionStats:
        """Explore share, fallback rate and degraded rate over the window."""
        decisions = self._store.list_decisions_since(self._now() - self.window, segment_key)
        return _decision_stats(decisions, segment_key)

    def aggregate_by_segment(self, days: float = 1) -> list[SegmentMetrics]:
        """One SegmentMetrics per segment with outcomes in the last `days`."""
        now = self._now()
        pairs = self._store.list_outcomes_since(now - timedelta(days=days))
        grouped: dict[str, list[Outcome]] = defaultdict(list)
        for decision, outcome in pairs:
            grouped[decision.segment_key].append(outcome)
        return [
            summarize(segment_key, outcomes, computed_at=now)
            for segment_key, outcomes in sorted(grouped.items())
        ]

    def _get(self, key: RollupKey) -> SegmentMetrics | None:
        with self._lock:
            cached = self._rollups.get(key)
        if cached is None or self._now() - cached.computed_at > self.max_staleness:
            cached = self.compute(key[0], key[1])
            with self._lock:
                self._rollups[key] = cached
        return cached if cached.sample_count > 0 else None

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)


def _decision_stats(decisions: list[Decision], segment_key: str | None) -> DecisionStats:
    total = len(decisions)
    if total == 0:
        return DecisionStats(segment_key=segment_key)
    return DecisionStats(
        segment_key=segment_key,
        total_decisions=total,
        explore_share=sum(1 for d in decisions if d.explore) / total,
        fallback_rate=sum(1 for d in decisions if d.fallback_used) / total,
        degraded_rate=sum(1 for d in decisions if d.degraded) / total,
    )
