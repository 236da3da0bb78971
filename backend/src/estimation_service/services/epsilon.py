"""Per-segment exploration rate with idempotent adaptation."""

import threading
from datetime import datetime

from estimation_service.contracts.metrics import SegmentMetrics
from estimation_service.logging_config import get_logger
from estimation_service.ranking.explore import ExploreConfig, adapt_epsilon

logger = get_logger(__name__)


class EpsilonController:
    """
    Holds epsilon per segment key.

    adapt() applies the evidence behind a segment snapshot at most once. The
    controller remembers the evidence_key and computed_at of the last applied
    snapshot; a recomputation over the same outcomes, or an older snapshot,
    leaves epsilon unchanged.
    """

    def __init__(self, config: ExploreConfig | None = None):
        self.config = config or ExploreConfig()
        self._epsilons: dict[str, float] = {}
        self._applied_at: dict[str, datetime] = {}
        self._applied_evidence: dict[str, tuple[int, datetime | None]] = {}
        self._lock = threading.Lock()

    def get(self, segment_key: str) -> float:
        with self._lock:
            return self._epsilons.get(segment_key, self.config.clamp(self.config.epsilon))

    def set(self, segment_key: str, epsilon: float) -> float:
        clamped = self.config.clamp(epsilon)
        with self._lock:
            self._epsilons[segment_key] = clamped
        return clamped

    def adapt(self, segment_key: str, metrics: SegmentMetrics | None) -> float:
        """Fold a segment snapshot into epsilon. Returns the resulting value."""
        with self._lock:
            current = self._epsilons.get(segment_key, self.config.clamp(self.config.epsilon))
            if metrics is None:
                return current
            last_applied = self._applied_at.get(segment_key)
            if last_applied is not None and metrics.computed_at <= last_applied:
                return current
            if self._applied_evidence.get(segment_key) == metrics.evidence_key:
                return current

            updated = adapt_epsilon(current, metrics, self.config)
            self._epsilons[segment_key] = updated
            self._applied_at[segment_key] = metrics.computed_at
            self._applied_evidence[segment_key] = metrics.evidence_key

        if updated != current:
            logger.info(
                "epsilon_adapted",
                segment_key=segment_key,
                previous=round(current, 4),
                epsilon=round(updated, 4),
                quality_score=metrics.quality_score,
            )
        return updated

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return dict(self._epsilons)
