"""Epsilon-greedy exploration over the top of the fine ranking."""

import random
from dataclasses import dataclass

from estimation_service.contracts.metrics import SegmentMetrics
from estimation_service.ranking.features import RankedCandidate

DEFAULT_EPSILON = 0.10
EPSILON_MIN = 0.05
EPSILON_MAX = 0.20
QUALITY_FLOOR = 0.6
REJECTION_CEILING = 0.2

# Exploration only reaches ranks 2..EXPLORE_WINDOW.
EXPLORE_WINDOW = 3


@dataclass(frozen=True)
class ExploreConfig:
    epsilon: float = DEFAULT_EPSILON
    epsilon_min: float = EPSILON_MIN
    epsilon_max: float = EPSILON_MAX
    quality_floor: float = QUALITY_FLOOR
    rejection_ceiling: float = REJECTION_CEILING

    def __post_init__(self) -> None:
        if not 0.0 <= self.epsilon_min <= self.epsilon_max <= 1.0:
            raise ValueError("epsilon bounds must satisfy 0 <= min <= max <= 1")

    def clamp(self, epsilon: float) -> float:
        return max(self.epsilon_min, min(epsilon, self.epsilon_max))


@dataclass(frozen=True)
class ExploreDecision:
    """Index into the ranked list plus how it was reached."""

    index: int
    explore: bool
    forced_off: bool = False
    epsilon: float = 0.0


def should_force_off(metrics: SegmentMetrics | None, config: ExploreConfig) -> bool:
    """Quality and rejection guards; missing evidence never forces off."""
    if metrics is None:
        return False
    if metrics.quality_score is not None and metrics.quality_score < config.quality_floor:
        return True
    if metrics.rejection_rate is not None and metrics.rejection_rate > config.rejection_ceiling:
        return True
    return False


class ExplorePolicy:
    def __init__(self, config: ExploreConfig | None = None, rng: random.Random | None = None):
        self.config = config or ExploreConfig()
        self._rng = rng or random.Random()

    def choose(
        self,
        ranked: list[RankedCandidate],
        epsilon: float | None = None,
        segment_metrics: SegmentMetrics | None = None,
    ) -> ExploreDecision:
        """
        Pick the index to serve.

        Args:
            ranked: Fine-ranked candidates, best first
            epsilon: Segment epsilon; clamped to the configured bounds
            segment_metrics: Segment-level evidence for the force-off guards

        Returns:
            ExploreDecision; index 0 unless exploration fired
        """
        if not ranked:
            raise ValueError("Cannot choose from an empty ranking")

        effective = self.config.clamp(self.config.epsilon if epsilon is None else epsilon)

        if should_force_off(segment_metrics, self.config):
            return ExploreDecision(index=0, explore=False, forced_off=True, epsilon=effective)

        if len(ranked) < 2 or self._rng.random() >= effective:
            return ExploreDecision(index=0, explore=False, epsilon=effective)

        upper = min(len(ranked), EXPLORE_WINDOW)
        index = self._rng.randint(1, upper - 1)
        return ExploreDecision(index=index, explore=True, epsilon=effective)


def adapt_epsilon(
    current: float,
    metrics: SegmentMetrics | None,
    config: ExploreConfig,
) -> float:
    """Raise epsilon for struggling segments, lower it for healthy ones."""
    if metrics is None or metrics.quality_score is None:
        return current
    if metrics.quality_score > 0.8:
        return max(config.epsilon_min, current * 0.9)
    if metrics.quality_score < config.quality_floor:
        return min(config.epsilon_max, current * 1.1)
    return current
