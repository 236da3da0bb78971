"""Tests for per-segment epsilon control."""

from datetime import datetime, timedelta, timezone

import pytest

from estimation_service.contracts.metrics import SegmentMetrics
from estimation_service.ranking.explore import ExploreConfig
from estimation_service.services.epsilon import EpsilonController

SEGMENT = "copy|us|web"


def _metrics(
    quality: float | None,
    computed_at: datetime | None = None,
    latest_recorded_at: datetime | None = None,
    sample_count: int = 10,
) -> SegmentMetrics:
    stamp = computed_at or datetime.now(timezone.utc)
    return SegmentMetrics(
        segment_key=SEGMENT,
        quality_score=quality,
        sample_count=sample_count,
        latest_recorded_at=latest_recorded_at or stamp,
        computed_at=stamp,
    )


class TestEpsilonController:
    def test_default_epsilon(self):
        assert EpsilonController().get(SEGMENT) == pytest.approx(0.10)

    def test_set_clamps(self):
        controller = EpsilonController()
        assert controller.set(SEGMENT, 0.9) == pytest.approx(0.20)
        assert controller.set(SEGMENT, 0.0) == pytest.approx(0.05)

    def test_low_quality_raises_epsilon(self):
        controller = EpsilonController()
        assert controller.adapt(SEGMENT, _metrics(0.5)) == pytest.approx(0.11)

    def test_high_quality_lowers_epsilon(self):
        controller = EpsilonController()
        assert controller.adapt(SEGMENT, _metrics(0.9)) == pytest.approx(0.09)

    def test_middle_quality_unchanged(self):
        controller = EpsilonController()
        assert controller.adapt(SEGMENT, _metrics(0.7)) == pytest.approx(0.10)

    def test_adaptation_respects_bounds(self):
        controller = EpsilonController(ExploreConfig(epsilon=0.20))
        base = datetime.now(timezone.utc)
        for i in range(5):
            controller.adapt(SEGMENT, _metrics(0.1, base + timedelta(minutes=i)))
        assert controller.get(SEGMENT) == pytest.approx(0.20)

        for i in range(50):
            controller.adapt(SEGMENT, _metrics(0.95, base + timedelta(minutes=10 + i)))
        assert controller.get(SEGMENT) == pytest.approx(0.05)

    def test_same_snapshot_applied_once(self):
        controller = EpsilonController()
        snapshot = _metrics(0.5)
        first = controller.adapt(SEGMENT, snapshot)
        second = controller.adapt(SEGMENT, snapshot)
        assert first == second == pytest.approx(0.11)

    def test_recomputed_snapshot_over_same_outcomes_ignored(self):
        controller = EpsilonController()
        recorded = datetime.now(timezone.utc)
        for minute in range(6):
            controller.adapt(
                SEGMENT, _metrics(0.95, recorded + timedelta(minutes=minute), recorded)
            )
        assert controller.get(SEGMENT) == pytest.approx(0.09)

    def test_new_outcome_applies_again(self):
        controller = EpsilonController()
        recorded = datetime.now(timezone.utc)
        controller.adapt(SEGMENT, _metrics(0.95, recorded, recorded, sample_count=1))
        later = recorded + timedelta(minutes=1)
        controller.adapt(SEGMENT, _metrics(0.95, later, later, sample_count=2))
        assert controller.get(SEGMENT) == pytest.approx(0.081)

    def test_older_snapshot_ignored(self):
        controller = EpsilonController()
        now = datetime.now(timezone.utc)
        controller.adapt(SEGMENT, _metrics(0.5, now))
        controller.adapt(SEGMENT, _metrics(0.95, now - timedelta(minutes=1)))
        assert controller.get(SEGMENT) == pytest.approx(0.11)

    def test_missing_metrics_noop(self):
        controller = EpsilonController()
        assert controller.adapt(SEGMENT, None) == pytest.approx(0.10)
        assert controller.adapt(SEGMENT, _metrics(None)) == pytest.approx(0.10)

    def test_segments_independent(self):
        controller = EpsilonController()
        controller.adapt(SEGMENT, _metrics(0.5))
        assert controller.get("other|us|web") == pytest.approx(0.10)
        assert set(controller.snapshot()) == {SEGMENT}
