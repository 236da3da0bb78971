"""End-to-end tests for the rank orchestrator."""

import itertools
import threading
from unittest.mock import MagicMock

import pytest
from factories import build_engine, make_spec

from estimation_service.config import Settings
from estimation_service.contracts.metrics import SegmentMetrics
from estimation_service.contracts.ranking import SubjectRef
from estimation_service.errors import (
    InvalidRequestError,
    NoCandidateAvailableError,
    StoreUnavailableError,
)
from estimation_service.logging_config import (
    clear_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from estimation_service.orchestration.rank import RankOrchestrator, RankWarnings
from estimation_service.ranking.explore import ExploreConfig, ExplorePolicy
from estimation_service.ranking.filters import FilterReasons
from estimation_service.ranking.fine import FineRanker
from estimation_service.services.decision_store import InMemoryDecisionStore
from estimation_service.services.feature_store import InMemoryFeatureStore
from estimation_service.services.trace import TraceCollector

SUBJECT = {"entity_type": "product", "entity_id": "p1"}


def _request(request_id=None, explore=True, **sections):
    request = {
        "task": {"language": "en", "category": "copy"},
        "context": {"region": "us", "channel": "web"},
        "options": {"explore": explore},
    }
    if request_id is not None:
        request["options"]["request_id"] = request_id
    for key, value in sections.items():
        request[key] = value
    return request


class TestValidation:
    def test_missing_language_rejected(self, engine):
        with pytest.raises(InvalidRequestError) as exc_info:
            engine.orchestrator.rank({"task": {"category": "copy"}})
        assert exc_info.value.code == "RANK_BAD_REQUEST"
        assert "task.language" in exc_info.value.context["fields"]

    def test_bad_top_k_rejected(self, engine):
        with pytest.raises(InvalidRequestError):
            engine.orchestrator.rank(_request(options={"top_k": 0}))

    def test_error_trace_recorded(self, engine):
        with pytest.raises(InvalidRequestError):
            engine.orchestrator.rank({"task": {}})
        trace = engine.traces.get_latest()[0]
        assert trace.status == "error"
        assert trace.error_type == "InvalidRequestError"


class TestRankFlow:
    def test_basic_response_shape(self, engine):
        for name in ("a", "b", "c", "d", "e"):
            engine.candidates.upsert(make_spec(name))

        response = engine.orchestrator.rank(_request(explore=False))

        assert response.segment_key == "copy|us|web"
        assert response.strategy_version == "v1"
        assert response.weights_version == "w1"
        assert len(response.candidates) == 5
        assert [c.rank for c in response.candidates] == [1, 2, 3, 4, 5]
        assert response.chosen.candidate_id == response.candidates[0].candidate_id
        assert len(response.alternates) == 3
        assert response.chosen.candidate_id not in {a.candidate_id for a in response.alternates}
        assert response.chosen.expected_cost == pytest.approx(0.01 * 2000 / 1000)
        assert response.chosen.expected_latency == pytest.approx(3000.0)
        assert response.chosen.fine_score is not None
        assert response.timings.total_ms >= response.timings.coarse_ms

    def test_decision_and_candidate_set_persisted(self, engine):
        engine.candidates.upsert(make_spec("a"))
        response = engine.orchestrator.rank(_request())

        decision = engine.decisions.get_decision(response.decision_id)
        candidate_set = engine.decisions.get_candidate_set(response.candidate_set_id)
        assert decision.chosen_candidate_id == response.chosen.candidate_id
        assert candidate_set.find(decision.chosen_candidate_id) is not None

    def test_filters_and_breakers_scenario(self, engine):
        healthy_json = [engine.candidates.upsert(make_spec(n)) for n in ("j1", "j2")]
        broken = engine.candidates.upsert(make_spec("broken", provider="flaky", quality=1.0))
        for name in ("plain1", "plain2"):
            engine.candidates.upsert(make_spec(name, json_mode=False))
        engine.guard.breakers.open("flaky", "timeout")

        response = engine.orchestrator.rank(
            _request(explore=False, constraints={"require_json_mode": True})
        )

        assert {c.candidate_id for c in response.candidates} == {c.id for c in healthy_json}
        assert response.chosen.candidate_id != broken.id
        candidate_set = engine.decisions.get_candidate_set(response.candidate_set_id)
        reasons = sorted(e.filter_reason for e in candidate_set.entries if e.filtered)
        assert reasons == sorted(
            [FilterReasons.CIRCUIT_OPEN]
            + [FilterReasons.JSON_MODE_REQUIRED] * 2
        )
        trace = engine.traces.get_latest()[0]
        assert (trace.pool_size, trace.broken_count, trace.filtered_count) == (5, 1, 2)

    def test_candidate_breaker_excludes_only_that_candidate(self, engine):
        best = engine.candidates.upsert(make_spec("best", quality=1.0))
        other = engine.candidates.upsert(make_spec("other"))
        engine.guard.breakers.open("openai", "bad_output", candidate_id=best.id)

        response = engine.orchestrator.rank(_request(explore=False))

        assert [c.candidate_id for c in response.candidates] == [other.id]

    def test_explore_disabled_always_top_one(self):
        settings = Settings(explore_epsilon=1.0, explore_epsilon_max=1.0)
        engine = build_engine(settings)
        for name in ("a", "b", "c"):
            engine.candidates.upsert(make_spec(name))

        for _ in range(50):
            response = engine.orchestrator.rank(_request(explore=False))
            assert response.explore is False
            assert response.chosen.candidate_id == response.candidates[0].candidate_id

    def test_epsilon_one_explores_only_ranks_two_and_three(self):
        settings = Settings(explore_epsilon=1.0, explore_epsilon_max=1.0)
        engine = build_engine(settings, seed=123)
        for i in range(5):
            engine.candidates.upsert(make_spec(f"m{i}", quality=0.5 + i * 0.1))

        chosen_ranks = set()
        for _ in range(1000):
            response = engine.orchestrator.rank(_request())
            assert response.explore is True
            rank = next(
                c.rank for c in response.candidates if c.candidate_id == response.chosen.candidate_id
            )
            chosen_ranks.add(rank)

        assert chosen_ranks == {2, 3}
        # Explored picks never become last-known-good
        assert engine.guard.lkg.get("copy|us|web") is None

    def test_low_segment_quality_forces_explore_off(self):
        settings = Settings(explore_epsilon=1.0, explore_epsilon_max=1.0)
        engine = build_engine(settings)
        for name in ("a", "b", "c"):
            engine.candidates.upsert(make_spec(name))
        engine.orchestrator.metrics = MagicMock()
        engine.orchestrator.metrics.get_segment.return_value = SegmentMetrics(
            segment_key="copy|us|web", quality_score=0.4, sample_count=30
        )

        for _ in range(100):
            response = engine.orchestrator.rank(_request())
            assert response.explore is False
            assert RankWarnings.EXPLORE_FORCED_OFF in response.warnings

    def test_non_explored_pick_sets_lkg(self, engine):
        candidate = engine.candidates.upsert(make_spec("a"))
        engine.orchestrator.rank(_request(explore=False))
        assert engine.guard.lkg.get("copy|us|web") == candidate.id


class TestIdempotency:
    def test_same_request_id_returns_same_decision(self, engine):
        for name in ("a", "b", "c"):
            engine.candidates.upsert(make_spec(name))

        first = engine.orchestrator.rank(_request("req-42"))
        # Health changes after the first call must not re-rank
        engine.guard.breakers.open("openai", "timeout")
        second = engine.orchestrator.rank(_request("req-42"))

        assert second.decision_id == first.decision_id
        assert second.candidate_set_id == first.candidate_set_id
        assert second.chosen.candidate_id == first.chosen.candidate_id
        assert [c.candidate_id for c in second.candidates] == [
            c.candidate_id for c in first.candidates
        ]
        assert second.warnings == [RankWarnings.IDEMPOTENT_CACHE_HIT]
        assert engine.traces.get_latest()[0].status == "cached"

    def test_lost_insert_race_answers_with_winner(self):
        class BlindLookupStore(InMemoryDecisionStore):
            def get_by_request_id(self, request_id):
                return None

        engine = build_engine(decisions=BlindLookupStore())
        engine.candidates.upsert(make_spec("a"))

        first = engine.orchestrator.rank(_request("dup"))
        second = engine.orchestrator.rank(_request("dup"))

        assert second.decision_id == first.decision_id
        assert RankWarnings.IDEMPOTENT_CACHE_HIT in second.warnings

    def test_generated_request_ids_never_collide(self, engine):
        engine.candidates.upsert(make_spec("a"))
        first = engine.orchestrator.rank(_request())
        second = engine.orchestrator.rank(_request())
        assert first.decision_id != second.decision_id


class TestLastKnownGoodFallback:
    def test_fallback_when_pool_filters_empty(self, engine):
        lkg = engine.candidates.upsert(make_spec("a"))
        engine.orchestrator.rank(_request(explore=False))

        response = engine.orchestrator.rank(_request(constraints={"deny_providers": ["openai"]}))

        assert response.fallback_used is True
        assert response.chosen.candidate_id == lkg.id
        assert response.explore is False
        assert RankWarnings.FALLBACK_USED in response.warnings
        assert [c.candidate_id for c in response.candidates] == [lkg.id]
        candidate_set = engine.decisions.get_candidate_set(response.candidate_set_id)
        assert len(candidate_set.entries) == 1
        assert engine.decisions.get_decision(response.decision_id).fallback_used is True

    def test_broken_lkg_raises(self, engine):
        engine.candidates.upsert(make_spec("a"))
        engine.orchestrator.rank(_request(explore=False))
        engine.guard.breakers.open("openai", "outage", severe=True)

        with pytest.raises(NoCandidateAvailableError) as exc_info:
            engine.orchestrator.rank(_request())

        assert exc_info.value.code == "RANK_NO_CANDIDATE"
        assert exc_info.value.context["broken_count"] == 1

    def test_no_lkg_raises(self, engine):
        engine.candidates.upsert(make_spec("a", json_mode=False))
        with pytest.raises(NoCandidateAvailableError):
            engine.orchestrator.rank(_request(constraints={"require_json_mode": True}))

    def test_empty_pool_raises(self, engine):
        with pytest.raises(NoCandidateAvailableError):
            engine.orchestrator.rank(_request())


class TestOutcomeRoundTrip:
    def test_high_quality_outcome_raises_segment_quality(self, engine):
        engine.candidates.upsert(make_spec("solo"))

        before = engine.orchestrator.rank(_request(explore=False))
        assert before.chosen.features["segment_quality"] == pytest.approx(0.7)

        engine.feedback.record_outcome(before.decision_id, {"quality_score": 1.0})
        after = engine.orchestrator.rank(_request(explore=False))

        assert after.chosen.features["segment_quality"] == pytest.approx(1.0)
        assert after.chosen.fine_score > before.chosen.fine_score


class TestDegradation:
    def test_fine_timeout_falls_back_to_coarse(self):
        release = threading.Event()

        class SlowMetrics:
            def get_candidate(self, candidate_id, segment_key):
                release.wait(5)
                return None

            def get_segment(self, segment_key):
                return None

        settings = Settings(explore_epsilon=1.0, explore_epsilon_max=1.0)
        engine = build_engine(settings)
        for name in ("a", "b", "c"):
            engine.candidates.upsert(make_spec(name))
        engine.orchestrator.fine_ranker = FineRanker(SlowMetrics())

        try:
            response = engine.orchestrator.rank(_request(options={"deadline_ms": 50}))
        finally:
            release.set()

        assert RankWarnings.FINE_RANK_SKIPPED_DEADLINE in response.warnings
        assert response.explore is False
        assert response.chosen.fine_score is None
        assert response.chosen.candidate_id == response.candidates[0].candidate_id
        assert engine.decisions.get_decision(response.decision_id).degraded is True

    def test_deadline_passed_before_fine_stage(self):
        ticks = itertools.count(start=0.0, step=10.0)
        engine = build_engine()
        engine.candidates.upsert(make_spec("a"))
        orchestrator = RankOrchestrator(
            candidate_store=engine.candidates,
            decision_store=engine.decisions,
            health_guard=engine.guard,
            metrics=engine.metrics,
            settings=Settings(),
            clock=lambda: next(ticks),
        )

        response = orchestrator.rank(_request())

        assert response.warnings == [RankWarnings.FINE_RANK_SKIPPED_DEADLINE]
        assert response.metadata["degraded"] is True

    def test_feature_lookup_failure_is_a_warning(self):
        lookup = MagicMock()
        lookup.get_features_by_ref.side_effect = TimeoutError("feature store slow")
        engine = build_engine(feature_lookup=lookup)
        engine.candidates.upsert(make_spec("a"))

        response = engine.orchestrator.rank(
            _request(task={"language": "en", "subject_ref": SUBJECT})
        )

        assert RankWarnings.FEATURE_LOOKUP_FAILED in response.warnings

    def test_feature_store_category_used(self):
        features = InMemoryFeatureStore()
        engine = build_engine(feature_lookup=features)
        engine.candidates.upsert(make_spec("a", categories=("fashion",)))
        request = _request(task={"language": "en", "subject_ref": SUBJECT})

        without = engine.orchestrator.rank(request)
        features.put(SubjectRef(**SUBJECT), {"category": "fashion"})
        with_category = engine.orchestrator.rank(request)

        assert without.chosen.features["category_match"] == pytest.approx(0.5)
        assert with_category.chosen.features["category_match"] == 1.0

    def test_candidate_store_unavailable(self):
        engine = build_engine()
        engine.orchestrator.candidate_store = MagicMock()
        engine.orchestrator.candidate_store.list_active.side_effect = ConnectionError("db down")

        with pytest.raises(StoreUnavailableError) as exc_info:
            engine.orchestrator.rank(_request())

        assert exc_info.value.code == "RANK_STORE_ERROR"
        assert exc_info.value.context["store"] == "candidate"
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert engine.traces.get_latest()[0].error_type == "StoreUnavailableError"

    def test_decision_store_unavailable(self):
        decisions = MagicMock()
        decisions.get_by_request_id.side_effect = OSError("timeout")
        engine = build_engine(decisions=decisions)

        with pytest.raises(StoreUnavailableError) as exc_info:
            engine.orchestrator.rank(_request("r1"))

        assert exc_info.value.context["store"] == "decision"

class TestTopK:
    def test_default_top_k_from_settings(self):
        engine = build_engine(Settings(default_top_k=2))
        for name in ("a", "b", "c", "d", "e"):
            engine.candidates.upsert(make_spec(name))

        response = engine.orchestrator.rank(_request(explore=False))

        assert len(response.candidates) == 2
        assert engine.traces.get_latest()[0].top_k == 2

    def test_request_top_k_overrides_settings(self):
        engine = build_engine(Settings(default_top_k=2))
        for name in ("a", "b", "c", "d", "e"):
            engine.candidates.upsert(make_spec(name))

        response = engine.orchestrator.rank(_request(options={"top_k": 4, "explore": False}))

        assert len(response.candidates) == 4


class TestCorrelationId:
    def setup_method(self):
        clear_correlation_id()

    def test_trace_id_bound_for_the_call(self, engine):
        seen = []
        engine.orchestrator.trace_collector = TraceCollector(
            callback=lambda trace: seen.append((trace.trace_id, get_correlation_id()))
        )
        engine.candidates.upsert(make_spec("a"))

        engine.orchestrator.rank(_request())

        trace_id, correlation_id = seen[0]
        assert correlation_id == trace_id
        assert get_correlation_id() is None

    def test_caller_correlation_id_kept(self, engine):
        seen = []
        engine.orchestrator.trace_collector = TraceCollector(
            callback=lambda trace: seen.append(get_correlation_id())
        )
        engine.candidates.upsert(make_spec("a"))

        set_correlation_id("upstream-123")
        try:
            engine.orchestrator.rank(_request())
            assert get_correlation_id() == "upstream-123"
        finally:
            clear_correlation_id()

        assert seen == ["upstream-123"]


class TestMetricsDegradation:
    def test_failed_metrics_lookup_is_a_warning(self, engine):
        class FailingMetrics:
            def get_candidate(self, candidate_id, segment_key):
                raise ConnectionError("metrics store down")

        engine.candidates.upsert(make_spec("a"))
        engine.candidates.upsert(make_spec("b"))
        engine.orchestrator.fine_ranker = FineRanker(FailingMetrics())

        response = engine.orchestrator.rank(_request(explore=False))

        assert response.warnings == [RankWarnings.SEGMENT_METRICS_DEGRADED]
        assert response.chosen.features["segment_quality"] == pytest.approx(0.7)

    def test_healthy_metrics_no_warning(self, engine):
        engine.candidates.upsert(make_spec("a"))
        response = engine.orchestrator.rank(_request(explore=False))
        assert RankWarnings.SEGMENT_METRICS_DEGRADED not in response.warnings

    def test_deadline_after_fine_stage_skips_segment_lookup(self):
        now = {"t": 0.0}

        class SlowFineRanker(FineRanker):
            def rank(self, coarse_results, segment_key, timeout_s=None):
                ranked = super().rank(coarse_results, segment_key, timeout_s)
                now["t"] += 5.0
                return ranked

        engine = build_engine()
        for name in ("a", "b", "c"):
            engine.candidates.upsert(make_spec(name))
        segment_metrics = MagicMock()
        orchestrator = RankOrchestrator(
            candidate_store=engine.candidates,
            decision_store=engine.decisions,
            health_guard=engine.guard,
            metrics=segment_metrics,
            fine_ranker=SlowFineRanker(engine.metrics),
            explore_policy=ExplorePolicy(ExploreConfig(epsilon=1.0, epsilon_max=1.0)),
            settings=Settings(explore_epsilon=1.0, explore_epsilon_max=1.0),
            clock=lambda: now["t"],
        )

        response = orchestrator.rank(_request())

        assert response.explore is False
        assert response.chosen.fine_score is not None
        segment_metrics.get_segment.assert_not_called()
