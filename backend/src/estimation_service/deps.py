"""Dependency injection helpers."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

from estimation_service.config import Settings, get_settings
from estimation_service.errors import ConfigurationError
from estimation_service.ranking.explore import ExploreConfig, ExplorePolicy
from estimation_service.services.candidate_store import CandidateStore, InMemoryCandidateStore
from estimation_service.services.decision_store import DecisionStore, InMemoryDecisionStore
from estimation_service.services.epsilon import EpsilonController
from estimation_service.services.failure_tracker import FailureTracker
from estimation_service.services.feature_store import FeatureLookup
from estimation_service.services.health import CircuitBreakerRegistry, HealthGuard, LKGCache
from estimation_service.services.health_backends import (
    HealthStateBackend,
    InMemoryHealthBackend,
    RedisHealthBackend,
)
from estimation_service.services.segment_metrics import SegmentMetricsAggregator
from estimation_service.services.trace import TraceCollector

if TYPE_CHECKING:
    from estimation_service.orchestration.feedback import FeedbackService
    from estimation_service.orchestration.maintenance import MaintenanceRunner
    from estimation_service.orchestration.rank import RankOrchestrator


def create_health_backend(settings: Settings | None = None) -> HealthStateBackend:
    """Shared breaker/LKG state: in-process or Redis, per settings.health_backend."""
    _settings = settings or get_settings()
    if _settings.health_backend == "memory":
        return InMemoryHealthBackend()
    if _settings.health_backend == "redis":
        return RedisHealthBackend.from_url(
            _settings.redis_url, key_prefix=_settings.redis_key_prefix
        )
    raise ConfigurationError(
        f"Unsupported health backend: {_settings.health_backend}",
        context={"health_backend": _settings.health_backend},
    )


def create_health_guard(
    backend: HealthStateBackend | None = None,
    settings: Settings | None = None,
) -> HealthGuard:
    """Create breaker registry and LKG cache over one backend."""
    _settings = settings or get_settings()
    _backend = backend or create_health_backend(_settings)
    breakers = CircuitBreakerRegistry(
        _backend,
        normal_duration_s=_settings.circuit_breaker_duration_s,
        severe_duration_s=_settings.circuit_breaker_severe_duration_s,
    )
    return HealthGuard(breakers, LKGCache(_backend, default_ttl_s=_settings.lkg_ttl_s))


def create_explore_config(settings: Settings | None = None) -> ExploreConfig:
    _settings = settings or get_settings()
    return ExploreConfig(
        epsilon=_settings.explore_epsilon,
        epsilon_min=_settings.explore_epsilon_min,
        epsilon_max=_settings.explore_epsilon_max,
        quality_floor=_settings.explore_quality_floor,
        rejection_ceiling=_settings.explore_rejection_ceiling,
    )


def create_epsilon_controller(settings: Settings | None = None) -> EpsilonController:
    return EpsilonController(create_explore_config(settings))


def create_segment_metrics(
    decision_store: DecisionStore,
    settings: Settings | None = None,
) -> SegmentMetricsAggregator:
    _settings = settings or get_settings()
    return SegmentMetricsAggregator(
        decision_store,
        window_hours=_settings.metrics_window_hours,
        max_staleness_s=_settings.metrics_max_staleness_s,
    )


def create_trace_collector(settings: Settings | None = None) -> TraceCollector:
    """Create trace collector instance."""
    _settings = settings or get_settings()
    return TraceCollector(max_traces=_settings.max_traces)


def create_failure_tracker(
    health_guard: HealthGuard,
    candidate_store: CandidateStore | None = None,
    settings: Settings | None = None,
) -> FailureTracker:
    _settings = settings or get_settings()
    return FailureTracker(
        health_guard.breakers,
        candidate_store=candidate_store,
        failure_threshold=_settings.failure_threshold,
        deactivate_after_trips=_settings.deactivate_after_trips,
    )


def create_orchestrator(
    candidate_store: CandidateStore | None = None,
    decision_store: DecisionStore | None = None,
    health_guard: HealthGuard | None = None,
    metrics: SegmentMetricsAggregator | None = None,
    epsilon_controller: EpsilonController | None = None,
    feature_lookup: FeatureLookup | None = None,
    trace_collector: TraceCollector | None = None,
    rng: random.Random | None = None,
    settings: Settings | None = None,
) -> RankOrchestrator:
    """Create rank orchestrator with default dependencies."""
    from estimation_service.orchestration.rank import RankOrchestrator

    _settings = settings or get_settings()
    _decisions = decision_store or InMemoryDecisionStore()
    _metrics = metrics or create_segment_metrics(_decisions, _settings)
    explore_config = create_explore_config(_settings)

    return RankOrchestrator(
        candidate_store=candidate_store or InMemoryCandidateStore(),
        decision_store=_decisions,
        health_guard=health_guard or create_health_guard(settings=_settings),
        metrics=_metrics,
        explore_policy=ExplorePolicy(explore_config, rng=rng),
        epsilon_controller=epsilon_controller or EpsilonController(explore_config),
        feature_lookup=feature_lookup,
        trace_collector=trace_collector,
        settings=_settings,
    )


def create_feedback_service(
    orchestrator: RankOrchestrator,
    failure_tracker: FailureTracker | None = None,
    settings: Settings | None = None,
) -> FeedbackService:
    """Create feedback service sharing the orchestrator's stores."""
    from estimation_service.orchestration.feedback import FeedbackService

    _tracker = failure_tracker or create_failure_tracker(
        orchestrator.health_guard, orchestrator.candidate_store, settings
    )
    return FeedbackService(
        decision_store=orchestrator.decision_store,
        metrics=orchestrator.metrics,
        candidate_store=orchestrator.candidate_store,
        failure_tracker=_tracker,
    )


def create_maintenance_runner(
    orchestrator: RankOrchestrator,
    settings: Settings | None = None,
) -> MaintenanceRunner:
    """Create the rollup/epsilon job bound to the orchestrator's state."""
    from estimation_service.orchestration.maintenance import MaintenanceRunner

    _settings = settings or get_settings()
    return MaintenanceRunner(
        orchestrator.metrics,
        orchestrator.epsilon_controller,
        interval_s=_settings.metrics_refresh_interval_s,
    )
