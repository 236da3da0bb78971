"""Services package - export stores and stateful collaborators."""

from estimation_service.services.candidate_store import CandidateStore, InMemoryCandidateStore
from estimation_service.services.decision_store import DecisionStore, InMemoryDecisionStore
from estimation_service.services.epsilon import EpsilonController
from estimation_service.services.failure_tracker import FailureTracker
from estimation_service.services.feature_store import FeatureLookup, InMemoryFeatureStore
from estimation_service.services.health import CircuitBreakerRegistry, HealthGuard, LKGCache

# Shared-state backends for breakers and LKG
from estimation_service.services.health_backends import (
    HealthStateBackend,
    InMemoryHealthBackend,
    RedisHealthBackend,
)
from estimation_service.services.segment_metrics import SegmentMetricsAggregator
from estimation_service.services.trace import TraceCollector

__all__ = [
    "CandidateStore",
    "CircuitBreakerRegistry",
    "DecisionStore",
    "EpsilonController",
    "FailureTracker",
    "FeatureLookup",
    "HealthGuard",
    "HealthStateBackend",
    "InMemoryCandidateStore",
    "InMemoryDecisionStore",
    "InMemoryFeatureStore",
    "InMemoryHealthBackend",
    "LKGCache",
    "RedisHealthBackend",
    "SegmentMetricsAggregator",
    "TraceCollector",
]
