"""Contracts package - export key models."""

from estimation_service.contracts.candidate import (
    Candidate,
    CandidateSpec,
    CandidateStatus,
    CapabilityFlags,
    DynamicMetrics,
    StaticCapability,
)
from estimation_service.contracts.decision import (
    CandidateSet,
    CandidateSetEntry,
    Decision,
    Outcome,
    OutcomeInput,
)
from estimation_service.contracts.health import CircuitBreakerState, LKGEntry
from estimation_service.contracts.metrics import DecisionStats, SegmentMetrics
from estimation_service.contracts.ranking import (
    Constraints,
    ContextInput,
    RankOptions,
    RankRequest,
    RankResponse,
    RankTimings,
    ScoredCandidate,
    SubjectRef,
    TaskInput,
    build_segment_key,
)
from estimation_service.contracts.trace import RankTrace

__all__ = [
    "Candidate",
    "CandidateSet",
    "CandidateSetEntry",
    "CandidateSpec",
    "CandidateStatus",
    "CapabilityFlags",
    "CircuitBreakerState",
    "Constraints",
    "ContextInput",
    "Decision",
    "DecisionStats",
    "DynamicMetrics",
    "LKGEntry",
    "Outcome",
    "OutcomeInput",
    "RankOptions",
    "RankRequest",
    "RankResponse",
    "RankTimings",
    "RankTrace",
    "ScoredCandidate",
    "SegmentMetrics",
    "StaticCapability",
    "SubjectRef",
    "TaskInput",
    "build_segment_key",
]
