"""Audit records: candidate set snapshots, decisions and outcomes."""

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from estimation_service.contracts.ranking import ContextInput, ScoredCandidate, TaskInput


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CandidateSetEntry(ScoredCandidate):
    """Snapshot row; filtered rows keep the reason they were dropped."""

    filtered: bool = False
    filter_reason: str | None = None


class CandidateSet(BaseModel):
    """Immutable snapshot of everything scored for one request."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task: TaskInput
    context: ContextInput
    entries: tuple[CandidateSetEntry, ...] = ()
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def ranked(self) -> list[CandidateSetEntry]:
        return sorted((e for e in self.entries if not e.filtered), key=lambda e: e.rank)

    def find(self, candidate_id: str) -> CandidateSetEntry | None:
        for entry in self.entries:
            if entry.candidate_id == candidate_id and not entry.filtered:
                return entry
        return None


class Decision(BaseModel):
    """One per successful rank request."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    candidate_set_id: str
    chosen_candidate_id: str
    segment_key: str
    strategy_version: str
    weights_version: str
    explore: bool = False
    fallback_used: bool = False
    degraded: bool = False
    expected_cost: float | None = None
    expected_latency: float | None = None
    request_id: str
    created_at: datetime = Field(default_factory=_utcnow)


class OutcomeInput(BaseModel):
    """Feedback payload; every field is optional but at least one is required."""

    quality_score: float | None = Field(default=None, ge=0.0, le=1.0)
    edit_distance: float | None = Field(default=None, ge=0.0, le=1.0)
    latency_ms: float | None = Field(default=None, ge=0.0)
    cost_actual: float | None = Field(default=None, ge=0.0)
    rejected: bool | None = None

    def has_signal(self) -> bool:
        return any(v is not None for v in self.model_dump().values())


class Outcome(BaseModel):
    """Real-world result attributed back to a decision."""

    decision_id: str
    quality_score: float | None = Field(default=None, ge=0.0, le=1.0)
    edit_distance: float | None = Field(default=None, ge=0.0, le=1.0)
    latency_ms: float | None = Field(default=None, ge=0.0)
    cost_actual: float | None = Field(default=None, ge=0.0)
    rejected: bool = False
    recorded_at: datetime = Field(default_factory=_utcnow)

    def merged_with(self, update: OutcomeInput) -> "Outcome":
        """Overlay the non-null fields of a later feedback call."""
        changes: dict[str, Any] = {
            k: v for k, v in update.model_dump().items() if v is not None
        }
        changes["recorded_at"] = _utcnow()
        return self.model_copy(update=changes)
