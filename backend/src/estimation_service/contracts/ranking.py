from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

SEGMENT_KEY_SEPARATOR = "|"
SEGMENT_KEY_DEFAULT = "default"

LengthHint = Literal["short", "medium", "long"]
BudgetTier = Literal["low", "mid", "high"]
Urgency = Literal["low", "normal", "high"]


def build_segment_key(
    category: str | None = None,
    region: str | None = None,
    channel: str | None = None,
) -> str:
    """Compose the metrics bucket key; missing parts become 'default'."""
    parts = [
        category or SEGMENT_KEY_DEFAULT,
        region or SEGMENT_KEY_DEFAULT,
        channel or SEGMENT_KEY_DEFAULT,
    ]
    return SEGMENT_KEY_SEPARATOR.join(parts)


class SubjectRef(BaseModel):
    """Opaque pointer into the external feature store."""

    entity_type: Literal["product", "style", "video", "model", "prompt_template"]
    entity_id: str = Field(min_length=1)


class TaskInput(BaseModel):
    """What the caller wants done."""

    task_type: str = "generation"
    content_type: str = "text"
    language: str = Field(min_length=1)
    category: str | None = None
    style_tags: list[str] = Field(default_factory=list)
    subject_ref: SubjectRef | None = None
    length_hint: LengthHint | None = None


class ContextInput(BaseModel):
    """Where and for whom the task runs."""

    region: str | None = None
    channel: str | None = None
    budget_tier: BudgetTier | None = None
    urgency: Urgency | None = None


class Constraints(BaseModel):
    """Hard filters. Absent fields mean unconstrained."""

    require_json_mode: bool = False
    max_cost_usd: float | None = Field(default=None, gt=0.0)
    max_latency_ms: float | None = Field(default=None, gt=0.0)
    allow_providers: list[str] | None = None
    deny_providers: list[str] | None = None


class RankOptions(BaseModel):
    top_k: int | None = Field(default=None, ge=1, le=100)
    explore: bool = True
    strategy_version: str | None = None
    request_id: str | None = None
    deadline_ms: float | None = Field(default=None, gt=0.0)

    @field_validator("request_id")
    @classmethod
    def validate_request_id(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("request_id must not be blank")
        return v


class RankRequest(BaseModel):
    """Request to the rank orchestrator."""

    task: TaskInput
    context: ContextInput = Field(default_factory=ContextInput)
    constraints: Constraints = Field(default_factory=Constraints)
    options: RankOptions = Field(default_factory=RankOptions)

    @property
    def segment_key(self) -> str:
        return build_segment_key(self.task.category, self.context.region, self.context.channel)


class ScoredCandidate(BaseModel):
    """One candidate with its ranking evidence."""

    candidate_id: str
    provider: str
    name: str
    rank: int = Field(ge=1)
    coarse_score: float | None = None
    fine_score: float | None = None
    features: dict[str, float] = Field(default_factory=dict)
    expected_cost: float | None = None
    expected_latency: float | None = None


class RankTimings(BaseModel):
    coarse_ms: float = Field(default=0.0, ge=0.0)
    fine_ms: float = Field(default=0.0, ge=0.0)
    total_ms: float = Field(default=0.0, ge=0.0)


class RankResponse(BaseModel):
    """Response from the rank orchestrator."""

    decision_id: str
    candidate_set_id: str
    strategy_version: str
    weights_version: str
    segment_key: str
    chosen: ScoredCandidate
    candidates: list[ScoredCandidate] = Field(default_factory=list)
    alternates: list[ScoredCandidate] = Field(default_factory=list)
    explore: bool = False
    fallback_used: bool = False
    timings: RankTimings = Field(default_factory=RankTimings)
    warnings: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
