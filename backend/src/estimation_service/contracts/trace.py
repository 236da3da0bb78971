"""Structured trace records for rank pipeline observability."""

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field


class RankTrace(BaseModel):
    """Structured trace record for a single rank call."""

    # Identity
    trace_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str | None = None
    decision_id: str | None = None

    # Timing
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    coarse_ms: float = Field(default=0.0, ge=0.0)
    fine_ms: float = Field(default=0.0, ge=0.0)
    duration_ms: float = Field(default=0.0, ge=0.0)

    # Request snapshot
    segment_key: str | None = None
    top_k: int = 0
    explore_requested: bool = True

    # Pool statistics
    pool_size: int = Field(default=0, ge=0)
    broken_count: int = Field(default=0, ge=0)
    filtered_count: int = Field(default=0, ge=0)
    ranked_count: int = Field(default=0, ge=0)

    # Outcome
    chosen_candidate_id: str | None = None
    explore: bool = False
    epsilon: float | None = None
    fallback_used: bool = False
    warnings: list[str] = Field(default_factory=list)

    # Error tracking
    status: Literal["ok", "cached", "error"] = "ok"
    error_type: str | None = None
    error_message: str | None = None
