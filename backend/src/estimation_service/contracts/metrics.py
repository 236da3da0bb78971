from datetime import datetime, timezone

from pydantic import BaseModel, Field


class SegmentMetrics(BaseModel):
    """Rolling aggregate of outcomes for one segment (optionally one candidate)."""

    segment_key: str
    candidate_id: str | None = None
    quality_score: float | None = None
    edit_rate: float | None = None
    rejection_rate: float | None = None
    avg_cost: float | None = None
    avg_latency: float | None = None
    sample_count: int = Field(default=0, ge=0)
    latest_recorded_at: datetime | None = None
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def evidence_key(self) -> tuple[int, datetime | None]:
        """Identifies the outcomes behind the snapshot, independent of when it was computed."""
        return (self.sample_count, self.latest_recorded_at)


class DecisionStats(BaseModel):
    """Dashboard view of how decisions were made in a window."""

    segment_key: str | None = None
    total_decisions: int = 0
    explore_share: float = 0.0
    fallback_rate: float = 0.0
    degraded_rate: float = 0.0
