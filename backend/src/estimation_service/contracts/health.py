from datetime import datetime

from pydantic import BaseModel


class CircuitBreakerState(BaseModel):
    """Temporary exclusion of a provider or one of its candidates."""

    provider: str
    candidate_id: str | None = None
    break_until: datetime
    reason: str
    severe: bool = False


class LKGEntry(BaseModel):
    """Last candidate deliberately chosen as best for a segment."""

    segment_key: str
    candidate_id: str
    expires_at: datetime
