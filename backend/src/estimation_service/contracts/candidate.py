"""Candidate pool contracts with typed, versioned capability schemas."""

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

CandidateStatus = Literal["active", "inactive"]

CAPABILITY_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CapabilityFlags(BaseModel):
    """Boolean feature support advertised by a candidate."""

    json_mode: bool = False
    tool_use: bool = False
    vision: bool = False


class StaticCapability(BaseModel):
    """Operator-curated capability profile.

    Older rows stored an untyped camelCase blob; those keys are accepted
    on load and rewritten to the current schema version.
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = CAPABILITY_SCHEMA_VERSION
    strength_tags: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("strength_tags", "strengthTags"),
    )
    categories: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def migrate_legacy(cls, data: Any) -> Any:
        if isinstance(data, dict) and "schema_version" not in data:
            data = dict(data)
            if "category" in data and "categories" not in data:
                data["categories"] = [data.pop("category")]
            data["schema_version"] = CAPABILITY_SCHEMA_VERSION
        return data


class DynamicMetrics(BaseModel):
    """Observed health snapshot written back by the sync/monitoring process."""

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = CAPABILITY_SCHEMA_VERSION
    quality_score: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("quality_score", "qualityScore"),
    )
    stability_score: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("stability_score", "stabilityScore"),
    )
    avg_latency_ms: float | None = Field(
        default=None,
        ge=0.0,
        validation_alias=AliasChoices("avg_latency_ms", "avgLatencyMs"),
    )

    @model_validator(mode="before")
    @classmethod
    def migrate_legacy(cls, data: Any) -> Any:
        if isinstance(data, dict) and "schema_version" not in data:
            data = {**data, "schema_version": CAPABILITY_SCHEMA_VERSION}
        return data


class CandidateSpec(BaseModel):
    """Upsert payload for a candidate, keyed by (provider, name)."""

    provider: str = Field(min_length=1)
    name: str = Field(min_length=1)
    version: str | None = None
    languages: set[str] = Field(default_factory=set)
    max_context: int = Field(default=8192, gt=0)
    unit_price: float = Field(default=0.0, ge=0.0, description="USD per 1k tokens")
    rate_limit: int | None = Field(default=None, ge=0)
    capabilities: CapabilityFlags = Field(default_factory=CapabilityFlags)
    status: CandidateStatus = "active"
    static_capability: StaticCapability = Field(default_factory=StaticCapability)
    dynamic_metrics: DynamicMetrics = Field(default_factory=DynamicMetrics)


class Candidate(CandidateSpec):
    """A selectable model or prompt template in the pool."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "active"
