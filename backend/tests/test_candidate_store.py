"""Tests for the in-memory candidate store and capability schema migration."""

import pytest

from estimation_service.contracts.candidate import (
    CAPABILITY_SCHEMA_VERSION,
    CandidateSpec,
    DynamicMetrics,
    StaticCapability,
)
from estimation_service.errors import CandidateNotFoundError
from estimation_service.services.candidate_store import InMemoryCandidateStore


def _spec(name: str = "gpt-small", provider: str = "openai", **overrides) -> CandidateSpec:
    return CandidateSpec(provider=provider, name=name, languages={"en"}, **overrides)


class TestUpsert:
    def test_create_assigns_id(self):
        store = InMemoryCandidateStore()
        candidate = store.upsert(_spec())
        assert candidate.id
        assert candidate.status == "active"
        assert store.get_by_id(candidate.id).name == "gpt-small"

    def test_upsert_same_provider_name_keeps_id(self, clock):
        store = InMemoryCandidateStore(clock=clock)
        first = store.upsert(_spec(unit_price=0.01))
        clock.advance(5)
        second = store.upsert(_spec(unit_price=0.02))

        assert second.id == first.id
        assert second.unit_price == 0.02
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at
        assert len(store.list_all()) == 1

    def test_same_name_different_provider_is_distinct(self):
        store = InMemoryCandidateStore()
        a = store.upsert(_spec(provider="openai"))
        b = store.upsert(_spec(provider="azure"))
        assert a.id != b.id

    def test_returned_models_are_copies(self):
        store = InMemoryCandidateStore()
        candidate = store.upsert(_spec())
        candidate.languages.add("fr")
        assert store.get_by_id(candidate.id).languages == {"en"}


class TestQueries:
    def test_list_active_preserves_insertion_order(self):
        store = InMemoryCandidateStore()
        ids = [store.upsert(_spec(name=f"m{i}")).id for i in range(4)]
        assert [c.id for c in store.list_active()] == ids

    def test_inactive_excluded_but_not_deleted(self):
        store = InMemoryCandidateStore()
        a = store.upsert(_spec(name="a"))
        b = store.upsert(_spec(name="b"))
        store.set_status(a.id, "inactive")

        assert [c.id for c in store.list_active()] == [b.id]
        assert store.get_by_id(a.id).status == "inactive"
        assert len(store.list_all()) == 2

    def test_get_missing_raises(self):
        store = InMemoryCandidateStore()
        with pytest.raises(CandidateNotFoundError) as exc_info:
            store.get_by_id("missing")
        assert exc_info.value.context == {"candidate_id": "missing"}

    def test_set_status_missing_raises(self):
        with pytest.raises(CandidateNotFoundError):
            InMemoryCandidateStore().set_status("missing", "inactive")

    def test_update_dynamic_metrics(self):
        store = InMemoryCandidateStore()
        candidate = store.upsert(_spec())
        updated = store.update_dynamic_metrics(
            candidate.id, DynamicMetrics(quality_score=0.9, stability_score=0.95)
        )
        assert updated.dynamic_metrics.quality_score == 0.9
        assert store.get_by_id(candidate.id).dynamic_metrics.stability_score == 0.95


class TestCapabilitySchema:
    def test_legacy_static_blob_migrated(self):
        capability = StaticCapability.model_validate(
            {"strengthTags": ["witty", "concise"], "category": "fashion"}
        )
        assert capability.strength_tags == ["witty", "concise"]
        assert capability.categories == ["fashion"]
        assert capability.schema_version == CAPABILITY_SCHEMA_VERSION

    def test_legacy_dynamic_blob_migrated(self):
        metrics = DynamicMetrics.model_validate(
            {"qualityScore": 0.8, "stabilityScore": 0.7, "avgLatencyMs": 1200}
        )
        assert metrics.quality_score == 0.8
        assert metrics.stability_score == 0.7
        assert metrics.avg_latency_ms == 1200
        assert metrics.schema_version == CAPABILITY_SCHEMA_VERSION

    def test_current_schema_passthrough(self):
        capability = StaticCapability(strength_tags=["bold"], categories=["beauty"])
        assert capability.model_dump()["strength_tags"] == ["bold"]

    def test_dynamic_scores_bounded(self):
        with pytest.raises(ValueError):
            DynamicMetrics(quality_score=1.5)
