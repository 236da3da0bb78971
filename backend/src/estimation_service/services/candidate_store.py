"""Candidate pool storage: protocol plus an in-memory implementation."""

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Protocol

from estimation_service.contracts.candidate import (
    Candidate,
    CandidateSpec,
    CandidateStatus,
    DynamicMetrics,
)
from estimation_service.errors import CandidateNotFoundError
from estimation_service.logging_config import get_logger

logger = get_logger(__name__)


class CandidateStore(Protocol):
    """Read/write access to the candidate pool. No ranking logic."""

    def list_active(self) -> list[Candidate]: ...
    def get_by_id(self, candidate_id: str) -> Candidate: ...
    def upsert(self, spec: CandidateSpec) -> Candidate: ...
    def set_status(self, candidate_id: str, status: CandidateStatus) -> Candidate: ...
    def update_dynamic_metrics(self, candidate_id: str, metrics: DynamicMetrics) -> Candidate: ...


class InMemoryCandidateStore:
    """
    In-memory candidate pool.

    Candidates are keyed by id and uniquely by (provider, name). Iteration
    order is insertion order, which is the pool order the rankers use for
    stable tie-breaking. Returned models are copies.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._by_id: dict[str, Candidate] = {}
        self._by_name: dict[tuple[str, str], str] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def list_active(self) -> list[Candidate]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._by_id.values() if c.is_active]

    def list_all(self) -> list[Candidate]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._by_id.values()]

    def get_by_id(self, candidate_id: str) -> Candidate:
        with self._lock:
            return self._require(candidate_id).model_copy(deep=True)

    def upsert(self, spec: CandidateSpec) -> Candidate:
        """Create or replace the candidate identified by (provider, name)."""
        now = self._now()
        with self._lock:
            existing_id = self._by_name.get((spec.provider, spec.name))
            if existing_id is not None:
                existing = self._by_id[existing_id]
                candidate = Candidate(
                    **spec.model_dump(),
                    id=existing.id,
                    created_at=existing.created_at,
                    updated_at=now,
                )
                action = "updated"
            else:
                candidate = Candidate(**spec.model_dump(), created_at=now, updated_at=now)
                self._by_name[(spec.provider, spec.name)] = candidate.id
                action = "created"
            self._by_id[candidate.id] = candidate
        logger.info(
            "candidate_upserted",
            candidate_id=candidate.id,
            provider=candidate.provider,
            name=candidate.name,
            action=action,
        )
        return candidate.model_copy(deep=True)

    def set_status(self, candidate_id: str, status: CandidateStatus) -> Candidate:
        with self._lock:
            current = self._require(candidate_id)
            updated = current.model_copy(update={"status": status, "updated_at": self._now()})
            self._by_id[candidate_id] = updated
        logger.info("candidate_status_changed", candidate_id=candidate_id, status=status)
        return updated.model_copy(deep=True)

    def update_dynamic_metrics(self, candidate_id: str, metrics: DynamicMetrics) -> Candidate:
        with self._lock:
            current = self._require(candidate_id)
            updated = current.model_copy(
                update={"dynamic_metrics": metrics, "updated_at": self._now()}
            )
            self._by_id[candidate_id] = updated
        return updated.model_copy(deep=True)

    def _require(self, candidate_id: str) -> Candidate:
        """Must be called with lock held."""
        candidate = self._by_id.get(candidate_id)
        if candidate is None:
            raise CandidateNotFoundError(
                f"Candidate not found: {candidate_id}",
                context={"candidate_id": candidate_id},
            )
        return candidate

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)
