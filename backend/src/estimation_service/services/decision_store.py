"""Decision audit storage: candidate sets, decisions and outcomes."""

import threading
from datetime import datetime
from typing import Protocol

from estimation_service.contracts.decision import CandidateSet, Decision, Outcome
from estimation_service.logging_config import get_logger

logger = get_logger(__name__)


class DecisionStore(Protocol):
    """Queryable store behind the orchestrator and the metrics aggregator."""

    def save_candidate_set(self, candidate_set: CandidateSet) -> CandidateSet: ...
    def get_candidate_set(self, candidate_set_id: str) -> CandidateSet | None: ...
    def save_decision(self, decision: Decision) -> Decision: ...
    def get_decision(self, decision_id: str) -> Decision | None: ...
    def get_by_request_id(self, request_id: str) -> Decision | None: ...
    def upsert_outcome(self, outcome: Outcome) -> Outcome: ...
    def get_outcome(self, decision_id: str) -> Outcome | None: ...
    def list_decisions_since(
        self, since: datetime, segment_key: str | None = None
    ) -> list[Decision]: ...
    def list_outcomes_since(
        self,
        since: datetime,
        segment_key: str | None = None,
        candidate_id: str | None = None,
    ) -> list[tuple[Decision, Outcome]]: ...


class InMemoryDecisionStore:
    """In-memory decision store.

    save_decision is insert-if-absent on request_id: when two requests race
    with the same id, the first write wins and both callers get it back.
    """

    def __init__(self) -> None:
        self._candidate_sets: dict[str, CandidateSet] = {}
        self._decisions: dict[str, Decision] = {}
        self._by_request_id: dict[str, str] = {}
        self._outcomes: dict[str, Outcome] = {}
        self._lock = threading.Lock()

    def save_candidate_set(self, candidate_set: CandidateSet) -> CandidateSet:
        with self._lock:
            self._candidate_sets[candidate_set.id] = candidate_set
        return candidate_set

    def get_candidate_set(self, candidate_set_id: str) -> CandidateSet | None:
        with self._lock:
            return self._candidate_sets.get(candidate_set_id)

    def save_decision(self, decision: Decision) -> Decision:
        with self._lock:
            existing_id = self._by_request_id.get(decision.request_id)
            if existing_id is not None:
                logger.info(
                    "decision_request_id_conflict",
                    request_id=decision.request_id,
                    existing_decision_id=existing_id,
                )
                return self._decisions[existing_id]
            self._decisions[decision.id] = decision
            self._by_request_id[decision.request_id] = decision.id
        return decision

    def get_decision(self, decision_id: str) -> Decision | None:
        with self._lock:
            return self._decisions.get(decision_id)

    def get_by_request_id(self, request_id: str) -> Decision | None:
        with self._lock:
            decision_id = self._by_request_id.get(request_id)
            return self._decisions.get(decision_id) if decision_id else None

    def upsert_outcome(self, outcome: Outcome) -> Outcome:
        with self._lock:
            self._outcomes[outcome.decision_id] = outcome
        return outcome

    def get_outcome(self, decision_id: str) -> Outcome | None:
        with self._lock:
            return self._outcomes.get(decision_id)

    def list_decisions_since(
        self, since: datetime, segment_key: str | None = None
    ) -> list[Decision]:
        with self._lock:
            return [
                d
                for d in self._decisions.values()
                if d.created_at >= since and (segment_key is None or d.segment_key == segment_key)
            ]

    def list_outcomes_since(
        self,
        since: datetime,
        segment_key: str | None = None,
        candidate_id: str | None = None,
    ) -> list[tuple[Decision, Outcome]]:
        with self._lock:
            joined: list[tuple[Decision, Outcome]] = []
            for decision_id, outcome in self._outcomes.items():
                decision = self._decisions.get(decision_id)
                if decision is None or decision.created_at < since:
                    continue
                if segment_key is not None and decision.segment_key != segment_key:
                    continue
                if candidate_id is not None and decision.chosen_candidate_id != candidate_id:
                    continue
                joined.append((decision, outcome))
            return joined
