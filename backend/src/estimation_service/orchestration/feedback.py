"""Feedback path: outcomes for the aggregator, call results for the health guard."""

from typing import Any, Callable, Literal, Optional, TypeVar

from pydantic import ValidationError

from estimation_service.contracts.decision import Decision, Outcome, OutcomeInput
from estimation_service.errors import (
    DecisionNotFoundError,
    EstimationError,
    InvalidRequestError,
    StoreUnavailableError,
)
from estimation_service.logging_config import get_logger
from estimation_service.services.candidate_store import CandidateStore
from estimation_service.services.decision_store import DecisionStore
from estimation_service.services.failure_tracker import FailureTracker
from estimation_service.services.segment_metrics import SegmentMetricsAggregator

logger = get_logger(__name__)

T = TypeVar("T")

FEEDBACK_BAD_REQUEST = "FBK_BAD_REQUEST"
FEEDBACK_STORE_ERROR = "FBK_STORE_ERROR"


class FeedbackService:
    """
    Attributes real-world results back to decisions.

    record_outcome only writes; aggregation happens on the next metrics
    read or rollup refresh.
    """

    def __init__(
        self,
        decision_store: DecisionStore,
        metrics: Optional[SegmentMetricsAggregator] = None,
        candidate_store: Optional[CandidateStore] = None,
        failure_tracker: Optional[FailureTracker] = None,
    ):
        self.decision_store = decision_store
        self.metrics = metrics
        self.candidate_store = candidate_store
        self.failure_tracker = failure_tracker

    def record_outcome(self, decision_id: str, payload: OutcomeInput | dict[str, Any]) -> Outcome:
        """
        Record or merge the outcome of a decision.

        Args:
            decision_id: Decision the outcome belongs to
            payload: OutcomeInput or its dict form; needs at least one signal

        Returns:
            The stored Outcome (merged with any earlier feedback)

        Raises:
            InvalidRequestError: payload invalid or carries no signal
            DecisionNotFoundError: unknown decision_id
            StoreUnavailableError: decision store unreachable
        """
        update = self._validate(payload)
        decision = self._require_decision(decision_id)

        existing = self._call_store(lambda: self.decision_store.get_outcome(decision_id))
        if existing is not None:
            outcome = existing.merged_with(update)
        else:
            fields = {k: v for k, v in update.model_dump().items() if v is not None}
            outcome = Outcome(decision_id=decision_id, **fields)

        stored = self._call_store(lambda: self.decision_store.upsert_outcome(outcome))
        if self.metrics is not None:
            self.metrics.invalidate(decision.segment_key, decision.chosen_candidate_id)

        logger.info(
            "outcome_recorded",
            decision_id=decision_id,
            segment_key=decision.segment_key,
            candidate_id=decision.chosen_candidate_id,
            merged=existing is not None,
            rejected=stored.rejected,
        )
        return stored

    def report_provider_result(
        self,
        decision_id: str,
        success: bool,
        severe: bool = False,
        reason: str = "provider_error",
        scope: Literal["candidate", "provider"] = "candidate",
    ) -> bool:
        """
        Feed a provider call result into the failure tracker.

        Failures count against the chosen candidate, or the whole provider
        when scope="provider". A success closes the candidate breaker and
        resets the provider failure count. A provider-wide breaker stays open
        until it expires.

        Returns:
            True when this report opened a circuit breaker
        """
        if self.failure_tracker is None or self.candidate_store is None:
            raise InvalidRequestError(
                "Provider result reporting is not configured",
                code=FEEDBACK_BAD_REQUEST,
                context={"decision_id": decision_id},
            )
        decision = self._require_decision(decision_id)
        candidate_id = decision.chosen_candidate_id
        candidate = self._call_store(lambda: self.candidate_store.get_by_id(candidate_id))

        if success:
            self.failure_tracker.record_success(candidate.provider, candidate_id)
            self.failure_tracker.reset_failures(candidate.provider)
            return False

        opened = self.failure_tracker.record_failure(
            candidate.provider,
            candidate_id=candidate_id if scope == "candidate" else None,
            reason=reason,
            severe=severe,
        )
        logger.info(
            "provider_failure_reported",
            decision_id=decision_id,
            provider=candidate.provider,
            candidate_id=candidate_id,
            scope=scope,
            severe=severe,
            breaker_opened=opened,
        )
        return opened

    def _validate(self, payload: OutcomeInput | dict[str, Any]) -> OutcomeInput:
        if isinstance(payload, OutcomeInput):
            update = payload
        else:
            try:
                update = OutcomeInput.model_validate(payload)
            except ValidationError as e:
                fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
                raise InvalidRequestError(
                    f"Invalid outcome payload: {e.error_count()} validation error(s)",
                    code=FEEDBACK_BAD_REQUEST,
                    context={"fields": fields},
                ) from e
        if not update.has_signal():
            raise InvalidRequestError(
                "Outcome payload must carry at least one signal",
                code=FEEDBACK_BAD_REQUEST,
            )
        return update

    def _require_decision(self, decision_id: str) -> Decision:
        decision = self._call_store(lambda: self.decision_store.get_decision(decision_id))
        if decision is None:
            raise DecisionNotFoundError(
                f"Decision not found: {decision_id}",
                context={"decision_id": decision_id},
            )
        return decision

    def _call_store(self, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except EstimationError:
            raise
        except Exception as e:
            raise StoreUnavailableError(
                f"Store unavailable: {e}",
                store="decision",
                code=FEEDBACK_STORE_ERROR,
                context={"original_error_type": type(e).__name__},
            ) from e
