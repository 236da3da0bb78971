"""Rank orchestrator: one request in, one persisted decision out."""

import time
import uuid
from typing import Any, Callable, Optional, TypeVar

from pydantic import ValidationError

from estimation_service.config import Settings, get_settings
from estimation_service.contracts.candidate import Candidate
from estimation_service.contracts.decision import CandidateSet, CandidateSetEntry, Decision
from estimation_service.contracts.metrics import SegmentMetrics
from estimation_service.contracts.ranking import (
    RankRequest,
    RankResponse,
    RankTimings,
    ScoredCandidate,
    TaskInput,
)
from estimation_service.contracts.trace import RankTrace
from estimation_service.errors import (
    EstimationError,
    InvalidRequestError,
    NoCandidateAvailableError,
    StoreUnavailableError,
)
from estimation_service.logging_config import (
    bind_rank_context,
    clear_correlation_id,
    clear_rank_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)
from estimation_service.ranking.coarse import coarse_rank, compute_coarse_features
from estimation_service.ranking.explore import ExploreDecision, ExplorePolicy
from estimation_service.ranking.features import (
    DEFAULT_COARSE_WEIGHTS,
    DEFAULT_FEATURE_POLICY,
    FeatureDefaults,
    PriceRange,
    RankedCandidate,
    estimate_cost,
    estimate_latency,
    linear_score,
)
from estimation_service.ranking.filters import FilterReasons, apply_hard_filters
from estimation_service.ranking.fine import FineRanker, FineRankTimeout
from estimation_service.services.candidate_store import CandidateStore
from estimation_service.services.decision_store import DecisionStore
from estimation_service.services.epsilon import EpsilonController
from estimation_service.services.feature_store import FeatureLookup
from estimation_service.services.health import HealthGuard
from estimation_service.services.segment_metrics import SegmentMetricsAggregator
from estimation_service.services.trace import TraceCollector

logger = get_logger(__name__)

T = TypeVar("T")


class RankWarnings:
    """Warning codes attached to RankResponse.warnings."""
    IDEMPOTENT_CACHE_HIT = "idempotent_cache_hit"
    FALLBACK_USED = "fallback_used"
    FINE_RANK_SKIPPED_DEADLINE = "fine_rank_skipped_deadline"
    EXPLORE_FORCED_OFF = "explore_forced_off"
    FEATURE_LOOKUP_FAILED = "feature_lookup_failed"
    SEGMENT_METRICS_DEGRADED = "segment_metrics_degraded"


class RankOrchestrator:
    """
    Runs validate -> load pool -> health -> filter -> coarse -> fine ->
    explore -> persist -> respond.

    A request id that already produced a Decision is answered from the
    stored Decision and CandidateSet without re-ranking.
    """

    def __init__(
        self,
        candidate_store: CandidateStore,
        decision_store: DecisionStore,
        health_guard: HealthGuard,
        metrics: SegmentMetricsAggregator,
        fine_ranker: Optional[FineRanker] = None,
        explore_policy: Optional[ExplorePolicy] = None,
        epsilon_controller: Optional[EpsilonController] = None,
        feature_lookup: Optional[FeatureLookup] = None,
        trace_collector: Optional[TraceCollector] = None,
        settings: Optional[Settings] = None,
        coarse_weights: Optional[dict[str, float]] = None,
        policy: FeatureDefaults = DEFAULT_FEATURE_POLICY,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.candidate_store = candidate_store
        self.decision_store = decision_store
        self.health_guard = health_guard
        self.metrics = metrics
        self.fine_ranker = fine_ranker or FineRanker(metrics, policy=policy)
        self.explore_policy = explore_policy or ExplorePolicy()
        self.epsilon_controller = epsilon_controller or EpsilonController(self.explore_policy.config)
        self.feature_lookup = feature_lookup
        self.trace_collector = trace_collector
        self.settings = settings or get_settings()
        self.coarse_weights = coarse_weights or DEFAULT_COARSE_WEIGHTS
        self.policy = policy
        self.price_range = PriceRange(self.settings.price_min, self.settings.price_max)
        self._clock = clock

    def rank(self, request: RankRequest | dict[str, Any]) -> RankResponse:
        """
        Select one candidate for a task.

        Args:
            request: RankRequest or its dict form

        Returns:
            RankResponse for the persisted Decision

        Raises:
            InvalidRequestError: request fails validation
            NoCandidateAvailableError: nothing survives filtering and no LKG applies
            StoreUnavailableError: candidate or decision store unreachable
        """
        start = self._clock()
        trace = RankTrace()
        # A correlation id bound by the caller is kept; otherwise the trace id serves
        owns_correlation = get_correlation_id() is None
        if owns_correlation:
            set_correlation_id(trace.trace_id)
        try:
            req = self._validate(request)
            request_id = req.options.request_id or str(uuid.uuid4())
            segment_key = req.segment_key
            bind_rank_context(request_id, segment_key)
            trace.request_id = request_id
            trace.segment_key = segment_key
            trace.top_k = self._top_k(req)
            trace.explore_requested = req.options.explore

            response = self._rank(req, request_id, segment_key, start, trace)
            trace.decision_id = response.decision_id
            trace.chosen_candidate_id = response.chosen.candidate_id
            trace.explore = response.explore
            trace.fallback_used = response.fallback_used
            trace.warnings = list(response.warnings)
            trace.coarse_ms = response.timings.coarse_ms
            trace.fine_ms = response.timings.fine_ms
            if RankWarnings.IDEMPOTENT_CACHE_HIT in response.warnings:
                trace.status = "cached"
            return response
        except Exception as e:
            trace.status = "error"
            trace.error_type = type(e).__name__
            trace.error_message = str(e)[:200]
            logger.warning(
                "rank_failed",
                error_type=type(e).__name__,
                error_code=getattr(e, "code", None),
            )
            raise
        finally:
            trace.duration_ms = self._elapsed_ms(start)
            if self.trace_collector is not None:
                self.trace_collector.record(trace)
            clear_rank_context()
            if owns_correlation:
                clear_correlation_id()

    def _rank(
        self,
        req: RankRequest,
        request_id: str,
        segment_key: str,
        start: float,
        trace: RankTrace,
    ) -> RankResponse:
        if req.options.request_id is not None:
            existing = self._call_store(
                "decision", lambda: self.decision_store.get_by_request_id(request_id)
            )
            if existing is not None:
                logger.info("rank_idempotent_hit", decision_id=existing.id)
                return self._replay(existing, start)

        deadline_ms = req.options.deadline_ms or self.settings.rank_deadline_ms
        deadline_at = start + deadline_ms / 1000.0

        pool = self._call_store("candidate", self.candidate_store.list_active)
        available, broken = self.health_guard.partition(pool)
        passed, dropped = apply_hard_filters(available, req.task, req.constraints)
        trace.pool_size = len(pool)
        trace.broken_count = len(broken)
        trace.filtered_count = len(dropped)

        if not passed:
            return self._lkg_fallback(req, request_id, segment_key, pool, broken, dropped, start)

        warnings: list[str] = []
        task_features = self._lookup_features(req, warnings)

        coarse_start = self._clock()
        coarse = coarse_rank(
            passed,
            req.task,
            task_features,
            weights=self.coarse_weights,
            top_k=self._top_k(req),
            price_range=self.price_range,
            policy=self.policy,
        )
        coarse_ms = self._elapsed_ms(coarse_start)

        fine_start = self._clock()
        degraded = False
        remaining_s = deadline_at - self._clock()
        if remaining_s <= 0:
            degraded = True
            ranked = coarse
        else:
            try:
                ranked = self.fine_ranker.rank(coarse, segment_key, timeout_s=remaining_s)
            except FineRankTimeout:
                degraded = True
                ranked = coarse
        fine_ms = self._elapsed_ms(fine_start)
        trace.ranked_count = len(ranked)
        if any(r.metrics_degraded for r in ranked):
            warnings.append(RankWarnings.SEGMENT_METRICS_DEGRADED)

        if degraded:
            warnings.append(RankWarnings.FINE_RANK_SKIPPED_DEADLINE)
            logger.warning(
                "fine_rank_skipped_deadline",
                deadline_ms=deadline_ms,
                coarse_count=len(coarse),
            )

        choice = self._choose(req, segment_key, ranked, degraded, deadline_at)
        trace.epsilon = choice.epsilon
        if choice.forced_off:
            warnings.append(RankWarnings.EXPLORE_FORCED_OFF)

        entries = [
            self._entry(r, rank=i + 1, task=req.task) for i, r in enumerate(ranked)
        ]
        entries.extend(
            self._filtered_entries(
                [(c, FilterReasons.CIRCUIT_OPEN) for c in broken] + dropped,
                first_rank=len(entries) + 1,
            )
        )
        candidate_set = CandidateSet(task=req.task, context=req.context, entries=tuple(entries))
        chosen_entry = entries[choice.index]

        decision = Decision(
            candidate_set_id=candidate_set.id,
            chosen_candidate_id=chosen_entry.candidate_id,
            segment_key=segment_key,
            strategy_version=req.options.strategy_version or self.settings.strategy_version,
            weights_version=self.settings.weights_version,
            explore=choice.explore,
            degraded=degraded,
            expected_cost=chosen_entry.expected_cost,
            expected_latency=chosen_entry.expected_latency,
            request_id=request_id,
        )
        stored = self._persist(candidate_set, decision)
        if stored.id != decision.id:
            # Lost an insert race on request_id; answer with the winner
            return self._replay(stored, start)

        if not choice.explore:
            self._remember_lkg(segment_key, chosen_entry.candidate_id)

        response = self._build_response(
            decision=decision,
            ranked_entries=entries[: len(ranked)],
            chosen_entry=chosen_entry,
            warnings=warnings,
            timings=RankTimings(
                coarse_ms=coarse_ms,
                fine_ms=fine_ms,
                total_ms=self._elapsed_ms(start),
            ),
            metadata={
                "request_id": request_id,
                "trace_id": trace.trace_id,
                "epsilon": choice.epsilon,
                "degraded": degraded,
                "pool_size": len(pool),
                "broken_count": len(broken),
                "filtered_count": len(dropped),
            },
        )
        logger.info(
            "rank_completed",
            decision_id=decision.id,
            chosen_candidate_id=decision.chosen_candidate_id,
            explore=decision.explore,
            degraded=degraded,
            total_ms=round(response.timings.total_ms, 2),
        )
        return response

    def _validate(self, request: RankRequest | dict[str, Any]) -> RankRequest:
        if isinstance(request, RankRequest):
            return request
        try:
            return RankRequest.model_validate(request)
        except ValidationError as e:
            fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise InvalidRequestError(
                f"Invalid rank request: {e.error_count()} validation error(s)",
                context={"fields": fields},
            ) from e

    def _top_k(self, req: RankRequest) -> int:
        return req.options.top_k or self.settings.default_top_k

    def _call_store(self, store: str, operation: Callable[[], T]) -> T:
        """Run a store call, surfacing unexpected failures as StoreUnavailableError."""
        try:
            return operation()
        except EstimationError:
            raise
        except Exception as e:
            raise StoreUnavailableError(
                f"{store} store unavailable: {e}",
                store=store,
                context={"original_error_type": type(e).__name__},
            ) from e

    def _lookup_features(self, req: RankRequest, warnings: list[str]) -> dict[str, Any] | None:
        ref = req.task.subject_ref
        if ref is None or self.feature_lookup is None:
            return None
        try:
            return self.feature_lookup.get_features_by_ref(ref)
        except Exception as e:
            warnings.append(RankWarnings.FEATURE_LOOKUP_FAILED)
            logger.warning(
                "feature_lookup_failed",
                entity_type=ref.entity_type,
                entity_id=ref.entity_id,
                error_type=type(e).__name__,
            )
            return None

    def _choose(
        self,
        req: RankRequest,
        segment_key: str,
        ranked: list[RankedCandidate],
        degraded: bool,
        deadline_at: float,
    ) -> ExploreDecision:
        if not req.options.explore or degraded:
            return ExploreDecision(index=0, explore=False)
        if self._clock() >= deadline_at:
            # Segment metrics may need an on-demand scan; past the deadline serve rank 1
            logger.info("explore_skipped_deadline", ranked_count=len(ranked))
            return ExploreDecision(index=0, explore=False)
        segment_metrics = self._segment_metrics(segment_key)
        epsilon = self.epsilon_controller.get(segment_key)
        return self.explore_policy.choose(ranked, epsilon=epsilon, segment_metrics=segment_metrics)

    def _segment_metrics(self, segment_key: str) -> SegmentMetrics | None:
        try:
            return self.metrics.get_segment(segment_key)
        except Exception as e:
            logger.warning("segment_metrics_unavailable", error_type=type(e).__name__)
            return None

    def _lkg_fallback(
        self,
        req: RankRequest,
        request_id: str,
        segment_key: str,
        pool: list[Candidate],
        broken: list[Candidate],
        dropped: list[tuple[Candidate, str]],
        start: float,
    ) -> RankResponse:
        """Serve the segment's last-known-good candidate as a single-entry set."""
        lkg_id = self.health_guard.lkg.get(segment_key)
        candidate = next((c for c in pool if c.id == lkg_id), None) if lkg_id else None
        if candidate is None or self.health_guard.is_blocked(candidate):
            raise NoCandidateAvailableError(
                "No candidate satisfies the constraints and no last-known-good is usable",
                context={
                    "segment_key": segment_key,
                    "pool_size": len(pool),
                    "broken_count": len(broken),
                    "filtered_count": len(dropped),
                    "lkg_candidate_id": lkg_id,
                },
            )

        features = compute_coarse_features(
            candidate, req.task, price_range=self.price_range, policy=self.policy
        )
        fallback = RankedCandidate(
            candidate=candidate,
            pool_index=0,
            coarse_score=linear_score(features, self.coarse_weights),
            features=features,
        )
        entry = self._entry(fallback, rank=1, task=req.task)
        candidate_set = CandidateSet(task=req.task, context=req.context, entries=(entry,))
        decision = Decision(
            candidate_set_id=candidate_set.id,
            chosen_candidate_id=candidate.id,
            segment_key=segment_key,
            strategy_version=req.options.strategy_version or self.settings.strategy_version,
            weights_version=self.settings.weights_version,
            fallback_used=True,
            expected_cost=entry.expected_cost,
            expected_latency=entry.expected_latency,
            request_id=request_id,
        )
        stored = self._persist(candidate_set, decision)
        if stored.id != decision.id:
            return self._replay(stored, start)

        logger.warning(
            "rank_lkg_fallback",
            decision_id=decision.id,
            candidate_id=candidate.id,
            broken_count=len(broken),
            filtered_count=len(dropped),
        )
        return self._build_response(
            decision=decision,
            ranked_entries=[entry],
            chosen_entry=entry,
            warnings=[RankWarnings.FALLBACK_USED],
            timings=RankTimings(total_ms=self._elapsed_ms(start)),
            metadata={"request_id": request_id, "pool_size": len(pool)},
        )

    def _persist(self, candidate_set: CandidateSet, decision: Decision) -> Decision:
        self._call_store("decision", lambda: self.decision_store.save_candidate_set(candidate_set))
        return self._call_store("decision", lambda: self.decision_store.save_decision(decision))

    def _remember_lkg(self, segment_key: str, candidate_id: str) -> None:
        try:
            self.health_guard.lkg.set(segment_key, candidate_id, ttl_s=self.settings.lkg_ttl_s)
        except StoreUnavailableError as e:
            # The decision is already persisted; a stale LKG only affects future fallbacks
            logger.warning("lkg_update_failed", candidate_id=candidate_id, error_code=e.code)

    def _replay(self, decision: Decision, start: float) -> RankResponse:
        """Rebuild the response for an already persisted Decision."""
        candidate_set = self._call_store(
            "decision", lambda: self.decision_store.get_candidate_set(decision.candidate_set_id)
        )
        if candidate_set is None:
            raise StoreUnavailableError(
                f"Candidate set missing for decision {decision.id}",
                store="decision",
                context={"decision_id": decision.id, "candidate_set_id": decision.candidate_set_id},
                retry_hint=False,
            )
        chosen_entry = candidate_set.find(decision.chosen_candidate_id)
        if chosen_entry is None:
            raise StoreUnavailableError(
                f"Chosen candidate missing from candidate set {candidate_set.id}",
                store="decision",
                context={"decision_id": decision.id, "candidate_set_id": candidate_set.id},
                retry_hint=False,
            )
        warnings = [RankWarnings.IDEMPOTENT_CACHE_HIT]
        if decision.fallback_used:
            warnings.append(RankWarnings.FALLBACK_USED)
        return self._build_response(
            decision=decision,
            ranked_entries=candidate_set.ranked,
            chosen_entry=chosen_entry,
            warnings=warnings,
            timings=RankTimings(total_ms=self._elapsed_ms(start)),
            metadata={"request_id": decision.request_id},
        )

    def _build_response(
        self,
        decision: Decision,
        ranked_entries: list[CandidateSetEntry],
        chosen_entry: CandidateSetEntry,
        warnings: list[str],
        timings: RankTimings,
        metadata: dict[str, Any],
    ) -> RankResponse:
        candidates = [_scored(e) for e in ranked_entries]
        alternates = [
            c for c in candidates if c.candidate_id != chosen_entry.candidate_id
        ][: self.settings.max_alternates]
        return RankResponse(
            decision_id=decision.id,
            candidate_set_id=decision.candidate_set_id,
            strategy_version=decision.strategy_version,
            weights_version=decision.weights_version,
            segment_key=decision.segment_key,
            chosen=_scored(chosen_entry),
            candidates=candidates,
            alternates=alternates,
            explore=decision.explore,
            fallback_used=decision.fallback_used,
            timings=timings,
            warnings=warnings,
            metadata=metadata,
        )

    def _entry(self, ranked: RankedCandidate, rank: int, task: TaskInput) -> CandidateSetEntry:
        candidate = ranked.candidate
        return CandidateSetEntry(
            candidate_id=candidate.id,
            provider=candidate.provider,
            name=candidate.name,
            rank=rank,
            coarse_score=ranked.coarse_score,
            fine_score=ranked.fine_score,
            features=dict(ranked.features),
            expected_cost=estimate_cost(candidate, task),
            expected_latency=estimate_latency(candidate, ranked.metrics),
        )

    def _filtered_entries(
        self, dropped: list[tuple[Candidate, str]], first_rank: int
    ) -> list[CandidateSetEntry]:
        return [
            CandidateSetEntry(
                candidate_id=candidate.id,
                provider=candidate.provider,
                name=candidate.name,
                rank=first_rank + i,
                filtered=True,
                filter_reason=reason,
            )
            for i, (candidate, reason) in enumerate(dropped)
        ]

    def _elapsed_ms(self, since: float) -> float:
        return max(0.0, (self._clock() - since) * 1000.0)


def _scored(entry: CandidateSetEntry) -> ScoredCandidate:
    return ScoredCandidate.model_validate(entry.model_dump(exclude={"filtered", "filter_reason"}))
