"""Turns provider call failures into circuit breaker state."""

import threading
from dataclasses import dataclass

from estimation_service.logging_config import get_logger
from estimation_service.services.candidate_store import CandidateStore
from estimation_service.services.health import CircuitBreakerRegistry, breaker_key

logger = get_logger(__name__)


@dataclass
class FailureCounter:
    consecutive_failures: int = 0
    consecutive_trips: int = 0


class FailureTracker:
    """
    Counts consecutive failures per provider or provider+candidate key.

    Reaching failure_threshold trips the breaker. A key that trips again
    without a success in between gets the severe duration. A candidate key
    that reaches deactivate_after_trips is flipped to inactive.
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        candidate_store: CandidateStore | None = None,
        failure_threshold: int = 3,
        deactivate_after_trips: int = 3,
    ):
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if deactivate_after_trips <= 0:
            raise ValueError("deactivate_after_trips must be > 0")
        self._breakers = breakers
        self._candidate_store = candidate_store
        self.failure_threshold = failure_threshold
        self.deactivate_after_trips = deactivate_after_trips
        self._counters: dict[str, FailureCounter] = {}
        self._lock = threading.Lock()

    def record_failure(
        self,
        provider: str,
        candidate_id: str | None = None,
        reason: str = "provider_error",
        severe: bool = False,
    ) -> bool:
        """Record a failed provider call. Returns True if a breaker opened."""
        key = breaker_key(provider, candidate_id)
        with self._lock:
            counter = self._counters.setdefault(key, FailureCounter())
            counter.consecutive_failures += 1
            if not severe and counter.consecutive_failures < self.failure_threshold:
                return False
            counter.consecutive_failures = 0
            counter.consecutive_trips += 1
            trips = counter.consecutive_trips

        escalate = severe or trips > 1
        self._breakers.open(provider, reason, candidate_id=candidate_id, severe=escalate)

        if candidate_id and self._candidate_store is not None and trips >= self.deactivate_after_trips:
            self._candidate_store.set_status(candidate_id, "inactive")
            logger.warning(
                "candidate_deactivated",
                provider=provider,
                candidate_id=candidate_id,
                trips=trips,
            )
        return True

    def record_success(self, provider: str, candidate_id: str | None = None) -> None:
        """Reset counters for the key and close any breaker on it."""
        key = breaker_key(provider, candidate_id)
        with self._lock:
            self._counters.pop(key, None)
        self._breakers.close(provider, candidate_id)

    def reset_failures(self, provider: str, candidate_id: str | None = None) -> None:
        """Reset the consecutive-failure count for the key, leaving any open breaker in place."""
        with self._lock:
            self._counters.pop(breaker_key(provider, candidate_id), None)

    def get_counter(self, provider: str, candidate_id: str | None = None) -> FailureCounter:
        with self._lock:
            counter = self._counters.get(breaker_key(provider, candidate_id))
            return FailureCounter(**vars(counter)) if counter else FailureCounter()
