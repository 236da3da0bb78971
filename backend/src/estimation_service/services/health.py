"""Health guard: tiered circuit breakers and the last-known-good cache."""

import time
from datetime import datetime, timezone
from typing import Callable

from estimation_service.contracts.candidate import Candidate
from estimation_service.contracts.health import CircuitBreakerState, LKGEntry
from estimation_service.logging_config import get_logger
from estimation_service.services.health_backends import HealthStateBackend

logger = get_logger(__name__)

BREAKER_PREFIX = "cb:"
LKG_PREFIX = "lkg:"

DEFAULT_BREAK_DURATION_S = 10 * 60
DEFAULT_SEVERE_BREAK_DURATION_S = 30 * 60
DEFAULT_LKG_TTL_S = 30 * 60


def breaker_key(provider: str, candidate_id: str | None = None) -> str:
    if candidate_id:
        return f"{BREAKER_PREFIX}candidate:{provider}:{candidate_id}"
    return f"{BREAKER_PREFIX}provider:{provider}"


class CircuitBreakerRegistry:
    """
    Provider-wide and candidate-specific breakers with tiered durations.

    Breakers clear themselves once break_until passes; expiry is checked
    on read, so no background sweep is needed.
    """

    def __init__(
        self,
        backend: HealthStateBackend,
        normal_duration_s: float = DEFAULT_BREAK_DURATION_S,
        severe_duration_s: float = DEFAULT_SEVERE_BREAK_DURATION_S,
        clock: Callable[[], float] = time.time,
    ):
        if normal_duration_s <= 0 or severe_duration_s <= 0:
            raise ValueError("breaker durations must be > 0")
        self._backend = backend
        self.normal_duration_s = normal_duration_s
        self.severe_duration_s = severe_duration_s
        self._clock = clock

    def is_open(self, provider: str, candidate_id: str | None = None) -> bool:
        return self.get_state(provider, candidate_id) is not None

    def get_state(self, provider: str, candidate_id: str | None = None) -> CircuitBreakerState | None:
        key = breaker_key(provider, candidate_id)
        raw = self._backend.get(key)
        if raw is None:
            return None
        state = CircuitBreakerState.model_validate_json(raw)
        if self._now() >= state.break_until:
            self._backend.delete(key)
            return None
        return state

    def open(
        self,
        provider: str,
        reason: str,
        candidate_id: str | None = None,
        severe: bool = False,
    ) -> CircuitBreakerState:
        """Open (or extend) a breaker. A shorter break never shortens a longer one."""
        duration_s = self.severe_duration_s if severe else self.normal_duration_s
        break_until = datetime.fromtimestamp(self._clock() + duration_s, tz=timezone.utc)
        existing = self.get_state(provider, candidate_id)
        if existing is not None and existing.break_until >= break_until:
            return existing

        state = CircuitBreakerState(
            provider=provider,
            candidate_id=candidate_id,
            break_until=break_until,
            reason=reason,
            severe=severe,
        )
        self._backend.set(breaker_key(provider, candidate_id), state.model_dump_json(), duration_s)
        logger.warning(
            "circuit_breaker_opened",
            provider=provider,
            candidate_id=candidate_id,
            reason=reason,
            severe=severe,
            break_until=break_until.isoformat(),
        )
        return state

    def close(self, provider: str, candidate_id: str | None = None) -> bool:
        closed = self._backend.delete(breaker_key(provider, candidate_id))
        if closed:
            logger.info("circuit_breaker_closed", provider=provider, candidate_id=candidate_id)
        return closed

    def list_open(self) -> list[CircuitBreakerState]:
        """Snapshot of live breakers, for dashboards and debugging."""
        now = self._now()
        states = []
        for _, raw in self._backend.scan(BREAKER_PREFIX):
            state = CircuitBreakerState.model_validate_json(raw)
            if now < state.break_until:
                states.append(state)
        return states

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)


class LKGCache:
    """Segment key -> last candidate deliberately chosen as best."""

    def __init__(
        self,
        backend: HealthStateBackend,
        default_ttl_s: float = DEFAULT_LKG_TTL_S,
        clock: Callable[[], float] = time.time,
    ):
        if default_ttl_s <= 0:
            raise ValueError("default_ttl_s must be > 0")
        self._backend = backend
        self.default_ttl_s = default_ttl_s
        self._clock = clock

    def get(self, segment_key: str) -> str | None:
        entry = self.get_entry(segment_key)
        return entry.candidate_id if entry else None

    def get_entry(self, segment_key: str) -> LKGEntry | None:
        key = f"{LKG_PREFIX}{segment_key}"
        raw = self._backend.get(key)
        if raw is None:
            return None
        entry = LKGEntry.model_validate_json(raw)
        if datetime.fromtimestamp(self._clock(), tz=timezone.utc) >= entry.expires_at:
            self._backend.delete(key)
            return None
        return entry

    def set(self, segment_key: str, candidate_id: str, ttl_s: float | None = None) -> LKGEntry:
        ttl = self.default_ttl_s if ttl_s is None else ttl_s
        entry = LKGEntry(
            segment_key=segment_key,
            candidate_id=candidate_id,
            expires_at=datetime.fromtimestamp(self._clock() + ttl, tz=timezone.utc),
        )
        self._backend.set(f"{LKG_PREFIX}{segment_key}", entry.model_dump_json(), ttl)
        logger.debug("lkg_set", segment_key=segment_key, candidate_id=candidate_id)
        return entry

    def invalidate(self, segment_key: str) -> bool:
        return self._backend.delete(f"{LKG_PREFIX}{segment_key}")


class HealthGuard:
    """Breakers and LKG cache sharing one lifecycle."""

    def __init__(self, breakers: CircuitBreakerRegistry, lkg: LKGCache):
        self.breakers = breakers
        self.lkg = lkg

    def is_blocked(self, candidate: Candidate) -> bool:
        """True when either the provider or the candidate itself is broken."""
        return self.breakers.is_open(candidate.provider) or self.breakers.is_open(
            candidate.provider, candidate.id
        )

    def partition(self, candidates: list[Candidate]) -> tuple[list[Candidate], list[Candidate]]:
        """Split the pool into (available, broken), preserving pool order."""
        available: list[Candidate] = []
        broken: list[Candidate] = []
        for candidate in candidates:
            (broken if self.is_blocked(candidate) else available).append(candidate)
        return available, broken
