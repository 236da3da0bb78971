"""Key/value stores with TTL for shared health state (breakers, LKG)."""

import threading
import time
from typing import Any, Callable

import redis
from typing_extensions import Protocol

from estimation_service.errors import StoreUnavailableError
from estimation_service.logging_config import get_logger

logger = get_logger(__name__)


class HealthStateBackend(Protocol):
    """Atomic key/value with per-key TTL, visible to every engine instance sharing it."""

    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str, ttl_s: float) -> None: ...
    def delete(self, key: str) -> bool: ...
    def scan(self, prefix: str) -> list[tuple[str, str]]: ...


class InMemoryHealthBackend:
    """Process-local backend. Correct for a single instance only."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: dict[str, tuple[str, float]] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live_value(key)

    def set(self, key: str, value: str, ttl_s: float) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_s)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def scan(self, prefix: str) -> list[tuple[str, str]]:
        with self._lock:
            results = []
            for key in [k for k in self._entries if k.startswith(prefix)]:
                value = self._live_value(key)
                if value is not None:
                    results.append((key, value))
            return results

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _live_value(self, key: str) -> str | None:
        """Lazy expiry. Must be called with lock held."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value


class RedisHealthBackend:
    """Redis-backed shared state; expiry is enforced by Redis PX TTLs."""

    def __init__(self, client: Any, key_prefix: str = "estimation"):
        self._client = client
        self._prefix = f"{key_prefix}:"

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "estimation") -> "RedisHealthBackend":
        client = redis.Redis.from_url(url, decode_responses=True)
        return cls(client, key_prefix=key_prefix)

    def get(self, key: str) -> str | None:
        try:
            value = self._client.get(self._prefix + key)
        except redis.RedisError as e:
            raise self._unavailable("get", e) from e
        return self._decode(value)

    def set(self, key: str, value: str, ttl_s: float) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        try:
            self._client.set(self._prefix + key, value, px=max(1, int(ttl_s * 1000)))
        except redis.RedisError as e:
            raise self._unavailable("set", e) from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self._client.delete(self._prefix + key))
        except redis.RedisError as e:
            raise self._unavailable("delete", e) from e

    def scan(self, prefix: str) -> list[tuple[str, str]]:
        try:
            full_keys = list(self._client.scan_iter(match=f"{self._prefix}{prefix}*"))
            if not full_keys:
                return []
            values = self._client.mget(full_keys)
        except redis.RedisError as e:
            raise self._unavailable("scan", e) from e
        results = []
        for full_key, value in zip(full_keys, values):
            decoded = self._decode(value)
            if decoded is None:
                continue
            key = self._decode(full_key) or ""
            results.append((key[len(self._prefix):], decoded))
        return results

    @staticmethod
    def _decode(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    @staticmethod
    def _unavailable(operation: str, error: Exception) -> StoreUnavailableError:
        logger.warning("health_backend_error", operation=operation, error_type=type(error).__name__)
        return StoreUnavailableError(
            f"Health state backend unavailable during {operation}",
            store="redis",
            context={"operation": operation, "error_type": type(error).__name__},
        )
