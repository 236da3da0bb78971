"""Trace collection for rank pipeline observability."""

import threading
from collections import deque
from typing import Callable, Optional

from estimation_service.contracts.trace import RankTrace

TraceCallback = Callable[[RankTrace], None]


class TraceCollector:
    """
    Bounded in-memory store of RankTrace records.

    The optional callback sees every recorded trace, which is where a file,
    database or OTel exporter would hook in. Oldest traces are evicted first.
    """

    def __init__(
        self,
        callback: Optional[TraceCallback] = None,
        max_traces: int = 1000,
    ):
        if max_traces <= 0:
            raise ValueError("max_traces must be > 0")
        self._traces: deque[RankTrace] = deque(maxlen=max_traces)
        self._callback = callback
        self._lock = threading.Lock()

    def record(self, trace: RankTrace) -> None:
        with self._lock:
            self._traces.append(trace)
        if self._callback is not None:
            self._callback(trace)

    def get_traces(self) -> list[RankTrace]:
        """All stored traces, newest last."""
        with self._lock:
            return list(self._traces)

    def get_by_id(self, trace_id: str) -> Optional[RankTrace]:
        with self._lock:
            return next((t for t in self._traces if t.trace_id == trace_id), None)

    def get_by_request_id(self, request_id: str) -> list[RankTrace]:
        """Every trace for a request id; retries of one request share it."""
        with self._lock:
            return [t for t in self._traces if t.request_id == request_id]

    def get_latest(self, n: int = 1) -> list[RankTrace]:
        with self._lock:
            if n <= 0:
                return []
            return list(self._traces)[-n:]

    def clear(self) -> None:
        with self._lock:
            self._traces.clear()

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._traces)
