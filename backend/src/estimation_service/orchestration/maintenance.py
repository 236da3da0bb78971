"""Background rollup refresh and epsilon adaptation."""

import threading
from typing import Optional

from estimation_service.contracts.metrics import SegmentMetrics
from estimation_service.logging_config import get_logger
from estimation_service.services.epsilon import EpsilonController
from estimation_service.services.segment_metrics import SegmentMetricsAggregator

logger = get_logger(__name__)


class MaintenanceRunner:
    """
    Periodic job off the request path.

    Each tick refreshes the segment rollups and folds every fresh segment
    snapshot into the epsilon controller. Because adaptation is keyed on the
    snapshot's computed_at, a repeated tick over the same rollup is a no-op.
    """

    def __init__(
        self,
        metrics: SegmentMetricsAggregator,
        epsilon_controller: EpsilonController,
        interval_s: float = 60.0,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.metrics = metrics
        self.epsilon_controller = epsilon_controller
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> dict[str, SegmentMetrics]:
        segments = self.metrics.refresh()
        for segment_key, snapshot in segments.items():
            self.epsilon_controller.adapt(segment_key, snapshot)
        return segments

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="estimation-maintenance", daemon=True
        )
        self._thread.start()
        logger.info("maintenance_started", interval_s=self.interval_s)

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None
        logger.info("maintenance_stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                # Keep the loop alive; the next tick retries
                logger.exception("maintenance_tick_failed")
            self._stop.wait(self.interval_s)
