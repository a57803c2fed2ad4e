import logging
import threading
from typing import Optional, Set
from mbc.domain.events import BatchProgressUpdated
from mbc.domain.models import BatchProgress
from mbc.infrastructure.event_bus import EventBus


class ProgressAggregator:
    """Batch-wide completed/total counter shared by all job threads.

    Each file is counted at most once, so a late duplicate completion
    report cannot push the count past the total.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus
        self._lock = threading.Lock()
        self._completed: Set[str] = set()
        self._total = 0
        self._current_percent = 0.0
        self.logger = logging.getLogger(__name__)

    def _publish(self, progress: BatchProgress):
        if self.event_bus:
            self.event_bus.publish(BatchProgressUpdated(progress=progress))

    def _snapshot_locked(self) -> BatchProgress:
        return BatchProgress(
            completed=len(self._completed),
            total=self._total,
            current_percent=self._current_percent,
        )

    def start(self, total: int):
        with self._lock:
            self._completed.clear()
            self._total = max(0, total)
            self._current_percent = 0.0
            progress = self._snapshot_locked()
        self._publish(progress)

    def reset(self):
        self.start(0)

    def mark_completed(self, key: str) -> bool:
        """Counts `key` as completed. Returns False if it was already counted."""
        with self._lock:
            if key in self._completed:
                return False
            if len(self._completed) >= self._total:
                self.logger.warning(f"Completion for {key} ignored: batch total {self._total} reached")
                return False
            self._completed.add(key)
            progress = self._snapshot_locked()
        self._publish(progress)
        return True

    def set_current_percent(self, percent: float):
        with self._lock:
            self._current_percent = percent
            progress = self._snapshot_locked()
        self._publish(progress)

    def snapshot(self) -> BatchProgress:
        with self._lock:
            return self._snapshot_locked()
