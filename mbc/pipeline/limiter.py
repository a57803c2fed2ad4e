import logging
import threading
from typing import Optional
from mbc.config.models import MAX_CONVERSION_JOBS
from mbc.pipeline.cancellation import CancellationToken


class ConversionLimiter:
    """Counting gate that caps how many ffmpeg processes run at once.

    The limit can change while a batch runs; waiting callers pick up the new
    value on their next wake-up. A cancelled token wakes every waiter.
    """

    def __init__(self, limit: int):
        self._current_max = self._bound(limit)
        self._active = 0
        self._lock = threading.Condition()
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _bound(value: int) -> int:
        return max(1, min(MAX_CONVERSION_JOBS, int(value)))

    @property
    def limit(self) -> int:
        with self._lock:
            return self._current_max

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def set_limit(self, value: int) -> int:
        with self._lock:
            self._current_max = self._bound(value)
            self._lock.notify_all()
            return self._current_max

    def _wake(self):
        with self._lock:
            self._lock.notify_all()

    def acquire(self, cancel_token: Optional[CancellationToken] = None) -> bool:
        """Blocks until a slot is free. Returns False if cancelled while waiting."""
        registration = cancel_token.register(self._wake) if cancel_token else None
        try:
            with self._lock:
                while self._active >= self._current_max:
                    if cancel_token and cancel_token.is_cancelled:
                        return False
                    self._lock.wait(timeout=0.5)
                if cancel_token and cancel_token.is_cancelled:
                    return False
                self._active += 1
                return True
        finally:
            if registration:
                registration.unregister()

    def release(self):
        with self._lock:
            if self._active <= 0:
                self.logger.error("Limiter released more times than acquired")
                return
            self._active -= 1
            self._lock.notify_all()
