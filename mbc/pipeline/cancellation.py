"""Batch cancellation signal and the one-shot outcome latch used by jobs."""

import logging
import threading
from typing import Callable, Generic, List, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class Registration:
    """Handle returned by CancellationToken.register; call unregister() when done."""

    def __init__(self, token: "CancellationToken", callback: Callable[[], None]):
        self._token = token
        self._callback = callback

    def unregister(self) -> None:
        self._token._remove(self._callback)

    def __enter__(self) -> "Registration":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unregister()
        return False


class CancellationToken:
    """Single-shot cancellation signal shared by one batch run.

    Callbacks run on the thread that calls cancel(), in registration order.
    A callback registered after cancellation runs immediately.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Fires the signal. Returns False if it had already fired."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                # One failing registration must not keep other processes alive
                logger.error(f"Cancellation callback failed: {e}")
        return True

    def register(self, callback: Callable[[], None]) -> Registration:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return Registration(self, callback)
        callback()
        return Registration(self, callback)

    def _remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class OutcomeLatch(Generic[T]):
    """Holds a value that can be set exactly once (first writer wins)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._value: Optional[T] = None

    def resolve(self, value: T) -> bool:
        with self._lock:
            if self._done.is_set():
                return False
            self._value = value
            self._done.set()
            return True

    @property
    def resolved(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[T]:
        self._done.wait(timeout)
        return self._value
