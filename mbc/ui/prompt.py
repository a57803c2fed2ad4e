"""Hands "continue the batch?" questions from job threads to the terminal thread.

Only the main thread may read the terminal (and receive Ctrl+C), so job
threads queue a request and block until the main loop answers it.
"""

import queue
import threading
from typing import Callable, Optional
from mbc.domain.models import SourceFile

Ask = Callable[[SourceFile, str], bool]


class _PromptRequest:
    def __init__(self, source: SourceFile, message: str):
        self.source = source
        self.message = message
        self.answer = False
        self._answered = threading.Event()

    def resolve(self, answer: bool):
        self.answer = answer
        self._answered.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._answered.wait(timeout)


class FailurePrompter:
    def __init__(self):
        self._requests: "queue.Queue[_PromptRequest]" = queue.Queue()
        self._closed = threading.Event()

    def decide(self, source: SourceFile, message: str) -> bool:
        """Called on a job thread. Blocks until the terminal thread answers."""
        if self._closed.is_set():
            return False
        request = _PromptRequest(source, message)
        self._requests.put(request)
        while not request.wait(timeout=0.2):
            if self._closed.is_set():
                return False
        return request.answer

    def serve_pending(self, ask: Ask) -> int:
        """Answers queued requests with `ask`. Called on the terminal thread."""
        served = 0
        while True:
            try:
                request = self._requests.get_nowait()
            except queue.Empty:
                return served
            try:
                request.resolve(bool(ask(request.source, request.message)))
            except BaseException:
                request.resolve(False)
                raise
            served += 1

    def close(self):
        """Rejects pending and future requests."""
        self._closed.set()
        while True:
            try:
                self._requests.get_nowait().resolve(False)
            except queue.Empty:
                return
