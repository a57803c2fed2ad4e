import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
from mbc.domain.models import BatchProgress, BatchSummary, SourceFile
from mbc.infrastructure.progress_parser import LineKind, classify_line


class UIState:
    """Thread-safe state manager for the live dashboard."""

    def __init__(self, log_tail_lines: int = 12, show_raw_log: bool = False):
        self._lock = threading.RLock()

        # File list, in list order
        self.files: List[SourceFile] = []
        self._index: Dict[str, int] = {}

        # Counters
        self.completed_count = 0
        self.failed_count = 0
        self.cancelled_count = 0

        self.progress = BatchProgress()
        self.log_tail_lines = log_tail_lines
        self.show_raw_log = show_raw_log
        # Raw lines are kept with headroom so the filtered view still has enough to show
        self.log_lines: deque = deque(maxlen=max(200, log_tail_lines * 20))

        # Global Status
        self.ui_title = "MBC"
        self.output_dir: Optional[Path] = None
        self.conversion_jobs = 0
        self.batch_running = False
        self.cancel_requested = False
        self.finished = False
        self.summary: Optional[BatchSummary] = None
        self.processing_start_time: Optional[datetime] = None

        self.last_action: str = ""
        self.last_action_time: Optional[datetime] = None

    def set_files(self, files: List[SourceFile]):
        with self._lock:
            self.files = list(files)
            self._index = {f.key: i for i, f in enumerate(self.files)}

    def update_file(self, file: SourceFile):
        with self._lock:
            idx = self._index.get(file.key)
            if idx is None:
                return
            self.files[idx] = file

    def get_files(self) -> List[SourceFile]:
        with self._lock:
            return list(self.files)

    def append_log(self, line: str):
        with self._lock:
            self.log_lines.append(line)

    def visible_log(self) -> List[str]:
        """Tail of the log: every line in raw mode, else only stats lines and banners."""
        with self._lock:
            if self.show_raw_log:
                lines = list(self.log_lines)
            else:
                lines = [
                    line for line in self.log_lines
                    if classify_line(line) in (LineKind.STATS, LineKind.BANNER)
                ]
            return lines[-self.log_tail_lines:]

    def start_batch(self, output_dir: Path, conversion_jobs: int, total: int):
        with self._lock:
            self.output_dir = output_dir
            self.conversion_jobs = conversion_jobs
            self.batch_running = True
            self.cancel_requested = False
            self.finished = False
            self.summary = None
            self.completed_count = 0
            self.failed_count = 0
            self.cancelled_count = 0
            self.progress = BatchProgress(total=total)
            self.processing_start_time = datetime.now()

    def finish_batch(self, summary: BatchSummary):
        with self._lock:
            self.batch_running = False
            self.finished = True
            self.summary = summary

    def set_last_action(self, action: str):
        with self._lock:
            self.last_action = action
            self.last_action_time = datetime.now()

    def get_last_action(self) -> str:
        """Last action message (cleared after 60 seconds)."""
        with self._lock:
            if self.last_action and self.last_action_time:
                elapsed = (datetime.now() - self.last_action_time).total_seconds()
                if elapsed > 60:
                    self.last_action = ""
                    self.last_action_time = None
            return self.last_action
