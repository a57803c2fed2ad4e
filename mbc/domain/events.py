"""Domain events for the media conversion pipeline.

Events represent state changes and notifications that flow through the EventBus,
decoupling the file list, the batch orchestrator and the job runner from the UI
layer.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import List
from pydantic import BaseModel
from .models import ConversionJob, SourceFile, BatchProgress, BatchSummary, ProbeResult


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class FileListChanged(Event):
    """Emitted by the file list owner after any mutation (snapshot copy)."""

    files: List[SourceFile]


class FileProbed(Event):
    """Emitted when probing of one file has finished (successfully or not)."""

    path: Path
    result: ProbeResult


class FileUpdated(Event):
    """Emitted when the status or progress of one file changed."""

    file: SourceFile


class JobEvent(Event):
    """Base class for events related to a specific conversion job."""

    job: ConversionJob


class JobStarted(JobEvent):
    """Emitted when the job's ffmpeg process is about to be started."""

    pass


class JobProgressUpdated(JobEvent):
    """Emitted for every parsed progress line.

    `raw_percent` is the unclamped value computed from the elapsed time.
    """

    progress_percent: float
    raw_percent: float


class JobLogLine(JobEvent):
    """Raw line from ffmpeg's stderr (or a synthetic banner)."""

    line: str


class JobCompleted(JobEvent):
    pass


class JobFailed(JobEvent):
    error_message: str


class JobCancelled(JobEvent):
    pass


class BatchStarted(Event):
    total: int
    output_dir: Path
    conversion_jobs: int


class BatchProgressUpdated(Event):
    progress: BatchProgress


class CancelRequested(Event):
    """Emitted once when the batch cancellation signal fires."""

    pass


class BatchFinished(Event):
    summary: BatchSummary


class ActionMessage(Event):
    """Event for user action feedback (shown in the status line)."""

    message: str
