from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field

# Codec label used when the probed file has no stream of that kind.
CODEC_ABSENT = "N/A"
UNKNOWN = "unknown"

_FAILURE_MARKERS = ("Error", "Timeout", "Failed", "Invalid", "Bad", "No Data")


class FileStatus(str, Enum):
    PROBING = "PROBING"
    READY = "READY"
    PROBE_FAILED = "PROBE_FAILED"
    QUEUED = "QUEUED"
    CONVERTING = "CONVERTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    DESELECTED = "DESELECTED"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JobOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class BatchOutcome(str, Enum):
    ALL_COMPLETED = "ALL_COMPLETED"
    PARTIAL = "PARTIAL"
    CANCELLED = "CANCELLED"
    NOTHING_TO_DO = "NOTHING_TO_DO"


class ProbeFailure(str, Enum):
    TIMEOUT = "TIMEOUT"
    INVALID_FILE = "INVALID_FILE"
    NO_DATA = "NO_DATA"
    PARSE_FAILED = "PARSE_FAILED"


def is_usable_codec(label: Optional[str]) -> bool:
    """False for missing streams and for the sentinel labels written on probe failure."""
    if not label or not label.strip():
        return False
    if label == CODEC_ABSENT:
        return False
    return not any(marker in label for marker in _FAILURE_MARKERS)


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class MediaMetadata(BaseModel):
    container: str = UNKNOWN
    duration_seconds: float = 0.0
    duration_label: str = UNKNOWN
    video_codec: str = CODEC_ABSENT
    audio_codec: str = CODEC_ABSENT

    @property
    def has_video(self) -> bool:
        return is_usable_codec(self.video_codec)

    @property
    def has_audio(self) -> bool:
        return is_usable_codec(self.audio_codec)


# Display labels written into the metadata of files whose probe failed:
# (duration, container, codec)
_FAILURE_LABELS = {
    ProbeFailure.TIMEOUT: ("Timeout", "Timeout", "Timeout"),
    ProbeFailure.INVALID_FILE: ("Probe Failed", "Error", "Invalid File"),
    ProbeFailure.NO_DATA: ("Probe Failed", "Error", "No Data"),
    ProbeFailure.PARSE_FAILED: ("Parse Failed", "Error", "Bad Format"),
}


class ProbeResult(BaseModel):
    metadata: Optional[MediaMetadata] = None
    failure: Optional[ProbeFailure] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.metadata is not None

    @classmethod
    def success(cls, metadata: MediaMetadata) -> "ProbeResult":
        return cls(metadata=metadata)

    @classmethod
    def failed(cls, failure: ProbeFailure, detail: Optional[str] = None) -> "ProbeResult":
        duration_label, container, codec = _FAILURE_LABELS[failure]
        metadata = MediaMetadata(
            container=container,
            duration_seconds=0.0,
            duration_label=duration_label,
            video_codec=codec,
            audio_codec=codec,
        )
        return cls(metadata=metadata, failure=failure, detail=detail)


def path_key(path: Path) -> str:
    """Case-insensitive identity of a media file."""
    return str(Path(path).absolute()).casefold()


class SourceFile(BaseModel):
    path: Path
    name: str = ""
    status: FileStatus = FileStatus.PROBING
    metadata: Optional[MediaMetadata] = None
    probe_failure: Optional[ProbeFailure] = None
    progress_percent: float = 0.0
    selected: bool = True
    error_message: Optional[str] = None

    def model_post_init(self, __context) -> None:
        self.path = Path(self.path).absolute()
        if not self.name:
            self.name = self.path.name

    @property
    def key(self) -> str:
        return path_key(self.path)

    @property
    def duration_seconds(self) -> float:
        return self.metadata.duration_seconds if self.metadata else 0.0

    def __eq__(self, other) -> bool:
        if not isinstance(other, SourceFile):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


class ConversionJob(BaseModel):
    source_file: SourceFile
    output_path: Optional[Path] = None
    status: JobStatus = JobStatus.QUEUED
    progress_percent: float = 0.0
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobResult(BaseModel):
    outcome: JobOutcome
    exit_code: Optional[int] = None
    message: Optional[str] = None


class BatchProgress(BaseModel):
    completed: int = 0
    total: int = 0
    current_percent: float = 0.0

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.completed / self.total * 100.0

    @property
    def text(self) -> str:
        if self.total <= 0:
            return "0/0 (0%)"
        return f"{self.completed}/{self.total} ({self.percent:.1f}%)"


class BatchSummary(BaseModel):
    outcome: BatchOutcome
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    message: str = ""
    failed_files: List[str] = Field(default_factory=list)
