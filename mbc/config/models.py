import os
import re
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, field_validator

MAX_CONVERSION_JOBS = 32

DEFAULT_EXTENSIONS = [
    ".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mpg",
    ".ts", ".m2ts", ".vob", ".wav", ".mp3", ".aac", ".flac", ".ogg",
]


def default_conversion_jobs() -> int:
    """Available parallelism minus one, never below one."""
    return max(1, (os.cpu_count() or 1) - 1)


def default_probe_jobs() -> int:
    return max(1, os.cpu_count() or 1)


class GeneralConfig(BaseModel):
    # None = available parallelism - 1; set 1 to serialize conversions
    conversion_jobs: Optional[int] = Field(default=None, ge=1, le=MAX_CONVERSION_JOBS)
    probe_jobs: Optional[int] = Field(default=None, ge=1)
    probe_timeout_s: float = Field(default=15.0, gt=0)
    extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    output_extension: str = ".mp4"
    on_error: Literal["ask", "continue", "cancel"] = "ask"
    clamp_progress: bool = True
    log_path: Optional[str] = None
    log_ffmpeg_output: bool = True  # raw ffmpeg lines in the log file
    debug: bool = False

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [(ext if ext.startswith(".") else f".{ext}").lower() for ext in v]

    @field_validator("output_extension")
    @classmethod
    def normalize_output_extension(cls, v: str) -> str:
        v = v.strip()
        if not v or v == ".":
            raise ValueError("output_extension must not be empty")
        return v if v.startswith(".") else f".{v}"

    @property
    def effective_conversion_jobs(self) -> int:
        return self.conversion_jobs if self.conversion_jobs is not None else default_conversion_jobs()

    @property
    def effective_probe_jobs(self) -> int:
        return self.probe_jobs if self.probe_jobs is not None else default_probe_jobs()


class EncoderConfig(BaseModel):
    """Codec options used when the source has the matching stream."""
    video_codec: str = "libx264"
    preset: str = "medium"
    crf: int = Field(default=23, ge=0, le=51)
    pix_fmt: str = "yuv420p"
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"

    @field_validator("audio_bitrate")
    @classmethod
    def validate_bitrate(cls, v: str) -> str:
        if not re.fullmatch(r"\d+(\.\d+)?[kKmM]?", v.strip()):
            raise ValueError(f"Invalid audio bitrate '{v}'. Use a value like 192k.")
        return v.strip()


class ToolsConfig(BaseModel):
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"


class UiConfig(BaseModel):
    """UI display configuration."""
    log_tail_lines: int = Field(default=12, ge=1, le=200)
    show_raw_log: bool = False  # False = only progress-style lines and banners
    refresh_per_second: float = Field(default=4.0, gt=0, le=30)


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    ui: UiConfig = Field(default_factory=UiConfig)
    output_dir: Optional[str] = None
