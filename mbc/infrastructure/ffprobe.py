import subprocess
import json
import logging
import math
import re
from pathlib import Path
from typing import Dict, Any, Optional
from mbc.domain.models import (
    CODEC_ABSENT,
    UNKNOWN,
    MediaMetadata,
    ProbeFailure,
    ProbeResult,
    format_duration,
)

# ffprobe copies container/stream tags verbatim; broken files can put
# invalid JSON inside them. Output that fails to parse is retried without tags.
_TAGS_TRAILING = re.compile(r',\s*"tags"\s*:\s*\{.*?\}\s*(?=\})', re.DOTALL)
_TAGS_ANYWHERE = re.compile(r'"tags"\s*:\s*\{.*?\}\s*,?', re.DOTALL)


class FFprobeAdapter:
    """Wrapper around ffprobe to extract container, duration and codec info."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout_s: float = 15.0):
        self.ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s
        self.logger = logging.getLogger(__name__)

    def _build_command(self, file_path: Path):
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(file_path),
        ]

    @staticmethod
    def strip_tags(text: str) -> str:
        if '"tags"' not in text:
            return text
        text = _TAGS_TRAILING.sub("", text)
        return _TAGS_ANYWHERE.sub("", text)

    @staticmethod
    def _parse_duration(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(str(value).strip())
        except ValueError:
            return None

    @staticmethod
    def _first_codec(data: Dict[str, Any], codec_type: str) -> str:
        streams = data.get("streams") or []
        for stream in streams:
            if isinstance(stream, dict) and stream.get("codec_type") == codec_type:
                return stream.get("codec_name") or CODEC_ABSENT
        return CODEC_ABSENT

    def parse_output(self, raw: str) -> ProbeResult:
        """Turns ffprobe's JSON text into a ProbeResult (never raises)."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            # Tag stripping is only a recovery step; it can cut valid objects short
            try:
                data = json.loads(self.strip_tags(raw))
            except json.JSONDecodeError as e:
                return ProbeResult.failed(ProbeFailure.PARSE_FAILED, f"Invalid ffprobe JSON: {e}")
        if not isinstance(data, dict):
            return ProbeResult.failed(ProbeFailure.PARSE_FAILED, "ffprobe output is not a JSON object")

        fmt = data.get("format") or {}
        if not isinstance(fmt, dict):
            fmt = {}
        duration = self._parse_duration(fmt.get("duration"))
        if duration is None or not math.isfinite(duration) or duration < 0:
            duration_seconds, duration_label = 0.0, UNKNOWN
        else:
            duration_seconds, duration_label = duration, format_duration(duration)

        metadata = MediaMetadata(
            container=fmt.get("format_name") or UNKNOWN,
            duration_seconds=duration_seconds,
            duration_label=duration_label,
            video_codec=self._first_codec(data, "video"),
            audio_codec=self._first_codec(data, "audio"),
        )
        return ProbeResult.success(metadata)

    def probe(self, file_path: Path) -> ProbeResult:
        """Executes ffprobe for one file and classifies the result."""
        cmd = self._build_command(file_path)
        self.logger.debug(f"PROBE_START: {file_path.name}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired:
            # subprocess.run kills the child before re-raising
            self.logger.warning(f"PROBE_END: {file_path.name} status=timeout after {self.timeout_s:.0f}s")
            return ProbeResult.failed(ProbeFailure.TIMEOUT, f"ffprobe timed out after {self.timeout_s:.0f}s")
        except FileNotFoundError:
            self.logger.error(f"PROBE_END: {file_path.name} status=invalid ({self.ffprobe_path} not found)")
            return ProbeResult.failed(ProbeFailure.INVALID_FILE, f"{self.ffprobe_path} not found")

        if result.returncode != 0 or (result.stderr and result.stderr.strip()):
            detail = (result.stderr or "").strip() or f"ffprobe exited with code {result.returncode}"
            self.logger.warning(f"PROBE_END: {file_path.name} status=invalid code={result.returncode}")
            return ProbeResult.failed(ProbeFailure.INVALID_FILE, detail)

        if not result.stdout or not result.stdout.strip():
            self.logger.warning(f"PROBE_END: {file_path.name} status=no_data")
            return ProbeResult.failed(ProbeFailure.NO_DATA, "ffprobe returned no data")

        probed = self.parse_output(result.stdout)
        if probed.ok:
            meta = probed.metadata
            self.logger.debug(
                f"PROBE_END: {file_path.name} container={meta.container} duration={meta.duration_seconds:.2f}s "
                f"video={meta.video_codec} audio={meta.audio_codec}"
            )
        else:
            self.logger.warning(f"PROBE_END: {file_path.name} status=parse_failed ({probed.detail})")
        return probed
