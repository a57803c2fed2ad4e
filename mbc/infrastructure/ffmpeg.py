import subprocess
import logging
import time
import threading
import queue
from collections import deque
from typing import Callable, List, Optional
from mbc.config.models import EncoderConfig
from mbc.domain.models import ConversionJob, JobOutcome, JobResult, MediaMetadata
from mbc.domain.events import JobLogLine, JobProgressUpdated
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.logging import RAW_FFMPEG_LOGGER
from mbc.infrastructure.process_tree import kill_process_tree, process_group_kwargs, terminate_process_tree
from mbc.infrastructure.progress_parser import (
    LineKind,
    clamp_percent,
    classify_line,
    compute_percent,
    parse_progress_seconds,
)
from mbc.pipeline.cancellation import CancellationToken, OutcomeLatch

LogSink = Callable[[str], None]

NO_USABLE_STREAM_MESSAGE = (
    "No usable video or audio stream found. "
    "The file may be corrupted or in an unsupported format."
)

# Lines kept for the failure message of a job
_LOG_TAIL_LINES = 10


class FFmpegAdapter:
    """Wrapper around ffmpeg for converting one file to the target format."""

    def __init__(
        self,
        event_bus: EventBus,
        encoder: Optional[EncoderConfig] = None,
        ffmpeg_path: str = "ffmpeg",
        clamp_progress: bool = True,
    ):
        self.event_bus = event_bus
        self.encoder = encoder or EncoderConfig()
        self.ffmpeg_path = ffmpeg_path
        self.clamp_progress = clamp_progress
        self.logger = logging.getLogger(__name__)
        self.raw_logger = logging.getLogger(RAW_FFMPEG_LOGGER)

    def _build_command(self, job: ConversionJob, has_video: bool, has_audio: bool) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        enc = self.encoder
        cmd = [
            self.ffmpeg_path,
            "-y",  # Overwrite output files
            "-hide_banner",
            "-i", str(job.source_file.path),
        ]

        if has_video:
            cmd.extend([
                "-c:v", enc.video_codec,
                "-preset", enc.preset,
                "-crf", str(enc.crf),
                "-pix_fmt", enc.pix_fmt,
            ])
        else:
            cmd.append("-vn")

        if has_audio:
            cmd.extend(["-c:a", enc.audio_codec, "-b:a", enc.audio_bitrate])
        else:
            cmd.append("-an")

        # Machine-readable key=value progress on stderr, next to the regular log
        cmd.extend(["-progress", "pipe:2"])
        cmd.append(str(job.output_path))
        return cmd

    def _emit_log(self, job: ConversionJob, line: str, log_sink: Optional[LogSink]):
        self.raw_logger.debug(f"{job.source_file.name}: {line}")
        if log_sink:
            log_sink(line)
        self.event_bus.publish(JobLogLine(job=job, line=line))

    def _handle_progress(self, job: ConversionJob, elapsed: float, duration: float):
        raw = compute_percent(elapsed, duration)
        if raw is None:
            return
        shown = clamp_percent(raw) if self.clamp_progress else raw
        job.progress_percent = shown
        self.event_bus.publish(JobProgressUpdated(job=job, progress_percent=shown, raw_percent=raw))

    def _cleanup_output(self, job: ConversionJob):
        output_path = job.output_path
        if output_path and output_path.exists():
            try:
                output_path.unlink()
                self.logger.info(f"Removed partial output {output_path.name}")
            except OSError as e:
                self.logger.warning(f"Failed to remove partial output {output_path}: {e}")

    def convert(
        self,
        job: ConversionJob,
        cancel_token: CancellationToken,
        log_sink: Optional[LogSink] = None,
    ) -> JobResult:
        """Runs ffmpeg for one job and returns its single resolved outcome.

        Expected terminations (cancel, non-zero exit, unusable input) are
        reported through the JobResult, never raised.
        """
        source = job.source_file
        filename = source.name
        metadata = source.metadata or MediaMetadata()
        has_video = metadata.has_video
        has_audio = metadata.has_audio

        if not has_video and not has_audio:
            self.logger.warning(
                f"FFMPEG_SKIP: {filename} video={metadata.video_codec} audio={metadata.audio_codec}"
            )
            return JobResult(outcome=JobOutcome.FAILED, message=NO_USABLE_STREAM_MESSAGE)

        if cancel_token.is_cancelled:
            return JobResult(outcome=JobOutcome.CANCELLED)

        if job.output_path is None:
            return JobResult(outcome=JobOutcome.FAILED, message="Output path was not resolved")

        cmd = self._build_command(job, has_video, has_audio)
        total_duration = metadata.duration_seconds
        start_time = time.monotonic()

        self._emit_log(job, f"--- {filename}: conversion started ---", log_sink)
        self._emit_log(job, f"Command: {subprocess.list2cmdline(cmd)}", log_sink)
        self.logger.info(f"FFMPEG_START: {filename} -> {job.output_path.name} (video={has_video}, audio={has_audio})")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **process_group_kwargs(),
            )
        except OSError as e:
            message = f"Failed to start ffmpeg: {e}"
            self.logger.error(f"FFMPEG_END: {filename} status=failed ({message})")
            return JobResult(outcome=JobOutcome.FAILED, message=message)

        latch: OutcomeLatch[JobResult] = OutcomeLatch()

        def _on_cancel():
            if latch.resolve(JobResult(outcome=JobOutcome.CANCELLED)):
                self.logger.info(f"FFMPEG_INTERRUPTED: {filename} (batch cancelled)")
            # Signal only; the job thread escalates to SIGKILL
            terminate_process_tree(process)

        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            if not process.stderr:
                output_queue.put(None)
                return
            for line in process.stderr:
                output_queue.put(line)
            output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, name=f"ffmpeg-reader-{filename}", daemon=True)
        reader_thread.start()
        tail: deque = deque(maxlen=_LOG_TAIL_LINES)

        registration = cancel_token.register(_on_cancel)
        try:
            while True:
                if cancel_token.is_cancelled:
                    # An orphaned grandchild can hold the pipe open, so stop reading here
                    kill_process_tree(process)
                    break
                try:
                    line = output_queue.get(timeout=0.1)
                except queue.Empty:
                    continue

                if line is None:
                    break

                line = line.rstrip("\r\n")
                if not line.strip():
                    continue

                if classify_line(line) == LineKind.PROGRESS:
                    # Unparsable values such as out_time=N/A are dropped
                    elapsed = parse_progress_seconds(line)
                    if elapsed is not None:
                        self._handle_progress(job, elapsed, total_duration)
                    continue

                tail.append(line)
                self._emit_log(job, line, log_sink)

            process.wait()
        finally:
            registration.unregister()
            if process.poll() is None:
                kill_process_tree(process)

        job.exit_code = process.returncode
        if cancel_token.is_cancelled:
            latch.resolve(JobResult(outcome=JobOutcome.CANCELLED, exit_code=process.returncode))
        elif process.returncode == 0:
            latch.resolve(JobResult(outcome=JobOutcome.COMPLETED, exit_code=0))
        else:
            details = "\n".join(tail)
            message = f"ffmpeg exited with code {process.returncode}. See the log for details."
            if details:
                message = f"{message}\n{details}"
            latch.resolve(JobResult(outcome=JobOutcome.FAILED, exit_code=process.returncode, message=message))

        result = latch.wait()
        if result.exit_code is None:
            result = result.model_copy(update={"exit_code": process.returncode})

        self._emit_log(job, f"--- {filename}: conversion finished (exit code {process.returncode}) ---", log_sink)
        elapsed_s = time.monotonic() - start_time
        self.logger.info(
            f"FFMPEG_END: {filename} status={result.outcome.value.lower()} code={process.returncode} "
            f"elapsed={elapsed_s:.2f}s"
        )

        if result.outcome != JobOutcome.COMPLETED:
            self._cleanup_output(job)
        return result
