import logging
import threading
import concurrent.futures
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Set
from mbc.config.models import AppConfig, MAX_CONVERSION_JOBS
from mbc.domain.errors import BatchAlreadyRunningError, OutputDirectoryError
from mbc.domain.events import (
    ActionMessage,
    BatchFinished,
    BatchStarted,
    CancelRequested,
    JobCancelled,
    JobCompleted,
    JobFailed,
    JobProgressUpdated,
    JobStarted,
)
from mbc.domain.models import (
    BatchSummary,
    ConversionJob,
    FileStatus,
    JobOutcome,
    JobResult,
    JobStatus,
    SourceFile,
)
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.ffmpeg import FFmpegAdapter, LogSink
from mbc.pipeline.aggregator import ProgressAggregator
from mbc.pipeline.cancellation import CancellationToken
from mbc.pipeline.file_list import FileListManager
from mbc.pipeline.limiter import ConversionLimiter
from mbc.pipeline.outcome import reduce_outcome
from mbc.pipeline.output_paths import resolve_output_path

# Called with the failed file and its error message; returns True to keep going.
FailureDecider = Callable[[SourceFile, str], bool]


class Orchestrator:
    """Runs one batch at a time: admission, job execution and the final summary."""

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        file_list: FileListManager,
        ffmpeg_adapter: FFmpegAdapter,
        decide_on_failure: Optional[FailureDecider] = None,
        log_sink: Optional[LogSink] = None,
        limiter: Optional[ConversionLimiter] = None,
        aggregator: Optional[ProgressAggregator] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.file_list = file_list
        self.ffmpeg = ffmpeg_adapter
        self.decide_on_failure = decide_on_failure
        self.log_sink = log_sink
        self.limiter = limiter or ConversionLimiter(config.general.effective_conversion_jobs)
        self.aggregator = aggregator or ProgressAggregator(event_bus)
        self.logger = logging.getLogger(__name__)

        self._state_lock = threading.Lock()
        self._running = False
        self._token: Optional[CancellationToken] = None
        self._decision_lock = threading.Lock()
        self._runner: Optional[concurrent.futures.ThreadPoolExecutor] = None

        self.event_bus.subscribe(JobProgressUpdated, self._on_job_progress)

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    def cancel(self) -> bool:
        """Fires the batch cancellation signal. Returns False if nothing to cancel."""
        with self._state_lock:
            token = self._token if self._running else None
        if token is None:
            return False
        if not token.cancel():
            return False
        self.logger.info("Cancellation requested: no new jobs will start, running jobs are killed")
        self.event_bus.publish(CancelRequested())
        self.event_bus.publish(ActionMessage(message="Cancelling conversion..."))
        return True

    def set_conversion_jobs(self, value: int) -> int:
        old_val = self.limiter.limit
        new_val = self.limiter.set_limit(value)
        if new_val != old_val:
            self.logger.info(f"Conversion jobs: {old_val} -> {new_val}")
            self.event_bus.publish(ActionMessage(message=f"Jobs: {old_val} → {new_val}"))
        return new_val

    def _on_job_progress(self, event: JobProgressUpdated):
        self.file_list.update(event.job.source_file.key, progress_percent=event.progress_percent)
        self.aggregator.set_current_percent(event.progress_percent)

    def _prepare_output_dir(self, output_dir: Path) -> Path:
        output_dir = Path(output_dir).expanduser()
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputDirectoryError(output_dir, str(e)) from e
        return output_dir.absolute()

    def start(self, output_dir: Path) -> concurrent.futures.Future:
        """Runs the batch on a background thread; the Future yields the BatchSummary."""
        if self.is_running:
            raise BatchAlreadyRunningError("A conversion batch is already running")
        if self._runner is None:
            self._runner = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="batch")
        return self._runner.submit(self.run, output_dir)

    def run(self, output_dir: Path) -> BatchSummary:
        with self._state_lock:
            if self._running:
                raise BatchAlreadyRunningError("A conversion batch is already running")
            self._running = True
            self._token = CancellationToken()
            token = self._token

        try:
            return self._run_batch(Path(output_dir), token)
        finally:
            with self._state_lock:
                self._running = False

    def _run_batch(self, output_dir: Path, token: CancellationToken) -> BatchSummary:
        output_dir = self._prepare_output_dir(output_dir)
        # Files whose probe fails must not be queued
        while not self.file_list.wait_for_selected_probes(timeout=0.2):
            if token.is_cancelled:
                break
        queued = self.file_list.prepare_batch()
        total = len(queued)

        self.aggregator.start(total)
        self.logger.info(
            f"BATCH_START: {total} file(s) -> {output_dir} (jobs={self.limiter.limit})"
        )
        self.event_bus.publish(BatchStarted(total=total, output_dir=output_dir, conversion_jobs=self.limiter.limit))

        futures: List[concurrent.futures.Future] = []
        reserved: Set[str] = set()
        extension = self.config.general.output_extension

        # Threads are only created on submit, and submit happens after a
        # limiter slot was taken, so the pool never runs more than the limit.
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=MAX_CONVERSION_JOBS, thread_name_prefix="convert"
        ) as executor:
            for source in queued:
                if token.is_cancelled or not self.limiter.acquire(token):
                    self._mark_cancelled_before_start(source)
                    continue
                output_path = resolve_output_path(output_dir, source.path, extension, reserved)
                job = ConversionJob(source_file=source, output_path=output_path)
                futures.append(executor.submit(self._process_job, job, token))

            for future in concurrent.futures.as_completed(futures):
                try:
                    future.result()
                except Exception as e:
                    self.logger.error(f"Job future failed with exception: {e}")

        self.file_list.flush()
        final_files = []
        for source in queued:
            current = self.file_list.get(source.key)
            final_files.append(current if current is not None else source)

        summary = reduce_outcome(final_files, token.is_cancelled)
        self.logger.info(
            f"BATCH_END: outcome={summary.outcome.value} completed={summary.completed}/{summary.total} "
            f"failed={summary.failed} cancelled={summary.cancelled}"
        )
        self.event_bus.publish(BatchFinished(summary=summary))
        return summary

    def _mark_cancelled_before_start(self, source: SourceFile):
        self.logger.debug(f"JOB_SKIP: {source.name} (batch cancelled before start)")
        self.file_list.update(source.key, status=FileStatus.CANCELLED)

    def _process_job(self, job: ConversionJob, token: CancellationToken):
        """Runs one admitted job. The limiter slot is released when the job has settled."""
        filename = job.source_file.name
        try:
            try:
                result = self._execute(job, token)
            except Exception as e:
                self.logger.error(f"JOB_ERROR: {filename}: {e}", exc_info=True)
                result = JobResult(outcome=JobOutcome.FAILED, message=f"Unexpected error: {e}")
            self._apply_result(job, result, token)
        finally:
            self.limiter.release()

    def _execute(self, job: ConversionJob, token: CancellationToken) -> JobResult:
        key = job.source_file.key

        # Metadata is only complete once this file's probe has finished
        probe = self.file_list.probe_future(key)
        if probe is not None:
            try:
                probe.result()
            except concurrent.futures.CancelledError:
                pass
        current = self.file_list.get(key)
        if current is not None:
            job.source_file = current

        if token.is_cancelled:
            return JobResult(outcome=JobOutcome.CANCELLED)

        job.status = JobStatus.RUNNING
        job.started_at = datetime.now()
        self.file_list.update(key, status=FileStatus.CONVERTING, progress_percent=0.0, error_message=None)
        self.event_bus.publish(JobStarted(job=job))
        return self.ffmpeg.convert(job, token, log_sink=self.log_sink)

    def _apply_result(self, job: ConversionJob, result: JobResult, token: CancellationToken):
        key = job.source_file.key
        job.finished_at = datetime.now()
        job.exit_code = result.exit_code

        if result.outcome == JobOutcome.COMPLETED:
            job.status = JobStatus.COMPLETED
            job.progress_percent = 100.0
            self.file_list.update(key, status=FileStatus.COMPLETED, progress_percent=100.0)
            self.aggregator.mark_completed(key)
            self.event_bus.publish(JobCompleted(job=job))
        elif result.outcome == JobOutcome.CANCELLED:
            job.status = JobStatus.CANCELLED
            self.file_list.update(key, status=FileStatus.CANCELLED)
            self.event_bus.publish(JobCancelled(job=job))
        else:
            job.status = JobStatus.FAILED
            job.error_message = result.message or "Conversion failed"
            self.logger.error(f"Conversion of {job.source_file.name} failed: {job.error_message}")
            self.file_list.update(key, status=FileStatus.FAILED, error_message=job.error_message)
            self.event_bus.publish(JobFailed(job=job, error_message=job.error_message))
            self._handle_failure(job, token)

    def _handle_failure(self, job: ConversionJob, token: CancellationToken):
        policy = self.config.general.on_error
        if token.is_cancelled or policy == "continue":
            return
        if policy == "cancel":
            self.cancel()
            return
        if self.decide_on_failure is None:
            return

        # One question at a time, even when several jobs fail together
        with self._decision_lock:
            if token.is_cancelled:
                return
            keep_going = self.decide_on_failure(job.source_file, job.error_message or "")
        if not keep_going:
            self.logger.info(f"Operator stopped the batch after {job.source_file.name} failed")
            self.cancel()

    def shutdown(self):
        if self._runner is not None:
            self._runner.shutdown(wait=True)
            self._runner = None
