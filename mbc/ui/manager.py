import logging
from mbc.infrastructure.event_bus import EventBus
from mbc.ui.state import UIState
from mbc.domain.events import (
    FileListChanged, FileUpdated,
    JobStarted, JobCompleted, JobFailed, JobCancelled, JobLogLine,
    BatchStarted, BatchProgressUpdated, BatchFinished, CancelRequested,
    ActionMessage,
)

logger = logging.getLogger(__name__)


class UIManager:
    """Subscribes to EventBus and updates UIState."""

    def __init__(self, bus: EventBus, state: UIState):
        self.bus = bus
        self.state = state
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(FileListChanged, self.on_file_list_changed)
        self.bus.subscribe(FileUpdated, self.on_file_updated)
        self.bus.subscribe(JobStarted, self.on_job_started)
        self.bus.subscribe(JobCompleted, self.on_job_completed)
        self.bus.subscribe(JobFailed, self.on_job_failed)
        self.bus.subscribe(JobCancelled, self.on_job_cancelled)
        self.bus.subscribe(JobLogLine, self.on_job_log_line)
        self.bus.subscribe(BatchStarted, self.on_batch_started)
        self.bus.subscribe(BatchProgressUpdated, self.on_batch_progress)
        self.bus.subscribe(CancelRequested, self.on_cancel_requested)
        self.bus.subscribe(BatchFinished, self.on_batch_finished)
        self.bus.subscribe(ActionMessage, self.on_action_message)

    def on_file_list_changed(self, event: FileListChanged):
        self.state.set_files(event.files)

    def on_file_updated(self, event: FileUpdated):
        self.state.update_file(event.file)

    def on_job_started(self, event: JobStarted):
        logger.debug(f"UI: job started {event.job.source_file.name}")

    def on_job_completed(self, event: JobCompleted):
        with self.state._lock:
            self.state.completed_count += 1

    def on_job_failed(self, event: JobFailed):
        with self.state._lock:
            self.state.failed_count += 1
        self.state.set_last_action(f"Failed: {event.job.source_file.name}")

    def on_job_cancelled(self, event: JobCancelled):
        with self.state._lock:
            self.state.cancelled_count += 1

    def on_job_log_line(self, event: JobLogLine):
        self.state.append_log(event.line)

    def on_batch_started(self, event: BatchStarted):
        self.state.start_batch(event.output_dir, event.conversion_jobs, event.total)

    def on_batch_progress(self, event: BatchProgressUpdated):
        with self.state._lock:
            self.state.progress = event.progress

    def on_cancel_requested(self, event: CancelRequested):
        with self.state._lock:
            self.state.cancel_requested = True

    def on_batch_finished(self, event: BatchFinished):
        self.state.finish_batch(event.summary)
        self.state.set_last_action(event.summary.message)

    def on_action_message(self, event: ActionMessage):
        self.state.set_last_action(event.message)
