import threading
import time
import pytest
from pathlib import Path
from unittest.mock import MagicMock
from mbc.domain.errors import BatchAlreadyRunningError, OutputDirectoryError
from mbc.domain.events import (
    BatchFinished,
    BatchProgressUpdated,
    BatchStarted,
    CancelRequested,
    JobCancelled,
    JobCompleted,
    JobFailed,
    JobProgressUpdated,
    JobStarted,
)
from mbc.domain.models import (
    BatchOutcome,
    FileStatus,
    JobOutcome,
    JobResult,
    ProbeFailure,
    ProbeResult,
    path_key,
)
from mbc.pipeline.file_list import FileListManager
from mbc.pipeline.orchestrator import Orchestrator

pytestmark = pytest.mark.integration


class FakeAdapter:
    """Records admissions and concurrency; jobs named in `hold` run until cancelled or released."""

    def __init__(self, event_bus=None, fail=(), hold=(), hold_all=False, delay=0.02):
        self.event_bus = event_bus
        self.fail = set(fail)
        self.hold = set(hold)
        self.hold_all = hold_all
        self.delay = delay
        self.release = threading.Event()
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.started = []
        self.outputs = []

    def _held(self, name):
        return self.hold_all or name in self.hold

    def convert(self, job, cancel_token, log_sink=None):
        name = job.source_file.name
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.started.append(name)
            self.outputs.append(job.output_path)
        try:
            if self._held(name):
                while not self.release.is_set():
                    if cancel_token.wait(0.01):
                        return JobResult(outcome=JobOutcome.CANCELLED, exit_code=-15)
            else:
                time.sleep(self.delay)
            if self.event_bus is not None:
                self.event_bus.publish(JobProgressUpdated(job=job, progress_percent=50.0, raw_percent=50.0))
            if name in self.fail:
                return JobResult(outcome=JobOutcome.FAILED, exit_code=1, message=f"{name}: boom")
            job.output_path.write_bytes(b"converted")
            return JobResult(outcome=JobOutcome.COMPLETED, exit_code=0)
        finally:
            with self.lock:
                self.active -= 1


@pytest.fixture
def ffprobe(av_metadata):
    def probe(path):
        if "slow" in path.name:
            time.sleep(0.5)
        if "broken" in path.name:
            return ProbeResult.failed(ProbeFailure.INVALID_FILE, "broken")
        return ProbeResult.success(av_metadata)

    adapter = MagicMock()
    adapter.probe.side_effect = probe
    return adapter


@pytest.fixture
def make_batch(sample_config, event_bus, ffprobe, tmp_path):
    """Builds a file list with the given file names and an orchestrator around `adapter`."""
    created = []

    def _make(names, adapter, jobs=2, on_error="continue", decide=None, wait_probes=True):
        sample_config.general.conversion_jobs = jobs
        sample_config.general.on_error = on_error
        file_list = FileListManager(sample_config, event_bus, ffprobe)
        paths = []
        for name in names:
            path = tmp_path / "input" / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"media")
            paths.append(path)
        file_list.add_files(paths)
        if wait_probes:
            file_list.wait_for_probes(timeout=5)
        orchestrator = Orchestrator(
            config=sample_config,
            event_bus=event_bus,
            file_list=file_list,
            ffmpeg_adapter=adapter,
            decide_on_failure=decide,
        )
        created.append((orchestrator, file_list))
        return orchestrator, file_list

    yield _make
    for orchestrator, file_list in created:
        orchestrator.shutdown()
        file_list.shutdown()


def _collect(event_bus, *types):
    seen = []
    for event_type in types:
        event_bus.subscribe(event_type, seen.append)
    return seen


def _wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not reached in time"
        time.sleep(0.01)


def test_all_files_converted(make_batch, test_output_dir, event_bus):
    events = _collect(event_bus, BatchStarted, JobStarted, JobCompleted, BatchFinished)
    adapter = FakeAdapter()
    orchestrator, file_list = make_batch(["a.mp4", "b.mkv", "c.wav"], adapter)

    summary = orchestrator.run(test_output_dir)

    assert summary.outcome == BatchOutcome.ALL_COMPLETED
    assert (summary.total, summary.completed) == (3, 3)
    assert sorted(p.name for p in test_output_dir.iterdir()) == ["a.mp4", "b.mp4", "c.mp4"]
    assert all(f.status == FileStatus.COMPLETED for f in file_list.snapshot())
    assert all(f.progress_percent == 100.0 for f in file_list.snapshot())
    assert isinstance(events[0], BatchStarted)
    assert events[0].total == 3
    assert isinstance(events[-1], BatchFinished)
    assert sum(isinstance(e, JobCompleted) for e in events) == 3
    assert not orchestrator.is_running


def test_concurrency_never_exceeds_limit(make_batch, test_output_dir):
    adapter = FakeAdapter(delay=0.05)
    orchestrator, _ = make_batch([f"f{i}.mp4" for i in range(8)], adapter, jobs=3)

    summary = orchestrator.run(test_output_dir)

    assert summary.completed == 8
    assert 1 <= adapter.max_active <= 3


def test_single_job_runs_files_in_list_order(make_batch, test_output_dir):
    adapter = FakeAdapter()
    names = ["z.mp4", "a.mp4", "m.mp4", "b.mp4"]
    orchestrator, _ = make_batch(names, adapter, jobs=1)

    orchestrator.run(test_output_dir)

    assert adapter.started == names
    assert adapter.max_active == 1


def test_duplicate_output_names_get_suffixes(make_batch, test_output_dir):
    adapter = FakeAdapter()
    orchestrator, _ = make_batch(["one/clip.mp4", "two/clip.mkv", "three/Clip.wav"], adapter, jobs=1)

    orchestrator.run(test_output_dir)

    assert [p.name for p in adapter.outputs] == ["clip.mp4", "clip (1).mp4", "Clip (2).mp4"]
    assert len(list(test_output_dir.iterdir())) == 3


def test_existing_output_is_not_overwritten(make_batch, test_output_dir):
    test_output_dir.mkdir()
    (test_output_dir / "a.mp4").write_bytes(b"keep me")
    adapter = FakeAdapter()
    orchestrator, _ = make_batch(["a.mp4"], adapter)

    orchestrator.run(test_output_dir)

    assert (test_output_dir / "a.mp4").read_bytes() == b"keep me"
    assert (test_output_dir / "a (1).mp4").exists()


def test_failures_continue_by_policy(make_batch, test_output_dir, event_bus):
    failed_events = _collect(event_bus, JobFailed)
    adapter = FakeAdapter(fail={"b.mp4"})
    orchestrator, file_list = make_batch(["a.mp4", "b.mp4", "c.mp4"], adapter, on_error="continue")

    summary = orchestrator.run(test_output_dir)

    assert summary.outcome == BatchOutcome.PARTIAL
    assert (summary.completed, summary.failed) == (2, 1)
    assert summary.failed_files == ["b.mp4"]
    failed = [f for f in file_list.snapshot() if f.status == FileStatus.FAILED]
    assert [f.name for f in failed] == ["b.mp4"]
    assert failed[0].error_message == "b.mp4: boom"
    assert [e.error_message for e in failed_events] == ["b.mp4: boom"]


def test_failure_cancels_batch_by_policy(make_batch, test_output_dir, event_bus):
    cancel_events = _collect(event_bus, CancelRequested)
    adapter = FakeAdapter(fail={"a.mp4"})
    orchestrator, file_list = make_batch(["a.mp4", "b.mp4", "c.mp4"], adapter, jobs=1, on_error="cancel")

    summary = orchestrator.run(test_output_dir)

    assert summary.outcome == BatchOutcome.CANCELLED
    assert adapter.started == ["a.mp4"]
    statuses = {f.name: f.status for f in file_list.snapshot()}
    assert statuses == {
        "a.mp4": FileStatus.FAILED,
        "b.mp4": FileStatus.CANCELLED,
        "c.mp4": FileStatus.CANCELLED,
    }
    assert len(cancel_events) == 1


@pytest.mark.parametrize("answer, outcome, started", [
    (True, BatchOutcome.PARTIAL, ["a.mp4", "b.mp4"]),
    (False, BatchOutcome.CANCELLED, ["a.mp4"]),
])
def test_failure_asks_operator(make_batch, test_output_dir, answer, outcome, started):
    asked = []

    def decide(source, message):
        asked.append((source.name, message))
        return answer

    adapter = FakeAdapter(fail={"a.mp4"})
    orchestrator, _ = make_batch(["a.mp4", "b.mp4"], adapter, jobs=1, on_error="ask", decide=decide)

    summary = orchestrator.run(test_output_dir)

    assert summary.outcome == outcome
    assert asked == [("a.mp4", "a.mp4: boom")]
    assert adapter.started == started


def test_cancel_kills_running_and_skips_queued(make_batch, test_output_dir, event_bus):
    cancelled_events = _collect(event_bus, JobCancelled)
    adapter = FakeAdapter(hold_all=True)
    names = [f"f{i}.mp4" for i in range(5)]
    orchestrator, file_list = make_batch(names, adapter, jobs=3)

    future = orchestrator.start(test_output_dir)
    _wait_until(lambda: len(adapter.started) == 3)
    assert orchestrator.is_running
    assert orchestrator.cancel() is True
    assert orchestrator.cancel() is False
    summary = future.result(timeout=10)

    assert summary.outcome == BatchOutcome.CANCELLED
    assert (summary.completed, summary.cancelled) == (0, 5)
    # Admission order is FIFO, thread start order is not
    assert sorted(adapter.started) == names[:3]
    assert len(cancelled_events) == 3
    assert all(f.status == FileStatus.CANCELLED for f in file_list.snapshot())
    assert list(test_output_dir.iterdir()) == []


def test_cancel_keeps_jobs_that_already_completed(make_batch, test_output_dir, event_bus):
    progress = _collect(event_bus, BatchProgressUpdated)
    adapter = FakeAdapter(hold={"f1.mp4", "f2.mp4", "f3.mp4"})
    names = [f"f{i}.mp4" for i in range(5)]
    orchestrator, file_list = make_batch(names, adapter, jobs=3)

    future = orchestrator.start(test_output_dir)
    # f0 finishes at once and frees its slot for f3
    _wait_until(lambda: len(adapter.started) == 4)
    orchestrator.cancel()
    summary = future.result(timeout=10)

    assert summary.outcome == BatchOutcome.CANCELLED
    assert summary.completed == 1
    assert summary.cancelled == 4
    assert "f4.mp4" not in adapter.started
    assert file_list.get(path_key(test_output_dir.parent / "input" / "f0.mp4")).status == FileStatus.COMPLETED
    assert progress[-1].progress.completed == 1
    assert progress[-1].progress.total == 5


def test_probe_failed_and_deselected_files_are_skipped(make_batch, test_output_dir):
    adapter = FakeAdapter()
    orchestrator, file_list = make_batch(["ok.mp4", "broken.mp4", "skip.mp4"], adapter)
    skip_key = [f.key for f in file_list.snapshot() if f.name == "skip.mp4"]
    file_list.set_selected(skip_key, False)

    summary = orchestrator.run(test_output_dir)

    assert summary.outcome == BatchOutcome.ALL_COMPLETED
    assert summary.total == 1
    assert adapter.started == ["ok.mp4"]
    statuses = {f.name: f.status for f in file_list.snapshot()}
    assert statuses["broken.mp4"] == FileStatus.PROBE_FAILED
    assert statuses["skip.mp4"] == FileStatus.DESELECTED


def test_batch_waits_for_probes_still_running(make_batch, test_output_dir):
    adapter = FakeAdapter()
    orchestrator, file_list = make_batch(["slow_broken.mp4", "slow_ok.mp4"], adapter, wait_probes=False)
    assert all(f.status == FileStatus.PROBING for f in file_list.snapshot())

    summary = orchestrator.run(test_output_dir)

    assert summary.outcome == BatchOutcome.ALL_COMPLETED
    assert (summary.total, summary.completed, summary.failed) == (1, 1, 0)
    assert adapter.started == ["slow_ok.mp4"]
    statuses = {f.name: f.status for f in file_list.snapshot()}
    assert statuses == {"slow_broken.mp4": FileStatus.PROBE_FAILED, "slow_ok.mp4": FileStatus.COMPLETED}


def test_batch_with_only_failing_probe_has_nothing_to_do(make_batch, test_output_dir):
    adapter = FakeAdapter()
    orchestrator, file_list = make_batch(["slow_broken.mp4"], adapter, wait_probes=False)

    summary = orchestrator.run(test_output_dir)

    assert summary.outcome == BatchOutcome.NOTHING_TO_DO
    assert summary.total == 0
    assert adapter.started == []
    assert file_list.snapshot()[0].status == FileStatus.PROBE_FAILED


def test_empty_batch_has_nothing_to_do(make_batch, test_output_dir):
    adapter = FakeAdapter()
    orchestrator, _ = make_batch([], adapter)

    summary = orchestrator.run(test_output_dir)

    assert summary.outcome == BatchOutcome.NOTHING_TO_DO
    assert summary.total == 0
    assert test_output_dir.is_dir()


def test_progress_updates_reach_file_list_and_aggregate(make_batch, test_output_dir, event_bus):
    seen = []

    def on_progress(event):
        seen.append(event.progress.current_percent)

    event_bus.subscribe(BatchProgressUpdated, on_progress)
    adapter = FakeAdapter(event_bus=event_bus)
    orchestrator, _ = make_batch(["a.mp4"], adapter)

    orchestrator.run(test_output_dir)

    assert 50.0 in seen


def test_start_while_running_is_rejected(make_batch, test_output_dir):
    adapter = FakeAdapter(hold_all=True)
    orchestrator, _ = make_batch(["a.mp4"], adapter)

    future = orchestrator.start(test_output_dir)
    _wait_until(lambda: len(adapter.started) == 1)
    with pytest.raises(BatchAlreadyRunningError):
        orchestrator.start(test_output_dir)

    adapter.release.set()
    assert future.result(timeout=10).outcome == BatchOutcome.ALL_COMPLETED


def test_cancel_when_idle_does_nothing(make_batch, event_bus):
    cancel_events = _collect(event_bus, CancelRequested)
    orchestrator, _ = make_batch(["a.mp4"], FakeAdapter())
    assert orchestrator.cancel() is False
    assert cancel_events == []


def test_unusable_output_dir_is_fatal(make_batch, tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("file")
    adapter = FakeAdapter()
    orchestrator, file_list = make_batch(["a.mp4"], adapter)

    with pytest.raises(OutputDirectoryError):
        orchestrator.run(blocker / "out")

    assert adapter.started == []
    assert not orchestrator.is_running
    assert file_list.snapshot()[0].status == FileStatus.READY


def test_limit_change_applies_to_waiting_jobs(make_batch, test_output_dir):
    adapter = FakeAdapter(hold_all=True)
    orchestrator, _ = make_batch([f"f{i}.mp4" for i in range(4)], adapter, jobs=1)

    future = orchestrator.start(test_output_dir)
    _wait_until(lambda: len(adapter.started) == 1)
    assert orchestrator.set_conversion_jobs(3) == 3
    _wait_until(lambda: len(adapter.started) == 3)

    adapter.release.set()
    summary = future.result(timeout=10)
    assert summary.completed == 4
    assert adapter.max_active == 3
