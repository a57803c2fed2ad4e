"""Single owner of the media file list.

All mutations run on one dedicated thread, in submission order. Other
threads (probe workers, job threads, the CLI) send mutations through the
public methods and only ever receive copies of the stored files.
"""

import logging
import threading
import concurrent.futures
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, TypeVar
from mbc.config.models import AppConfig
from mbc.domain.events import FileListChanged, FileProbed, FileUpdated
from mbc.domain.models import FileStatus, ProbeFailure, ProbeResult, SourceFile, path_key
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.ffprobe import FFprobeAdapter
from mbc.infrastructure.file_scanner import FileScanner

T = TypeVar("T")

# Files that never become part of a batch
_EXCLUDED_FROM_BATCH = (FileStatus.PROBE_FAILED, FileStatus.FAILED)


class FileListManager:
    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        ffprobe_adapter: FFprobeAdapter,
        scanner: Optional[FileScanner] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.ffprobe = ffprobe_adapter
        self.scanner = scanner or FileScanner(config.general.extensions)
        self.logger = logging.getLogger(__name__)

        self._files: "OrderedDict[str, SourceFile]" = OrderedDict()
        self._probe_futures: Dict[str, concurrent.futures.Future] = {}
        self._owner_ident: Optional[int] = None
        self._owner = concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="file-list",
            initializer=self._mark_owner,
        )
        self._probe_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.general.effective_probe_jobs,
            thread_name_prefix="probe",
        )

    def _mark_owner(self):
        self._owner_ident = threading.get_ident()

    def _call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """Runs fn on the owner thread and returns its result."""
        if threading.get_ident() == self._owner_ident:
            return fn(*args, **kwargs)
        return self._owner.submit(fn, *args, **kwargs).result()

    def _copies(self) -> List[SourceFile]:
        return [f.model_copy(deep=True) for f in self._files.values()]

    def _publish_list(self):
        self.event_bus.publish(FileListChanged(files=self._copies()))

    # --- mutations ---------------------------------------------------------

    def add_files(self, paths: Iterable[Path]) -> int:
        """Adds supported files not yet in the list and starts probing them.

        Returns the number of files added.
        """
        return self._call(self._add_files, [Path(p) for p in paths])

    def _add_files(self, paths: List[Path]) -> int:
        added: List[SourceFile] = []
        for path in paths:
            if not self.scanner.is_supported(path):
                self.logger.debug(f"Skipping unsupported file {path.name}")
                continue
            if not path.is_file():
                self.logger.warning(f"Skipping missing file {path}")
                continue
            key = path_key(path)
            if key in self._files:
                continue
            source = SourceFile(path=path)
            self._files[key] = source
            added.append(source)

        for source in added:
            self._probe_futures[source.key] = self._probe_pool.submit(self._probe_one, source.key, source.path)

        if added:
            self.logger.info(f"Added {len(added)} file(s), {len(self._files)} in list")
            self._publish_list()
        return len(added)

    def add_folder(self, folder: Path) -> int:
        """Recursively scans folder and adds every supported file found."""
        folder = Path(folder)
        if not folder.is_dir():
            self.logger.warning(f"Not a folder: {folder}")
            return 0
        found = list(self.scanner.scan(folder))
        self.logger.info(f"Scanned {folder}: {len(found)} supported file(s)")
        return self.add_files(found)

    def remove(self, keys: Iterable[str]) -> int:
        return self._call(self._remove, [k.casefold() for k in keys])

    def _remove(self, keys: List[str]) -> int:
        removed = 0
        for key in keys:
            if self._files.pop(key, None) is None:
                continue
            removed += 1
            future = self._probe_futures.pop(key, None)
            if future:
                future.cancel()
        if removed:
            self._publish_list()
        return removed

    def remove_selected(self) -> int:
        return self._call(lambda: self._remove([k for k, f in self._files.items() if f.selected]))

    def clear(self):
        self._call(self._clear)

    def _clear(self):
        for future in self._probe_futures.values():
            future.cancel()
        self._probe_futures.clear()
        self._files.clear()
        self._publish_list()

    def set_selected(self, keys: Iterable[str], selected: bool):
        self._call(self._set_selected, [k.casefold() for k in keys], selected)

    def _set_selected(self, keys: List[str], selected: bool):
        for key in keys:
            source = self._files.get(key)
            if source:
                source.selected = selected
        self._publish_list()

    def select_all(self, selected: bool = True):
        self._call(lambda: self._set_selected(list(self._files.keys()), selected))

    def update(self, key: str, **fields) -> Optional[SourceFile]:
        """Applies field changes to one file. Returns a copy, or None if it was removed."""
        return self._call(self._update, key.casefold(), fields)

    def _update(self, key: str, fields: Dict) -> Optional[SourceFile]:
        source = self._files.get(key)
        if source is None:
            return None
        for name, value in fields.items():
            setattr(source, name, value)
        copy = source.model_copy(deep=True)
        self.event_bus.publish(FileUpdated(file=copy))
        return copy

    def prepare_batch(self) -> List[SourceFile]:
        """Marks files for a new batch and returns copies of the queued ones, in list order.

        Unselected files become DESELECTED. Selected files become QUEUED unless
        their probe failed or they failed before.
        """
        return self._call(self._prepare_batch)

    def _prepare_batch(self) -> List[SourceFile]:
        queued: List[SourceFile] = []
        for source in self._files.values():
            if not source.selected:
                source.status = FileStatus.DESELECTED
                continue
            if source.probe_failure is not None:
                source.status = FileStatus.PROBE_FAILED
                continue
            if source.status in _EXCLUDED_FROM_BATCH:
                continue
            source.status = FileStatus.QUEUED
            source.progress_percent = 0.0
            source.error_message = None
            queued.append(source.model_copy(deep=True))
        self._publish_list()
        return queued

    # --- probing -----------------------------------------------------------

    def _probe_one(self, key: str, path: Path) -> ProbeResult:
        try:
            result = self.ffprobe.probe(path)
        except Exception as e:
            self.logger.error(f"Probe of {path.name} raised: {e}")
            result = ProbeResult.failed(ProbeFailure.INVALID_FILE, str(e))
        self._call(self._apply_probe, key, result)
        self.event_bus.publish(FileProbed(path=path, result=result))
        return result

    def _apply_probe(self, key: str, result: ProbeResult):
        source = self._files.get(key)
        if source is None:
            return
        source.metadata = result.metadata
        source.probe_failure = result.failure
        if not result.ok:
            source.error_message = result.detail
        # A file already queued for a batch keeps its status; the job sees the failure
        if source.status == FileStatus.PROBING:
            source.status = FileStatus.READY if result.ok else FileStatus.PROBE_FAILED
        self.event_bus.publish(FileUpdated(file=source.model_copy(deep=True)))

    def probe_future(self, key: str) -> Optional[concurrent.futures.Future]:
        return self._call(lambda: self._probe_futures.get(key.casefold()))

    def wait_for_probes(self, timeout: Optional[float] = None) -> bool:
        """Blocks until every scheduled probe has finished. Returns False on timeout."""
        futures = self._call(lambda: list(self._probe_futures.values()))
        _, not_done = concurrent.futures.wait(futures, timeout=timeout)
        return not not_done

    def wait_for_selected_probes(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the probes of every selected file have finished. Returns False on timeout."""
        futures = self._call(
            lambda: [self._probe_futures[k] for k, f in self._files.items() if f.selected and k in self._probe_futures]
        )
        _, not_done = concurrent.futures.wait(futures, timeout=timeout)
        return not not_done

    # --- reads -------------------------------------------------------------

    def snapshot(self) -> List[SourceFile]:
        return self._call(self._copies)

    def get(self, key: str) -> Optional[SourceFile]:
        def _get():
            source = self._files.get(key.casefold())
            return source.model_copy(deep=True) if source else None
        return self._call(_get)

    def flush(self):
        """Waits until every mutation submitted so far has been applied."""
        self._call(lambda: None)

    def shutdown(self):
        self._probe_pool.shutdown(wait=True, cancel_futures=True)
        self._owner.shutdown(wait=True)
