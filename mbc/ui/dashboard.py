import logging
import threading
from datetime import datetime
from typing import Optional
from rich.live import Live
from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.progress_bar import ProgressBar
from rich.prompt import Confirm
from rich.text import Text
from rich.box import SIMPLE
from mbc.ui.state import UIState
from mbc.domain.models import FileStatus, SourceFile

logger = logging.getLogger(__name__)

# Rows of the file table shown at most; the rest is summarised
MAX_FILE_ROWS = 20

STATUS_STYLES = {
    FileStatus.PROBING: ("probing", "dim"),
    FileStatus.READY: ("ready", "white"),
    FileStatus.PROBE_FAILED: ("probe failed", "red"),
    FileStatus.QUEUED: ("queued", "cyan"),
    FileStatus.CONVERTING: ("converting", "bold yellow"),
    FileStatus.COMPLETED: ("completed", "green"),
    FileStatus.FAILED: ("failed", "bold red"),
    FileStatus.CANCELLED: ("cancelled", "magenta"),
    FileStatus.DESELECTED: ("deselected", "dim"),
}


class Dashboard:
    """Rich Live view of the file list, overall progress and the ffmpeg log tail."""

    def __init__(self, state: UIState, refresh_per_second: float = 4.0, console: Optional[Console] = None):
        self.state = state
        self.refresh_per_second = refresh_per_second
        self.console = console or Console()
        self._live: Optional[Live] = None
        self._refresh_thread: Optional[threading.Thread] = None
        self._stop_refresh = threading.Event()
        self._ui_lock = threading.Lock()

    # --- Formatters ---

    def format_time(self, seconds: Optional[float]) -> str:
        """Format time: 59s, 01m 01s, 1h 01m."""
        if seconds is None:
            return "--:--"
        if seconds < 60:
            return f"{int(seconds)}s"
        if seconds < 3600:
            return f"{int(seconds // 60):02d}m {int(seconds % 60):02d}s"
        return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60):02d}m"

    def _sanitize_filename(self, filename: str, max_len: int = 40) -> str:
        """Truncate filename: prefix…suffix."""
        filename = filename.strip()
        if len(filename) <= max_len:
            return filename
        part_len = (max_len - 1) // 2
        return f"{filename[:part_len]}…{filename[-part_len:]}"

    # --- Render Logic ---

    def _generate_top_bar(self) -> Panel:
        with self.state._lock:
            if self.state.cancel_requested and self.state.batch_running:
                status = Text("Cancelling...", style="bold magenta")
            elif self.state.batch_running:
                status = Text("Converting", style="bold yellow")
            elif self.state.finished:
                status = Text("Finished", style="bold green")
            else:
                status = Text("Idle", style="dim")

            line = Text.assemble(
                "Status: ", status,
                f"  •  Jobs: {self.state.conversion_jobs}",
                f"  •  Done: {self.state.completed_count}",
                f"  •  Failed: {self.state.failed_count}",
                f"  •  Cancelled: {self.state.cancelled_count}",
            )
            rows = [line]
            if self.state.output_dir:
                rows.append(Text(f"Output: {self.state.output_dir}", style="dim"))
        action = self.state.get_last_action()
        if action:
            rows.append(Text(action, style="italic"))
        return Panel(Group(*rows), title=self.state.ui_title, border_style="cyan")

    def _render_file_row(self, table: Table, file: SourceFile):
        label, style = STATUS_STYLES.get(file.status, (file.status.value.lower(), "white"))
        meta = file.metadata
        if file.status == FileStatus.CONVERTING:
            progress = f"{file.progress_percent:.1f}%"
        elif file.status == FileStatus.COMPLETED:
            progress = "100%"
        else:
            progress = ""
        table.add_row(
            "✓" if file.selected else " ",
            self._sanitize_filename(file.name),
            meta.duration_label if meta else "…",
            meta.container if meta else "…",
            meta.video_codec if meta else "…",
            meta.audio_codec if meta else "…",
            Text(label, style=style),
            progress,
        )

    def _generate_files_panel(self) -> Panel:
        files = self.state.get_files()
        table = Table(box=SIMPLE, expand=True, pad_edge=False)
        table.add_column("", width=1)
        table.add_column("File", ratio=3, no_wrap=True)
        table.add_column("Duration", justify="right")
        table.add_column("Container")
        table.add_column("Video")
        table.add_column("Audio")
        table.add_column("Status")
        table.add_column("Progress", justify="right")

        # Keep converting files visible when the list is longer than the panel
        shown = [f for f in files if f.status == FileStatus.CONVERTING]
        for f in files:
            if len(shown) >= MAX_FILE_ROWS:
                break
            if f.status != FileStatus.CONVERTING:
                shown.append(f)
        order = {f.key: i for i, f in enumerate(files)}
        shown.sort(key=lambda f: order[f.key])

        for f in shown:
            self._render_file_row(table, f)
        if len(files) > len(shown):
            table.add_row("", Text(f"... +{len(files) - len(shown)} more", style="dim"), "", "", "", "", "", "")
        return Panel(table, title=f"FILES ({len(files)})", border_style="cyan")

    def _generate_progress(self) -> Panel:
        with self.state._lock:
            progress = self.state.progress
            elapsed_str = "--:--"
            if self.state.processing_start_time:
                elapsed = (datetime.now() - self.state.processing_start_time).total_seconds()
                elapsed_str = self.format_time(elapsed)

        bar = ProgressBar(total=100, completed=progress.percent, width=None)
        bar_grid = Table.grid(padding=(0, 1), expand=True)
        bar_grid.add_column(ratio=1)
        bar_grid.add_row(bar, progress.text, "•", elapsed_str)
        return Panel(bar_grid, title="PROGRESS", border_style="cyan")

    def _generate_log_panel(self) -> Panel:
        lines = self.state.visible_log()
        title = "LOG (raw)" if self.state.show_raw_log else "LOG"
        body = Text("\n".join(lines)) if lines else Text("No output yet", style="dim")
        return Panel(body, title=title, border_style="cyan")

    def create_display(self):
        return Group(
            self._generate_top_bar(),
            self._generate_files_panel(),
            self._generate_progress(),
            self._generate_log_panel(),
        )

    def _refresh_loop(self):
        interval = 1.0 / self.refresh_per_second
        while not self._stop_refresh.is_set():
            if self._live:
                try:
                    display = self.create_display()
                    with self._ui_lock:
                        if self._live:
                            self._live.update(display)
                except Exception as e:
                    # A broken frame must not stop the refresh loop
                    logger.debug(f"Dashboard render failed: {e}")
            self._stop_refresh.wait(interval)

    def start(self):
        with self._ui_lock:
            self._live = Live(
                self.create_display(),
                console=self.console,
                refresh_per_second=self.refresh_per_second,
            )
            self._live.start()
        self._stop_refresh.clear()
        self._refresh_thread = threading.Thread(target=self._refresh_loop, name="dashboard", daemon=True)
        self._refresh_thread.start()
        return self

    def stop(self):
        self._stop_refresh.set()
        if self._refresh_thread:
            self._refresh_thread.join(timeout=1.0)
            self._refresh_thread = None
        with self._ui_lock:
            if self._live:
                # Final update to show the FINISHED/CANCELLED state
                try:
                    self._live.update(self.create_display())
                finally:
                    self._live.stop()
                    self._live = None

    def ask_continue(self, source: SourceFile, message: str) -> bool:
        """Pauses the live view and asks whether the batch should go on after a failure."""
        was_live = self._live is not None
        if was_live:
            self.stop()
        try:
            self.console.print(Panel(
                Text(message or "Unknown error"),
                title=f"Conversion failed: {source.name}",
                border_style="red",
            ))
            return Confirm.ask("Continue with the remaining files?", default=True, console=self.console)
        finally:
            if was_live:
                self.start()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
