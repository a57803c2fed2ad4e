import logging
import concurrent.futures
from pathlib import Path
from typing import List, Optional, Tuple
import typer
from rich.console import Console
from rich.table import Table
from mbc.config.loader import load_config
from mbc.config.models import AppConfig, MAX_CONVERSION_JOBS
from mbc.domain.errors import MbcError, OutputDirectoryError
from mbc.domain.models import BatchOutcome, BatchSummary, ProbeResult
from mbc.infrastructure.logging import setup_logging
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.file_scanner import FileScanner
from mbc.infrastructure.ffprobe import FFprobeAdapter
from mbc.infrastructure.ffmpeg import FFmpegAdapter
from mbc.infrastructure.tools import check_tools, resolve_tool
from mbc.pipeline.file_list import FileListManager
from mbc.pipeline.orchestrator import Orchestrator
from mbc.ui.state import UIState
from mbc.ui.manager import UIManager
from mbc.ui.dashboard import Dashboard
from mbc.ui.prompt import FailurePrompter

app = typer.Typer(help="MBC (Media Batch Converter) - convert media files to MP4 with ffmpeg")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2
EXIT_CANCELLED = 130

ON_ERROR_CHOICES = ("ask", "continue", "cancel")


def _fail(message: str):
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=EXIT_FATAL)


def _load_app_config(config_path: Optional[Path]) -> AppConfig:
    if config_path is None:
        return AppConfig()
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        _fail(str(exc))


def exit_code_for(summary: BatchSummary) -> int:
    if summary.outcome == BatchOutcome.CANCELLED:
        return EXIT_CANCELLED
    if summary.outcome == BatchOutcome.PARTIAL:
        return EXIT_PARTIAL
    return EXIT_OK


def _add_inputs(file_list: FileListManager, paths: List[Path]) -> int:
    added = 0
    for path in paths:
        if path.is_dir():
            added += file_list.add_folder(path)
        else:
            added += file_list.add_files([path])
    return added


def _print_summary(console: Console, summary: BatchSummary):
    color = {
        BatchOutcome.ALL_COMPLETED: "green",
        BatchOutcome.NOTHING_TO_DO: "yellow",
        BatchOutcome.PARTIAL: "red",
        BatchOutcome.CANCELLED: "yellow",
    }[summary.outcome]
    console.print(f"[{color}]{summary.message}[/{color}]")
    for name in summary.failed_files:
        console.print(f"  [red]✗[/red] {name}")


@app.command()
def convert(
    paths: List[Path] = typer.Argument(..., help="Media files and/or folders (scanned recursively)"),
    output_dir: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory (overrides config)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", help="Parallel ffmpeg processes (1 = one at a time)"),
    on_error: Optional[str] = typer.Option(None, "--on-error", help="When a file fails: ask, continue or cancel"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    no_clamp: bool = typer.Option(False, "--no-clamp", help="Show raw per-file progress above 100%"),
    raw_log: bool = typer.Option(False, "--raw-log", help="Show every ffmpeg line in the log panel"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Convert media files to MP4 (H.264/AAC) in parallel."""
    config = _load_app_config(config_path)

    # Apply CLI overrides
    if jobs is not None:
        if not 1 <= jobs <= MAX_CONVERSION_JOBS:
            _fail(f"--jobs must be between 1 and {MAX_CONVERSION_JOBS}")
        config.general.conversion_jobs = jobs
    if on_error is not None:
        if on_error not in ON_ERROR_CHOICES:
            _fail(f"--on-error must be one of: {', '.join(ON_ERROR_CHOICES)}")
        config.general.on_error = on_error
    if log_path is not None: config.general.log_path = str(log_path)
    if no_clamp: config.general.clamp_progress = False
    if raw_log: config.ui.show_raw_log = True
    if debug: config.general.debug = True
    if output_dir is not None: config.output_dir = str(output_dir)

    if not config.output_dir:
        _fail("No output directory given (use --output or set output_dir in the config).")
    target_dir = Path(config.output_dir).expanduser()

    try:
        log_path_value = Path(config.general.log_path) if config.general.log_path else None
        try:
            logger = setup_logging(
                target_dir,
                debug=config.general.debug,
                log_path=log_path_value,
                raw_ffmpeg=config.general.log_ffmpeg_output,
            )
        except OSError as exc:
            raise OutputDirectoryError(target_dir, str(exc)) from exc
        logger.info(f"MBC started: inputs={len(paths)}, output={target_dir}")
        logger.info(
            f"Config: conversion_jobs={config.general.effective_conversion_jobs}, "
            f"probe_jobs={config.general.effective_probe_jobs}, on_error={config.general.on_error}, "
            f"debug={config.general.debug}"
        )

        tools = check_tools(config.tools)

        bus = EventBus()
        ui_state = UIState(log_tail_lines=config.ui.log_tail_lines, show_raw_log=config.ui.show_raw_log)
        UIManager(bus, ui_state)
        dashboard = Dashboard(ui_state, refresh_per_second=config.ui.refresh_per_second)

        ffprobe = FFprobeAdapter(ffprobe_path=tools["ffprobe"], timeout_s=config.general.probe_timeout_s)
        ffmpeg = FFmpegAdapter(
            event_bus=bus,
            encoder=config.encoder,
            ffmpeg_path=tools["ffmpeg"],
            clamp_progress=config.general.clamp_progress,
        )
        scanner = FileScanner(config.general.extensions, exclude_dirs=[target_dir])
        file_list = FileListManager(config, bus, ffprobe, scanner=scanner)
        prompter = FailurePrompter()
        orchestrator = Orchestrator(
            config=config,
            event_bus=bus,
            file_list=file_list,
            ffmpeg_adapter=ffmpeg,
            decide_on_failure=prompter.decide if config.general.on_error == "ask" else None,
        )

        try:
            added = _add_inputs(file_list, paths)
            if added == 0:
                typer.secho("No supported media files found.", fg=typer.colors.YELLOW)
            logger.info(f"Input files: {added}")

            with dashboard:
                while not file_list.wait_for_probes(timeout=0.2):
                    pass

                future = orchestrator.start(target_dir)
                summary = None
                while summary is None:
                    try:
                        prompter.serve_pending(dashboard.ask_continue)
                        summary = future.result(timeout=0.2)
                    except concurrent.futures.TimeoutError:
                        continue
                    except KeyboardInterrupt:
                        # Ctrl+C cancels the batch; keep waiting until every job has settled
                        logger.info("Ctrl+C detected - cancelling the batch")
                        prompter.close()
                        orchestrator.cancel()
        finally:
            prompter.close()
            orchestrator.shutdown()
            file_list.shutdown()

        _print_summary(dashboard.console, summary)
        raise typer.Exit(code=exit_code_for(summary))

    except KeyboardInterrupt:
        typer.secho("\nConversion stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=EXIT_CANCELLED)

    except typer.Exit:
        raise

    except MbcError as e:
        logging.getLogger(__name__).error(f"Fatal: {e}")
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_FATAL)

    except Exception as e:
        logging.getLogger(__name__).exception("Fatal error")
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_FATAL)


def _probe_rows(results: List[Tuple[Path, ProbeResult]], table: Table):
    for path, result in results:
        meta = result.metadata
        status = "[green]ok[/green]" if result.ok else f"[red]{result.failure.value.lower()}[/red]"
        table.add_row(
            path.name,
            meta.duration_label if meta else "",
            meta.container if meta else "",
            meta.video_codec if meta else "",
            meta.audio_codec if meta else "",
            status,
        )


@app.command()
def probe(
    paths: List[Path] = typer.Argument(..., help="Media files and/or folders (scanned recursively)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Write a log file here"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Probe media files with ffprobe and print their metadata."""
    config = _load_app_config(config_path)
    if log_path is not None:
        setup_logging(log_path.parent, debug=debug, log_path=log_path)
    else:
        # Keep probe warnings off the table output
        logging.getLogger("mbc").addHandler(logging.NullHandler())

    try:
        ffprobe_path = resolve_tool("ffprobe", config.tools.ffprobe_path)
    except MbcError as e:
        _fail(str(e))

    scanner = FileScanner(config.general.extensions)
    files: List[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(scanner.scan(path))
        elif scanner.is_supported(path) and path.is_file():
            files.append(path)
        else:
            typer.secho(f"Skipping {path} (missing or unsupported)", fg=typer.colors.YELLOW, err=True)

    if not files:
        typer.secho("No supported media files found.", fg=typer.colors.YELLOW)
        raise typer.Exit(code=EXIT_OK)

    adapter = FFprobeAdapter(ffprobe_path=ffprobe_path, timeout_s=config.general.probe_timeout_s)
    with concurrent.futures.ThreadPoolExecutor(max_workers=config.general.effective_probe_jobs) as executor:
        results = list(zip(files, executor.map(adapter.probe, files)))

    table = Table(title=f"{len(files)} file(s)")
    for column in ("File", "Duration", "Container", "Video", "Audio", "Probe"):
        table.add_column(column)
    _probe_rows(results, table)
    Console().print(table)

    failed = sum(1 for _, result in results if not result.ok)
    raise typer.Exit(code=EXIT_PARTIAL if failed else EXIT_OK)


if __name__ == "__main__":
    app()
