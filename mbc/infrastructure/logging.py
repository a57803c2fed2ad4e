import logging
from pathlib import Path
from typing import Optional

# Raw ffmpeg stderr lines are logged here, one record per line
RAW_FFMPEG_LOGGER = "mbc.ffmpeg.raw"

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
RAW_FFMPEG_FORMAT = '%(asctime)s - FFMPEG - %(message)s'


class ConversionLogFormatter(logging.Formatter):
    """Writes raw ffmpeg lines with their own tag so they stand apart from MBC's records."""

    def __init__(self):
        super().__init__(LOG_FORMAT)
        self._raw = logging.Formatter(RAW_FFMPEG_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if record.name == RAW_FFMPEG_LOGGER:
            return self._raw.format(record)
        return super().format(record)


def setup_logging(
    output_dir: Path,
    debug: bool = False,
    log_path: Optional[Path] = None,
    raw_ffmpeg: bool = True,
) -> logging.Logger:
    """
    Setup logging configuration for MBC.

    Creates output directory and conversion.log file.
    Returns configured logger instance.

    Args:
        output_dir: Directory where converted files are written
        debug: If True, enable DEBUG level logging for MBC's own modules
        log_path: Optional path to log file (overrides output_dir)
        raw_ffmpeg: If True, every raw ffmpeg line is written to the log file,
            independent of `debug`
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (output_dir / "conversion.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    # The terminal belongs to the Rich dashboard, so only a file handler here
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(ConversionLogFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)

    # Raw lines are DEBUG records; their logger's own level lets them through
    logging.getLogger(RAW_FFMPEG_LOGGER).setLevel(logging.DEBUG if raw_ffmpeg else logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'}, "
        f"raw ffmpeg={'ON' if raw_ffmpeg else 'OFF'})"
    )

    return logger
