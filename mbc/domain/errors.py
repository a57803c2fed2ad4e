from pathlib import Path
from typing import Optional


class MbcError(Exception):
    """Base class for errors that halt a batch before any job starts."""


class ToolNotFoundError(MbcError):
    def __init__(self, tool: str, configured: str):
        self.tool = tool
        self.configured = configured
        super().__init__(f"{tool} not found (configured as '{configured}'). Install it or set tools.{tool}_path.")


class OutputDirectoryError(MbcError):
    def __init__(self, path: Path, reason: Optional[str] = None):
        self.path = path
        detail = f": {reason}" if reason else ""
        super().__init__(f"Cannot create output directory {path}{detail}")


class BatchAlreadyRunningError(MbcError):
    """Raised when a batch is started while another one is still settling."""
