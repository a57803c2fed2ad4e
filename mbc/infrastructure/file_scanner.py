import os
from pathlib import Path
from typing import Generator, Iterable, List, Optional


class FileScanner:
    """Recursively scans a folder for files with a supported media extension."""

    def __init__(self, extensions: List[str], exclude_dirs: Optional[Iterable[Path]] = None):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]
        self.exclude_dirs = {str(Path(d).absolute()).casefold() for d in (exclude_dirs or [])}

    def is_supported(self, path: Path) -> bool:
        return path.suffix.lower() in self.extensions

    def _excluded(self, path: Path) -> bool:
        return str(path.absolute()).casefold() in self.exclude_dirs

    def scan(self, root_dir: Path) -> Generator[Path, None, None]:
        """Yields matching files under root_dir in a deterministic order."""
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            # Never pick up our own output when it lives inside the source tree
            if self._excluded(root_path):
                dirs[:] = []
                continue

            dirs[:] = sorted(d for d in dirs if not self._excluded(root_path / d))
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                if not self.is_supported(file_path):
                    continue
                if not file_path.is_file():
                    continue
                yield file_path
