from pathlib import Path
from typing import Optional, Set


def resolve_output_path(
    output_dir: Path,
    source_path: Path,
    extension: str = ".mp4",
    reserved: Optional[Set[str]] = None,
) -> Path:
    """Picks a free output path for `source_path` inside `output_dir`.

    Tries ``<stem><ext>`` first, then ``<stem> (1)<ext>``, ``<stem> (2)<ext>``...
    A candidate is taken if it neither exists on disk nor is in `reserved`
    (case-insensitive). The chosen name is added to `reserved`.
    """
    stem = Path(source_path).stem
    if not extension.startswith("."):
        extension = f".{extension}"
    taken = reserved if reserved is not None else set()

    candidate = output_dir / f"{stem}{extension}"
    counter = 1
    while candidate.exists() or candidate.name.casefold() in taken:
        candidate = output_dir / f"{stem} ({counter}){extension}"
        counter += 1

    taken.add(candidate.name.casefold())
    return candidate
