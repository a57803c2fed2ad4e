from typing import Iterable
from mbc.domain.models import BatchOutcome, BatchSummary, FileStatus, SourceFile


def reduce_outcome(files: Iterable[SourceFile], cancelled: bool) -> BatchSummary:
    """Summarises the final statuses of the files that took part in a batch."""
    batch = list(files)
    total = len(batch)
    completed = sum(1 for f in batch if f.status == FileStatus.COMPLETED)
    failed_files = [f.name for f in batch if f.status == FileStatus.FAILED]
    failed = len(failed_files)
    cancelled_count = sum(1 for f in batch if f.status == FileStatus.CANCELLED)

    if cancelled:
        outcome = BatchOutcome.CANCELLED
        message = f"Conversion cancelled: {completed} of {total} file(s) completed."
    elif total == 0:
        outcome = BatchOutcome.NOTHING_TO_DO
        message = "No files to convert."
    elif completed == total:
        outcome = BatchOutcome.ALL_COMPLETED
        message = f"All {total} file(s) converted successfully."
    else:
        outcome = BatchOutcome.PARTIAL
        message = f"Conversion finished with errors: {completed} of {total} file(s) completed, {failed} failed."

    return BatchSummary(
        outcome=outcome,
        total=total,
        completed=completed,
        failed=failed,
        cancelled=cancelled_count,
        message=message,
        failed_files=failed_files,
    )
