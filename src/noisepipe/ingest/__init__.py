"""Package importing the station files into the measurement store.

The `RowProcessor` imports one file at a time from its checkpoint, while
the `ImportCoordinator` schedules the files of all the stations on a
bounded pool of worker threads.
"""

from .checkpoint import Checkpoint, checkpoint_path, read_checkpoint, write_checkpoint
from .coordinator import (
    CoordinatorStats,
    CoordinatorStatus,
    ImportCoordinator,
    ImportJob,
    JobResult,
    JobStatus,
    Priority,
    submit_all,
)
from .processor import ProcessingResult, RowProcessor, list_csv_files, station_tag
from .rows import VALUE_COLUMNS, normalize_row

__all__ = [
    "VALUE_COLUMNS",
    "Checkpoint",
    "CoordinatorStats",
    "CoordinatorStatus",
    "ImportCoordinator",
    "ImportJob",
    "JobResult",
    "JobStatus",
    "Priority",
    "ProcessingResult",
    "RowProcessor",
    "checkpoint_path",
    "list_csv_files",
    "normalize_row",
    "read_checkpoint",
    "station_tag",
    "submit_all",
    "write_checkpoint",
]
