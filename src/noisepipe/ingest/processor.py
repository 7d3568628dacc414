"""Module implementing the checkpointed row processor.

The processor streams a single source file starting from its checkpoint,
normalizes the rows, and upserts them into the store one chunk at a time.
The checkpoint is written only after the chunk transaction commits, so a
crash at any point means re-reading at most one chunk, which is harmless
because the store upserts by (station, time).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Final, Protocol

import pandas as pd
from filelock import FileLock

from ..errors import FileProcessingError, RowValidationError, TransientStorageBusy
from ..models import MeasurementRecord
from ..store import MeasurementStore
from .checkpoint import (
    file_checksum,
    is_stale,
    lock_path,
    read_checkpoint,
    reset_checkpoint,
    write_checkpoint,
)
from .rows import normalize_row

log = logging.getLogger("ingest/processor")

CSV_SUFFIX: Final[str] = ".csv"

BUSY_MAX_ATTEMPTS: Final[int] = 5

BUSY_BASE_DELAY: Final[float] = 0.1


class TagInvalidator(Protocol):
    """Anything able to drop cached data by tag (e.g., the cache)."""

    def invalidate_by_tags(self, tags: Iterable[str]) -> int: ...


@dataclass(frozen=True, kw_only=True)
class ProcessingResult:
    """
    Outcome of processing a source file.

    Attributes:
        station: the station owning the file
        file_name: base name of the file
        inserted_count: rows written to the store
        skipped_count: rows rejected by validation
        error_count: rows that could not be written
        duration_ms: wall clock duration
        last_line: checkpoint after the run
        error: failure message when the whole file failed
    """

    station: str
    file_name: str
    inserted_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    duration_ms: float = 0.0
    last_line: int = 0
    error: str | None = None

    @property
    def processed_count(self) -> int:
        return self.inserted_count + self.skipped_count + self.error_count


def station_tag(station: str) -> str:
    """Return the cache tag of a station."""
    return f"station_{station}"


def list_csv_files(directory: Path) -> list[Path]:
    """Return the visible CSV files of a directory in sorted order."""
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix.lower() == CSV_SUFFIX and not path.name.startswith(".")
    )


class RowProcessor:
    """Processes source files into the measurement store."""

    def __init__(
        self,
        store: MeasurementStore,
        *,
        cache: TagInvalidator | None = None,
        batch_size: int = 100,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        busy_attempts: int = BUSY_MAX_ATTEMPTS,
        busy_delay: float = BUSY_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the processor.

        Parameters:
            store: where to write the measurements.
            cache: optional cache to invalidate after a successful run.
            batch_size: rows per transaction and per checkpoint write.
            max_attempts: whole-file attempts before giving up.
            retry_delay: base delay between whole-file attempts (seconds).
            busy_attempts: attempts per row when the store is busy.
            busy_delay: base delay of the exponential busy backoff.
            sleep: function used to wait (replaceable in tests).
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive: {batch_size}")
        if max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive: {max_attempts}")
        self.store = store
        self.cache = cache
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.busy_attempts = busy_attempts
        self.busy_delay = busy_delay
        self._sleep = sleep

    def process_file(
        self,
        station: str,
        file_path: str | Path,
        *,
        progress: Callable[[int], None] | None = None,
    ) -> ProcessingResult:
        """
        Import a source file starting from its checkpoint.

        Args:
            station: the station owning the file.
            file_path: path of the semicolon-delimited file.
            progress: optional callback receiving a 0-100 percentage.

        Returns:
            The ProcessingResult of the successful attempt.

        Raises:
            FileNotFoundError: if the file does not exist.
            FileProcessingError: if every attempt failed.
        """
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"no such file: {path}")

        with FileLock(lock_path(path)):
            last_exc: Exception | None = None
            for attempt in range(1, self.max_attempts + 1):
                log.info("processing %s/%s (attempt %d)... start", station, path.name, attempt)
                try:
                    result = self._process_once(station, path, progress)
                except Exception as exc:
                    last_exc = exc
                    log.warning(
                        "processing %s/%s (attempt %d)... failure: %s",
                        station,
                        path.name,
                        attempt,
                        exc,
                    )
                    if attempt < self.max_attempts:
                        self._sleep(self.retry_delay * attempt)
                    continue
                log.info(
                    "processing %s/%s... ok: inserted=%d skipped=%d errors=%d in %.0fms",
                    station,
                    path.name,
                    result.inserted_count,
                    result.skipped_count,
                    result.error_count,
                    result.duration_ms,
                )
                if self.cache is not None:
                    self.cache.invalidate_by_tags([station_tag(station)])
                return result

        raise FileProcessingError(
            f"cannot process {station}/{path.name} after {self.max_attempts} attempts: {last_exc}",
            station=station,
            file_name=path.name,
            attempts=self.max_attempts,
        ) from last_exc

    def process_all(
        self,
        stations_root: str | Path,
        stations: Iterable[str] | None = None,
    ) -> list[ProcessingResult]:
        """
        Process every CSV file of every station directory below `stations_root`.

        A failing file is recorded as a result carrying `error` and never
        stops the run. When `stations` is None we use every subdirectory.
        """
        root = Path(stations_root)
        if stations is None:
            names = sorted(p.name for p in root.iterdir() if p.is_dir() and not p.name.startswith("."))
        else:
            names = list(stations)

        results: list[ProcessingResult] = []
        for station in names:
            directory = root / station
            if not directory.is_dir():
                log.warning("scanning %s... skipped (missing directory)", directory)
                continue
            for path in list_csv_files(directory):
                try:
                    results.append(self.process_file(station, path))
                except (FileNotFoundError, FileProcessingError) as exc:
                    results.append(ProcessingResult(station=station, file_name=path.name, error=str(exc)))
        return results

    def _process_once(
        self,
        station: str,
        path: Path,
        progress: Callable[[int], None] | None,
    ) -> ProcessingResult:
        t0 = time.monotonic()

        # 1. figure out where to restart from; a rewritten or truncated
        # file starts over
        fallback_date = datetime.fromtimestamp(path.stat().st_mtime).date()
        total_rows = _count_data_rows(path)
        checkpoint = read_checkpoint(path)
        if checkpoint.last_line and is_stale(checkpoint, path, total_rows):
            log.warning("processing %s/%s... file changed, restarting from the top", station, path.name)
            reset_checkpoint(path)
            checkpoint = read_checkpoint(path)
        start_line = checkpoint.last_line
        checksum = file_checksum(path)

        inserted = skipped = errors = 0
        position = start_line

        # 2. stream the remaining rows; lines with too many fields are
        # counted as skipped so the position stays aligned with the file
        bad_lines: list[list[str]] = []

        def on_bad_line(fields: list[str]) -> None:
            bad_lines.append(fields)
            return None

        try:
            reader = pd.read_csv(
                path,
                sep=";",
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=False,
                skiprows=range(1, start_line + 1),
                chunksize=self.batch_size,
                engine="python",
                on_bad_lines=on_bad_line,
                encoding_errors="replace",
            )
        except pd.errors.EmptyDataError:
            log.debug("processing %s/%s... empty file", station, path.name)
            return ProcessingResult(station=station, file_name=path.name, last_line=start_line)

        # bad lines are reported while a chunk is being parsed, so the
        # count is taken after each chunk has been pulled from the reader
        bad_seen = 0
        with reader:
            for chunk in reader:
                chunk.columns = [str(column).strip() for column in chunk.columns]
                bad_in_chunk = len(bad_lines) - bad_seen
                bad_seen = len(bad_lines)

                # 3. validate and normalize
                records: list[MeasurementRecord] = []
                for offset, row in enumerate(chunk.to_dict("records")):
                    try:
                        records.append(
                            normalize_row(
                                row,
                                station=station,
                                file_name=path.name,
                                fallback_date=fallback_date,
                            )
                        )
                    except RowValidationError as exc:
                        skipped += 1
                        log.debug(
                            "row %s/%s line %d... skipped: %s",
                            station,
                            path.name,
                            position + offset + 2,
                            exc,
                        )

                # 4. commit the chunk and only then advance the checkpoint
                written, failed = self._write_chunk(station, path.name, records)
                inserted += written
                errors += failed
                consumed = len(chunk) + bad_in_chunk
                if consumed == 0:
                    continue
                skipped += bad_in_chunk
                position += consumed
                write_checkpoint(path, position, checksum=checksum)

                if progress is not None and total_rows > 0:
                    progress(min(100, int(position * 100 / total_rows)))

        # trailing bad lines may surface only once the reader is exhausted
        if len(bad_lines) > bad_seen:
            skipped += len(bad_lines) - bad_seen
            position += len(bad_lines) - bad_seen

        # 5. force the final checkpoint to stable storage
        if position > start_line:
            write_checkpoint(path, position, durable=True, checksum=checksum)
        if progress is not None:
            progress(100)

        return ProcessingResult(
            station=station,
            file_name=path.name,
            inserted_count=inserted,
            skipped_count=skipped,
            error_count=errors,
            duration_ms=(time.monotonic() - t0) * 1000,
            last_line=position,
        )

    def _write_chunk(
        self, station: str, file_name: str, records: list[MeasurementRecord]
    ) -> tuple[int, int]:
        """Write the records in one transaction and return (written, failed)."""
        if not records:
            return 0, 0
        written = failed = 0
        with self.store.transaction() as conn:
            for record in records:
                if self._upsert_with_retry(conn, record):
                    written += 1
                else:
                    failed += 1
                    log.error(
                        "writing %s/%s at %s... failure: database busy after %d attempts",
                        station,
                        file_name,
                        record.time,
                        self.busy_attempts,
                    )
        return written, failed

    def _upsert_with_retry(self, conn, record: MeasurementRecord) -> bool:
        for attempt in range(1, self.busy_attempts + 1):
            try:
                self.store.upsert_measurement(conn, record)
                return True
            except TransientStorageBusy as exc:
                log.debug(
                    "writing %s at %s (attempt %d)... busy: %s",
                    record.station,
                    record.time,
                    attempt,
                    exc,
                )
                if attempt < self.busy_attempts:
                    self._sleep(self.busy_delay * 2 ** (attempt - 1))
        return False


def _count_data_rows(path: Path) -> int:
    """Count the rows after the header, used to report progress."""
    with path.open("rb") as filep:
        lines = sum(1 for _ in filep)
    return max(0, lines - 1)
