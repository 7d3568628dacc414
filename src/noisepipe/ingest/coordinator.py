"""Module implementing the import coordinator.

The coordinator owns a priority queue of import jobs and a bounded pool
of worker threads. A dispatcher thread pops the highest priority job
whose file is not already being processed and hands it to the pool; the
outcome comes back through the future's completion callback, which
updates the statistics, moves the job to the history, invalidates the
affected cache tags and publishes the lifecycle events.
"""

from __future__ import annotations

import heapq
import logging
import secrets
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Final, Protocol

from ..config import default_max_concurrent_jobs
from ..events import (
    JOB_ADDED,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_STARTED,
    EventChannel,
)
from .processor import ProcessingResult, TagInvalidator, list_csv_files

log = logging.getLogger("ingest/coordinator")

TABLE_DATA_TAG: Final[str] = "table_data"

RECENT_HISTORY_SIZE: Final[int] = 10


class Priority(str, Enum):
    """Priority of an import job."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Lower ranks are dispatched first."""
        return _RANKS[self]


_RANKS = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class JobStatus(str, Enum):
    """Lifecycle state of an import job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, kw_only=True)
class JobResult:
    """Row counters of a finished job."""

    processed: int
    skipped: int
    errors: int
    duration_ms: float


@dataclass(kw_only=True)
class ImportJob:
    """A request to import a file on behalf of a station."""

    id: str
    station: str
    file_path: Path
    priority: Priority = Priority.NORMAL
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    submitted_at: datetime = field(default_factory=datetime.now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: JobResult | None = None
    error: str | None = None


@dataclass(frozen=True, kw_only=True)
class CoordinatorStats:
    """Counters describing the work done so far."""

    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    total_processed: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    average_duration_ms: float = 0.0
    queue_length: int = 0
    active_jobs: int = 0
    last_file_processed: str | None = None


@dataclass(frozen=True, kw_only=True)
class CoordinatorStatus:
    """Snapshot used by the heartbeat and the `status` command."""

    running: bool
    paused: bool
    stats: CoordinatorStats
    active: list[ImportJob]
    queued: list[ImportJob]
    recent: list[ImportJob]


class FileProcessor(Protocol):
    """Processes a single file (e.g., the RowProcessor)."""

    def process_file(
        self,
        station: str,
        file_path: str | Path,
        *,
        progress: Callable[[int], None] | None = None,
    ) -> ProcessingResult: ...


def new_job_id() -> str:
    """Return a fresh job identifier."""
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class ImportCoordinator:
    """Priority queue of import jobs processed by a bounded worker pool."""

    def __init__(
        self,
        processor: FileProcessor,
        *,
        max_concurrent_jobs: int | None = None,
        history_size: int = 100,
        cache: TagInvalidator | None = None,
        events: EventChannel | None = None,
        aggregate_trigger: Callable[[], object] | None = None,
        aggregate_trigger_rows: int = 100,
    ):
        """
        Initialize the coordinator.

        Parameters:
            processor: processes the files.
            max_concurrent_jobs: cap on concurrently processed files
                (default: half the CPUs, at least two).
            history_size: finished jobs to remember.
            cache: optional cache invalidated after each successful job.
            events: channel where we publish the job lifecycle events.
            aggregate_trigger: called when a job processed more than
                `aggregate_trigger_rows` rows.
            aggregate_trigger_rows: see above.
        """
        self.processor = processor
        self.max_concurrent_jobs = max_concurrent_jobs or default_max_concurrent_jobs()
        self.cache = cache
        self.events = events or EventChannel()
        self.aggregate_trigger = aggregate_trigger
        self.aggregate_trigger_rows = aggregate_trigger_rows

        self._cond = threading.Condition()
        self._heap: list[tuple[int, int, str]] = []
        self._seq = 0
        self._queued: dict[str, ImportJob] = {}
        self._active: dict[str, ImportJob] = {}
        self._history: deque[ImportJob] = deque(maxlen=history_size)
        self._stats = CoordinatorStats()

        self._running = False
        self._paused = False
        self._executor: ThreadPoolExecutor | None = None
        self._dispatcher: threading.Thread | None = None

    # Submission

    def submit(
        self,
        station: str,
        file_path: str | Path,
        priority: Priority | str = Priority.NORMAL,
    ) -> str:
        """
        Queue the import of a file and return the job id.

        Raises:
            FileNotFoundError: if the file does not exist (nothing is queued).
            ValueError: if the priority is unknown.
        """
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"no such file: {path}")
        job = ImportJob(
            id=new_job_id(),
            station=station,
            file_path=path,
            priority=Priority(priority),
        )
        with self._cond:
            self._queued[job.id] = job
            heapq.heappush(self._heap, (job.priority.rank, self._seq, job.id))
            self._seq += 1
            self._stats = replace(self._stats, total_jobs=self._stats.total_jobs + 1)
            snapshot = replace(job)
            self._cond.notify_all()
        log.debug("queued %s (%s/%s, %s)", job.id, station, path.name, job.priority.value)
        self.events.publish(JOB_ADDED, snapshot)
        return job.id

    def submit_directory(
        self,
        station: str,
        dir_path: str | Path,
        priority: Priority | str = Priority.NORMAL,
    ) -> list[str]:
        """
        Queue every CSV file of a directory, in sorted order.

        Raises:
            FileNotFoundError: if the directory does not exist.
            NotADirectoryError: if the path is not a directory.
        """
        directory = Path(dir_path)
        if not directory.exists():
            raise FileNotFoundError(f"no such directory: {directory}")
        if not directory.is_dir():
            raise NotADirectoryError(f"not a directory: {directory}")
        return [self.submit(station, path, priority) for path in list_csv_files(directory)]

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued job. Returns False if it is not queued anymore."""
        with self._cond:
            job = self._queued.pop(job_id, None)
            if job is None:
                return False
            job.status = JobStatus.CANCELLED
            job.finished_at = datetime.now()
            self._history.append(job)
            self._stats = replace(self._stats, cancelled_jobs=self._stats.cancelled_jobs + 1)
            snapshot = replace(job)
            self._cond.notify_all()
        log.info("cancelled %s", job_id)
        self.events.publish(JOB_CANCELLED, snapshot)
        return True

    def get_job(self, job_id: str) -> ImportJob | None:
        """Return a snapshot of a job that is queued, active or in the history."""
        with self._cond:
            job = self._queued.get(job_id) or self._active.get(job_id)
            if job is None:
                job = next((j for j in self._history if j.id == job_id), None)
            return None if job is None else replace(job)

    # Lifecycle

    def start(self) -> None:
        """Start the worker pool and the dispatcher thread."""
        with self._cond:
            if self._running:
                return
            self._running = True
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent_jobs, thread_name_prefix="import"
            )
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop, name="import-dispatcher", daemon=True
            )
            self._dispatcher.start()
        log.info("import coordinator... started (max %d jobs)", self.max_concurrent_jobs)

    def stop(self, wait: bool = True) -> None:
        """
        Stop dispatching jobs and shut the worker pool down.

        Queued jobs stay queued. With `wait=True` the active jobs are
        allowed to finish before returning.
        """
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._cond.notify_all()
            dispatcher, executor = self._dispatcher, self._executor
            self._dispatcher = self._executor = None
        if dispatcher is not None:
            dispatcher.join()
        if executor is not None:
            executor.shutdown(wait=wait)
        log.info("import coordinator... stopped")

    def pause(self) -> None:
        """Stop dispatching new jobs without discarding the queue."""
        with self._cond:
            self._paused = True
        log.info("import coordinator... paused")

    def resume(self) -> None:
        """Resume dispatching jobs."""
        with self._cond:
            self._paused = False
            self._cond.notify_all()
        log.info("import coordinator... resumed")

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is queued or active. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._queued and not self._active, timeout)

    # Introspection

    def stats(self) -> CoordinatorStats:
        with self._cond:
            return replace(
                self._stats,
                queue_length=len(self._queued),
                active_jobs=len(self._active),
            )

    def status(self) -> CoordinatorStatus:
        with self._cond:
            queued = sorted(self._queued.values(), key=lambda j: (j.priority.rank, j.submitted_at))
            return CoordinatorStatus(
                running=self._running,
                paused=self._paused,
                stats=replace(
                    self._stats,
                    queue_length=len(self._queued),
                    active_jobs=len(self._active),
                ),
                active=[replace(job) for job in self._active.values()],
                queued=[replace(job) for job in queued],
                recent=[replace(job) for job in list(self._history)[-RECENT_HISTORY_SIZE:]],
            )

    # Dispatching

    def _dispatch_loop(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(self._should_wake)
                if not self._running:
                    return
                job = self._pop_eligible()
                if job is None:
                    # Everything queued targets a file already in progress
                    self._cond.wait(0.5)
                    continue
                job.status = JobStatus.PROCESSING
                job.started_at = datetime.now()
                self._active[job.id] = job
                executor = self._executor
                snapshot = replace(job)
            self.events.publish(JOB_STARTED, snapshot)
            assert executor is not None
            future = executor.submit(
                self.processor.process_file,
                job.station,
                job.file_path,
                progress=partial(self._set_progress, job.id),
            )
            future.add_done_callback(partial(self._on_done, job.id))

    def _should_wake(self) -> bool:
        if not self._running:
            return True
        return (
            not self._paused
            and bool(self._queued)
            and len(self._active) < self.max_concurrent_jobs
        )

    def _pop_eligible(self) -> ImportJob | None:
        """Pop the best queued job whose file is not being processed."""
        busy_files = {job.file_path for job in self._active.values()}
        deferred: list[tuple[int, int, str]] = []
        selected: ImportJob | None = None
        while self._heap:
            item = heapq.heappop(self._heap)
            job = self._queued.get(item[2])
            if job is None:
                continue  # cancelled
            if job.file_path in busy_files:
                deferred.append(item)
                continue
            del self._queued[job.id]
            selected = job
            break
        for item in deferred:
            heapq.heappush(self._heap, item)
        return selected

    def _set_progress(self, job_id: str, percent: int) -> None:
        with self._cond:
            job = self._active.get(job_id)
            if job is not None:
                job.progress = max(0, min(100, percent))

    def _on_done(self, job_id: str, future: Future) -> None:
        exc = future.exception()
        result: ProcessingResult | None = None if exc is not None else future.result()

        # 1. record the outcome; the job stays active until its side
        # effects ran, so wait_idle() returning implies they happened
        with self._cond:
            job = self._active[job_id]
            job.finished_at = datetime.now()
            stats = self._stats
            if result is not None:
                job.status = JobStatus.COMPLETED
                job.progress = 100
                job.result = JobResult(
                    processed=result.inserted_count,
                    skipped=result.skipped_count,
                    errors=result.error_count,
                    duration_ms=result.duration_ms,
                )
                completed = stats.completed_jobs + 1
                stats = replace(
                    stats,
                    completed_jobs=completed,
                    total_processed=stats.total_processed + result.inserted_count,
                    total_skipped=stats.total_skipped + result.skipped_count,
                    total_errors=stats.total_errors + result.error_count,
                    average_duration_ms=(
                        stats.average_duration_ms * (completed - 1) + result.duration_ms
                    )
                    / completed,
                    last_file_processed=str(job.file_path),
                )
            else:
                job.status = JobStatus.FAILED
                job.error = str(exc)
                stats = replace(stats, failed_jobs=stats.failed_jobs + 1)
            self._stats = stats
            snapshot = replace(job)

        # 2. side effects and events
        if result is None:
            log.error("import %s (%s/%s)... failure: %s", job_id, job.station, job.file_path.name, exc)
            self.events.publish(JOB_FAILED, snapshot)
        else:
            self._after_success(job.station, result)
            self.events.publish(JOB_COMPLETED, snapshot)

        # 3. retire the job
        with self._cond:
            del self._active[job_id]
            self._history.append(job)
            self._cond.notify_all()

    def _after_success(self, station: str, result: ProcessingResult) -> None:
        if self.cache is not None:
            try:
                self.cache.invalidate_by_tags([TABLE_DATA_TAG])
            except Exception as exc:
                log.warning("invalidating cache for %s... failure: %s", station, exc)
        if self.aggregate_trigger is not None and result.inserted_count > self.aggregate_trigger_rows:
            try:
                self.aggregate_trigger()
            except Exception as exc:
                log.warning("triggering aggregation... failure: %s", exc)


def submit_all(
    coordinator: ImportCoordinator,
    stations_root: Path,
    stations: Iterable[str],
    priority: Priority | str = Priority.NORMAL,
) -> list[str]:
    """Queue every existing file of every station, creating missing directories."""
    job_ids: list[str] = []
    for station in stations:
        directory = stations_root / station
        directory.mkdir(parents=True, exist_ok=True)
        job_ids.extend(coordinator.submit_directory(station, directory, priority))
    return job_ids
