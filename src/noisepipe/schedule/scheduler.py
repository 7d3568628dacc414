"""Module implementing the periodic job scheduler.

Every job has its own timer thread. Each invocation runs the handler in
a worker thread bounded by the job timeout; failures are retried with an
exponential backoff. A job never overlaps with itself: while a previous
invocation (including an abandoned, timed out one) is still running,
further ticks are skipped and counted.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Final

from ..errors import SchedulerJobError, SchedulerJobTimeout

log = logging.getLogger("schedule")

MAX_BACKOFF: Final[float] = 10.0

# A handler receives an event that is set when the invocation is abandoned
JobHandler = Callable[[threading.Event], object]


def retry_backoff(attempt: int, base: float = 1.0) -> float:
    """Return the delay before retrying after the given failed attempt."""
    return min(base * 2 ** (attempt - 1), MAX_BACKOFF)


@dataclass(frozen=True, kw_only=True)
class JobStats:
    """Counters of a scheduled job."""

    name: str
    interval: float
    executions: int = 0
    failures: int = 0
    skipped: int = 0
    average_duration_ms: float = 0.0
    last_execution: datetime | None = None
    last_error: str | None = None
    running: bool = False


@dataclass(kw_only=True)
class _Job:
    name: str
    handler: JobHandler
    interval: float
    timeout: float
    max_retries: int
    run_immediately: bool
    lock: threading.Lock = field(default_factory=threading.Lock)
    stop: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None
    running: bool = False
    executions: int = 0
    failures: int = 0
    skipped: int = 0
    average_duration_ms: float = 0.0
    last_execution: datetime | None = None
    last_error: str | None = None


class Scheduler:
    """Runs named jobs periodically with overlap prevention, timeout and retry."""

    def __init__(self, *, backoff_base: float = 1.0):
        self.backoff_base = backoff_base
        self._jobs: dict[str, _Job] = {}
        self._lock = threading.Lock()
        self._started = False

    def add_job(
        self,
        name: str,
        handler: JobHandler,
        interval: float,
        *,
        timeout: float = 60.0,
        max_retries: int = 3,
        run_immediately: bool = False,
    ) -> None:
        """
        Register a job.

        Args:
            name: unique job name.
            handler: callable receiving a cancellation event.
            interval: seconds between ticks.
            timeout: seconds an attempt may run before being abandoned.
            max_retries: attempts per tick.
            run_immediately: also run once as soon as the job starts.

        Raises:
            ValueError: if the name is taken or a setting is not positive.
        """
        if interval <= 0 or timeout <= 0 or max_retries <= 0:
            raise ValueError(f"{name}: interval, timeout and max_retries must be > 0")
        job = _Job(
            name=name,
            handler=handler,
            interval=interval,
            timeout=timeout,
            max_retries=max_retries,
            run_immediately=run_immediately,
        )
        with self._lock:
            if name in self._jobs:
                raise ValueError(f"job already registered: {name}")
            self._jobs[name] = job
            if self._started:
                self._start_job(job)

    def remove_job(self, name: str) -> bool:
        """Stop and unregister a job. Returns False if it does not exist."""
        with self._lock:
            job = self._jobs.pop(name, None)
        if job is None:
            return False
        job.stop.set()
        return True

    def has_job(self, name: str) -> bool:
        with self._lock:
            return name in self._jobs

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            for job in self._jobs.values():
                self._start_job(job)
        log.info("scheduler... started")

    def stop(self, timeout: float | None = None) -> None:
        """Stop every timer thread; running invocations are not interrupted."""
        with self._lock:
            self._started = False
            jobs = list(self._jobs.values())
        for job in jobs:
            job.stop.set()
        for job in jobs:
            if job.thread is not None:
                job.thread.join(timeout)
                job.thread = None
        log.info("scheduler... stopped")

    def trigger(self, name: str, *, wait: bool = False) -> bool:
        """
        Run a job now, outside of its timer.

        Returns False if the job does not exist or is already running.
        With `wait=True` the call blocks and returns whether it succeeded.
        """
        with self._lock:
            job = self._jobs.get(name)
        if job is None:
            return False
        if wait:
            return self.run_job(job.name)
        with job.lock:
            if job.running:
                job.skipped += 1
                return False
        threading.Thread(target=self.run_job, args=(name,), name=f"trigger-{name}", daemon=True).start()
        return True

    def run_job(self, name: str) -> bool:
        """
        Run one invocation of a job in the calling thread.

        Returns whether it succeeded; False also when skipped because a
        previous invocation is still running.
        """
        with self._lock:
            job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)

        with job.lock:
            if job.running:
                job.skipped += 1
                log.info("job %s... skipped (still running)", name)
                return False
            job.running = True

        abandoned: threading.Thread | None = None
        succeeded = False
        try:
            for attempt in range(1, job.max_retries + 1):
                succeeded, abandoned = self._attempt(job, attempt)
                if succeeded or abandoned is not None:
                    break
                if attempt < job.max_retries and job.stop.wait(retry_backoff(attempt, self.backoff_base)):
                    break
        finally:
            if abandoned is None:
                with job.lock:
                    job.running = False
            else:
                # Keep the job busy until the abandoned attempt returns
                threading.Thread(
                    target=self._release_when_done,
                    args=(job, abandoned),
                    name=f"reaper-{name}",
                    daemon=True,
                ).start()
        return succeeded

    def stats(self) -> dict[str, JobStats]:
        with self._lock:
            jobs = list(self._jobs.values())
        result: dict[str, JobStats] = {}
        for job in jobs:
            with job.lock:
                result[job.name] = JobStats(
                    name=job.name,
                    interval=job.interval,
                    executions=job.executions,
                    failures=job.failures,
                    skipped=job.skipped,
                    average_duration_ms=job.average_duration_ms,
                    last_execution=job.last_execution,
                    last_error=job.last_error,
                    running=job.running,
                )
        return result

    def _start_job(self, job: _Job) -> None:
        job.stop.clear()
        job.thread = threading.Thread(target=self._timer_loop, args=(job,), name=f"job-{job.name}", daemon=True)
        job.thread.start()

    def _timer_loop(self, job: _Job) -> None:
        if job.run_immediately:
            self._tick(job)
        while not job.stop.wait(job.interval):
            self._tick(job)

    def _tick(self, job: _Job) -> None:
        try:
            self.run_job(job.name)
        except KeyError:
            job.stop.set()  # removed meanwhile

    def _attempt(self, job: _Job, attempt: int) -> tuple[bool, threading.Thread | None]:
        """Run one attempt; returns (succeeded, abandoned thread or None)."""
        cancel = threading.Event()
        done = threading.Event()
        outcome: dict[str, BaseException] = {}

        def target() -> None:
            try:
                job.handler(cancel)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        log.info("job %s (attempt %d)... start", job.name, attempt)
        t0 = time.monotonic()
        worker = threading.Thread(target=target, name=f"run-{job.name}", daemon=True)
        worker.start()
        finished = done.wait(job.timeout)
        duration_ms = (time.monotonic() - t0) * 1000

        error: SchedulerJobError | None = None
        if not finished:
            cancel.set()
            error = SchedulerJobTimeout(f"job {job.name} timed out after {job.timeout}s")
        elif "error" in outcome:
            cause = outcome["error"]
            error = cause if isinstance(cause, SchedulerJobError) else SchedulerJobError(str(cause))

        with job.lock:
            job.executions += 1
            job.last_execution = datetime.now()
            if job.average_duration_ms == 0:
                job.average_duration_ms = duration_ms
            else:
                job.average_duration_ms = job.average_duration_ms * 0.8 + duration_ms * 0.2
            if error is not None:
                job.failures += 1
                job.last_error = str(error)

        if error is None:
            log.info("job %s... ok in %.0fms", job.name, duration_ms)
            return True, None
        log.warning("job %s (attempt %d)... failure: %s", job.name, attempt, error)
        return False, (worker if not finished else None)

    @staticmethod
    def _release_when_done(job: _Job, worker: threading.Thread) -> None:
        worker.join()
        with job.lock:
            job.running = False
        log.info("job %s... abandoned attempt returned", job.name)
