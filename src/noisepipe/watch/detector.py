"""Module implementing the change detector.

We watch every station directory with a watchdog observer. Bursts of
events for the same file are debounced: each event (re)starts a per-file
timer and only when the timer fires do we submit the file to the import
coordinator with high priority. A supervisor thread restarts the
observer if it dies, and a heartbeat thread periodically writes a
snapshot of the ingestion state to disk.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Final, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..atomic import write_json_atomic
from ..ingest.coordinator import CoordinatorStatus, Priority, submit_all
from ..ingest.processor import CSV_SUFFIX, TagInvalidator, station_tag

log = logging.getLogger("watch")

DEFAULT_DEBOUNCE: Final[float] = 1.5

DEFAULT_RESTART_DELAY: Final[float] = 5.0

DEFAULT_HEARTBEAT_INTERVAL: Final[float] = 30.0


class JobSink(Protocol):
    """Receives the import jobs (e.g., the ImportCoordinator)."""

    def submit(self, station: str, file_path: str | Path, priority: Priority | str = ...) -> str: ...

    def submit_directory(
        self, station: str, dir_path: str | Path, priority: Priority | str = ...
    ) -> list[str]: ...

    def status(self) -> CoordinatorStatus: ...


@dataclass(frozen=True, kw_only=True)
class WatcherStatus:
    """Snapshot of the change detector."""

    watched_dirs: list[str]
    files_submitted: int
    errors: int
    restarts: int
    pending: int
    last_activity: str | None
    observer_alive: bool


def is_watched_file(path: str | Path) -> bool:
    """Return whether a path names a visible CSV file."""
    p = Path(path)
    return p.suffix.lower() == CSV_SUFFIX and not p.name.startswith(".")


class _StationHandler(FileSystemEventHandler):
    """Forwards the events of a station directory to the detector."""

    def __init__(self, detector: ChangeDetector, station: str):
        self.detector = detector
        self.station = station

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.detector.notify_changed(self.station, str(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.detector.notify_changed(self.station, str(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.detector.notify_changed(self.station, str(event.dest_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.detector.notify_deleted(self.station, str(event.src_path))


class ChangeDetector:
    """Turns file-system activity in the station directories into import jobs."""

    def __init__(
        self,
        sink: JobSink,
        stations_root: str | Path,
        stations: Iterable[str],
        *,
        cache: TagInvalidator | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        restart_delay: float = DEFAULT_RESTART_DELAY,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        heartbeat_path: str | Path | None = None,
        initial_import: bool = True,
        observer_factory: Callable[[], Any] = Observer,
    ):
        """
        Initialize the detector.

        Parameters:
            sink: where to submit the import jobs.
            stations_root: directory containing one subdirectory per station.
            stations: the station names.
            cache: optional cache invalidated when a file disappears.
            debounce: seconds of quiet before a changed file is submitted.
            restart_delay: seconds between observer liveness checks.
            heartbeat_interval: seconds between heartbeat writes.
            heartbeat_path: heartbeat file (None disables the heartbeat).
            initial_import: queue the existing files on start.
            observer_factory: creates watchdog observers.
        """
        self.sink = sink
        self.stations_root = Path(stations_root)
        self.stations = list(stations)
        self.cache = cache
        self.debounce = debounce
        self.restart_delay = restart_delay
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_path = Path(heartbeat_path) if heartbeat_path is not None else None
        self.initial_import = initial_import
        self._observer_factory = observer_factory

        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._observer: Any = None
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._files_submitted = 0
        self._errors = 0
        self._restarts = 0
        self._last_activity: datetime | None = None

    def directory(self, station: str) -> Path:
        return self.stations_root / station

    # Lifecycle

    def start(self) -> None:
        """Create the station directories, start watching and queue existing files."""
        for station in self.stations:
            self.directory(station).mkdir(parents=True, exist_ok=True)
        self._stop.clear()
        self._start_observer()

        if self.initial_import:
            job_ids = submit_all(self.sink, self.stations_root, self.stations, Priority.NORMAL)
            log.info("initial import... queued %d files", len(job_ids))

        self._threads = [
            threading.Thread(target=self._supervise, name="watch-supervisor", daemon=True),
        ]
        if self.heartbeat_path is not None:
            self._threads.append(
                threading.Thread(target=self._heartbeat_loop, name="watch-heartbeat", daemon=True)
            )
        for thread in self._threads:
            thread.start()
        log.info("watching %d station directories below %s", len(self.stations), self.stations_root)

    def stop(self) -> None:
        """Stop watching; pending debounced submissions are dropped."""
        self._stop.set()
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join()
        for thread in self._threads:
            thread.join()
        self._threads = []
        if self.heartbeat_path is not None:
            self.write_heartbeat()
        log.info("watching... stopped")

    # Events

    def notify_changed(self, station: str, path: str) -> None:
        """Debounce a created/modified/moved file."""
        if not is_watched_file(path) or self._stop.is_set():
            return
        with self._lock:
            previous = self._timers.pop(path, None)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(self.debounce, self._fire, args=(station, path))
            timer.daemon = True
            self._timers[path] = timer
            self._last_activity = datetime.now()
        timer.start()

    def notify_deleted(self, station: str, path: str) -> None:
        """Forget pending work for a deleted file and drop the station cache."""
        if not is_watched_file(path):
            return
        with self._lock:
            timer = self._timers.pop(path, None)
            self._last_activity = datetime.now()
        if timer is not None:
            timer.cancel()
        log.info("file %s/%s deleted", station, Path(path).name)
        if self.cache is not None:
            self.cache.invalidate_by_tags([station_tag(station)])

    def _fire(self, station: str, path: str) -> None:
        with self._lock:
            self._timers.pop(path, None)
        try:
            job_id = self.sink.submit(station, path, Priority.HIGH)
        except FileNotFoundError:
            log.debug("file %s vanished before import", path)
            return
        except Exception as exc:
            with self._lock:
                self._errors += 1
            log.error("submitting %s/%s... failure: %s", station, Path(path).name, exc)
            return
        with self._lock:
            self._files_submitted += 1
        log.info("submitted %s/%s as %s", station, Path(path).name, job_id)

    # Observer management

    def _start_observer(self) -> None:
        observer = self._observer_factory()
        for station in self.stations:
            observer.schedule(_StationHandler(self, station), str(self.directory(station)), recursive=False)
        observer.start()
        with self._lock:
            self._observer = observer

    def _supervise(self) -> None:
        while not self._stop.wait(self.restart_delay):
            with self._lock:
                observer = self._observer
            if observer is None or observer.is_alive():
                continue
            log.warning("watch observer died... restarting")
            with self._lock:
                self._errors += 1
                self._restarts += 1
            try:
                self._start_observer()
            except Exception as exc:
                log.error("restarting watch observer... failure: %s", exc)

    # Status

    def status(self) -> WatcherStatus:
        with self._lock:
            observer = self._observer
            return WatcherStatus(
                watched_dirs=[str(self.directory(s)) for s in self.stations],
                files_submitted=self._files_submitted,
                errors=self._errors,
                restarts=self._restarts,
                pending=len(self._timers),
                last_activity=self._last_activity.isoformat(timespec="seconds")
                if self._last_activity
                else None,
                observer_alive=observer is not None and observer.is_alive(),
            )

    def heartbeat(self) -> dict[str, Any]:
        """Return the heartbeat snapshot."""
        coordinator = self.sink.status()
        return {
            "timestamp": datetime.now().isoformat(timespec="seconds"),
            "watcher": asdict(self.status()),
            "active_jobs": len(coordinator.active),
            "queued_jobs": len(coordinator.queued),
            "last_file_processed": coordinator.stats.last_file_processed,
            "stats": asdict(coordinator.stats),
        }

    def write_heartbeat(self) -> Path | None:
        if self.heartbeat_path is None:
            return None
        return write_json_atomic(self.heartbeat_path, self.heartbeat())

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_interval):
            try:
                self.write_heartbeat()
            except Exception as exc:
                log.error("writing heartbeat... failure: %s", exc)
