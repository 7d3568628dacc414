"""Construction and lifecycle of the noisepipe services.

`Services.from_config` wires the components together, injecting every
dependency through constructors. `start()` starts them leaf first and
`stop()` stops them in reverse order:

    store -> cache -> coordinator -> scheduler -> change detector
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path

from .aggregate import AGGREGATED_TAG, AggregationEngine
from .cache import IntelligentCache, WarmupItem
from .config import Config
from .events import EventChannel
from .ingest import ImportCoordinator, RowProcessor, station_tag
from .ingest.coordinator import TABLE_DATA_TAG
from .models import Granularity
from .schedule import Scheduler
from .store import MeasurementStore
from .watch import ChangeDetector
from .weather import WeatherClient

log = logging.getLogger("services")


class Services:
    """Holds the running components."""

    def __init__(
        self,
        *,
        config: Config,
        store: MeasurementStore,
        cache: IntelligentCache,
        processor: RowProcessor,
        coordinator: ImportCoordinator,
        engine: AggregationEngine,
        scheduler: Scheduler,
        detector: ChangeDetector | None,
        weather: WeatherClient | None,
        events: EventChannel,
    ):
        self.config = config
        self.store = store
        self.cache = cache
        self.processor = processor
        self.coordinator = coordinator
        self.engine = engine
        self.scheduler = scheduler
        self.detector = detector
        self.weather = weather
        self.events = events
        self._started = False

    @classmethod
    def from_config(cls, config: Config, *, watch: bool = True) -> Services:
        """
        Build the services described by `config`.

        Args:
            config: the loaded configuration.
            watch: whether to create the change detector.
        """
        data_dir = config.resolved_data_dir()
        stations_root = Path(config.stations_root)
        if not stations_root.is_absolute():
            stations_root = Path.cwd() / stations_root

        events = EventChannel()
        store = MeasurementStore(config.database_path())
        cache = IntelligentCache(
            config.cache_dir(),
            max_items=config.cache.max_items,
            max_bytes=config.cache.max_bytes,
            demote_threshold=config.cache.demote_threshold,
            sweep_interval=config.cache.sweep_interval,
        )
        processor = RowProcessor(
            store,
            cache=cache,
            batch_size=config.ingest.batch_size,
            max_attempts=config.ingest.max_attempts,
            retry_delay=config.ingest.retry_delay,
        )
        engine = AggregationEngine(store, cache=cache, retention=config.retention)
        scheduler = Scheduler()
        coordinator = ImportCoordinator(
            processor,
            max_concurrent_jobs=config.ingest.max_concurrent_jobs,
            history_size=config.ingest.history_size,
            cache=cache,
            events=events,
            aggregate_trigger=lambda: scheduler.trigger("aggregate"),
            aggregate_trigger_rows=config.ingest.aggregate_trigger_rows,
        )
        detector = None
        if watch:
            detector = ChangeDetector(
                coordinator,
                stations_root,
                config.stations,
                cache=cache,
                debounce=config.watch.debounce,
                restart_delay=config.watch.restart_delay,
                heartbeat_interval=config.watch.heartbeat_interval,
                heartbeat_path=config.heartbeat_path(),
                initial_import=config.watch.initial_import,
            )
        weather = None
        if config.weather.url is not None:
            weather = WeatherClient(
                store,
                config.weather.url,
                station=config.weather.station,
                timeout=config.weather.timeout,
                max_attempts=config.weather.max_attempts,
            )

        services = cls(
            config=config,
            store=store,
            cache=cache,
            processor=processor,
            coordinator=coordinator,
            engine=engine,
            scheduler=scheduler,
            detector=detector,
            weather=weather,
            events=events,
        )
        services._register_jobs()
        log.debug("services for %s... ok", data_dir)
        return services

    def _register_jobs(self) -> None:
        jobs = {
            "aggregate": self._aggregate_job,
            "cleanup": self._cleanup_job,
            "cache_warmup": self._warmup_job,
        }
        if self.weather is not None:
            jobs["weather"] = self._weather_job
        for name, handler in jobs.items():
            job = self.config.job(name)
            self.scheduler.add_job(
                name,
                handler,
                job.interval,
                timeout=job.timeout,
                max_retries=job.max_retries,
            )

    # Scheduled jobs

    def _aggregate_job(self, cancel: threading.Event) -> None:
        self.engine.refresh()

    def _cleanup_job(self, cancel: threading.Event) -> None:
        report = self.engine.run_maintenance(with_refresh=False, with_optimize=not cancel.is_set())
        if report.errors:
            log.warning("scheduled cleanup... partial failure: %s", report.errors)

    def _warmup_job(self, cancel: threading.Event) -> None:
        self.cache.warmup(self.warmup_items())

    def _weather_job(self, cancel: threading.Event) -> None:
        assert self.weather is not None
        self.weather.fetch()

    def warmup_items(self) -> list[WarmupItem]:
        """Return the entries the dashboards read the most."""
        items: list[WarmupItem] = []
        for station in self.config.stations:
            items.append(
                WarmupItem(
                    key=f"station_data:{station}:latest",
                    generator=lambda s=station: self.store.query_measurements(station=s).rows,
                    tags=(station_tag(station), TABLE_DATA_TAG),
                )
            )
            items.append(
                WarmupItem(
                    key=f"aggregated:{station}:hourly:24h",
                    generator=lambda s=station: [
                        asdict(bucket)
                        for bucket in self.store.read_aggregates(
                            Granularity.HOURLY,
                            station=s,
                            since=datetime.now() - timedelta(days=1),
                        )
                    ],
                    tags=(station_tag(station), AGGREGATED_TAG),
                )
            )
        return items

    # Lifecycle

    def start(self) -> None:
        if self._started:
            return
        self.store.ensure_schema()
        self.engine.ensure_default_policies()
        self.cache.start()
        self.coordinator.start()
        self.scheduler.start()
        if self.detector is not None:
            self.detector.start()
        self._started = True
        log.info("services... started")

    def stop(self) -> None:
        if not self._started:
            return
        if self.detector is not None:
            self.detector.stop()
        self.scheduler.stop()
        self.coordinator.stop(wait=True)
        self.cache.stop()
        self.store.close()
        self._started = False
        log.info("services... stopped")

    def __enter__(self) -> Services:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
