"""Module containing the noisepipe configuration.

The configuration is a YAML file mapped onto frozen dataclasses using
dacite. A missing file means "use the defaults". For example:

    version: 0
    stations_root: ./csv
    stations: [ort, techno, heuballern, band]
    ingest:
      batch_size: 100
      max_concurrent_jobs: 4
    schedule:
      aggregate:
        interval: 1800
        timeout: 60
    weather:
      url: https://example.com/weather.php

Data Directory Convention
-------------------------

If a data directory is specified, we use it. Otherwise, we use `.noisepipe`
in the current directory, similar to how git uses `.git`. The data directory
contains:

    $datadir/measurements.sqlite
    $datadir/cache/v1/{sha256[:2]}/{sha256}.json
    $datadir/state/heartbeat.json
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

import dacite
import yaml

from .errors import ConfigError

DEFAULT_STATIONS: Final[tuple[str, ...]] = ("ort", "techno", "heuballern", "band")

DATABASE_FILENAME: Final[str] = "measurements.sqlite"

HEARTBEAT_FILENAME: Final[str] = "heartbeat.json"


def default_max_concurrent_jobs() -> int:
    """Return half the available CPU parallelism, but at least two."""
    return max(2, (os.cpu_count() or 1) // 2)


@dataclass(frozen=True, kw_only=True)
class IngestConfig:
    """Settings for the row processor and the import coordinator."""

    batch_size: int = 100
    max_attempts: int = 3
    retry_delay: float = 1.0
    max_concurrent_jobs: int = field(default_factory=default_max_concurrent_jobs)
    history_size: int = 100
    aggregate_trigger_rows: int = 100


@dataclass(frozen=True, kw_only=True)
class CacheConfig:
    """Settings for the two-tier cache."""

    max_items: int = 2000
    max_bytes: int = 256 * 1024 * 1024
    demote_threshold: int = 5
    sweep_interval: float = 300.0


@dataclass(frozen=True, kw_only=True)
class WatchConfig:
    """Settings for the change detector."""

    debounce: float = 1.5
    restart_delay: float = 5.0
    heartbeat_interval: float = 30.0
    initial_import: bool = True


@dataclass(frozen=True, kw_only=True)
class JobConfig:
    """Settings for a single scheduled job."""

    interval: float
    timeout: float = 60.0
    max_retries: int = 3


def _default_jobs() -> dict[str, JobConfig]:
    return {
        "aggregate": JobConfig(interval=30 * 60, timeout=120.0),
        "cleanup": JobConfig(interval=24 * 60 * 60, timeout=30 * 60.0),
        "cache_warmup": JobConfig(interval=10 * 60, timeout=60.0),
        "weather": JobConfig(interval=10 * 60, timeout=30.0),
    }


@dataclass(frozen=True, kw_only=True)
class WeatherConfig:
    """Optional weather source. Disabled when url is None."""

    url: str | None = None
    station: str = "global"
    timeout: float = 5.0
    max_attempts: int = 2


@dataclass(frozen=True, kw_only=True)
class Config:
    """Top-level noisepipe configuration."""

    version: int = 0
    data_dir: str | None = None
    stations_root: str = "csv"
    stations: list[str] = field(default_factory=lambda: list(DEFAULT_STATIONS))
    ingest: IngestConfig = field(default_factory=IngestConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    schedule: dict[str, JobConfig] = field(default_factory=_default_jobs)
    retention: dict[str, int] = field(default_factory=dict)
    weather: WeatherConfig = field(default_factory=WeatherConfig)

    def resolved_data_dir(self) -> Path:
        """Return the data directory (default: `./.noisepipe`)."""
        return data_dir_or_default(self.data_dir)

    def database_path(self) -> Path:
        """Return the path of the SQLite measurement store."""
        return self.resolved_data_dir() / DATABASE_FILENAME

    def cache_dir(self) -> Path:
        """Return the directory holding the disk cache tier."""
        return self.resolved_data_dir() / "cache" / "v1"

    def heartbeat_path(self) -> Path:
        """Return the path of the heartbeat snapshot."""
        return self.resolved_data_dir() / "state" / HEARTBEAT_FILENAME

    def job(self, name: str) -> JobConfig:
        """Return the settings of the named job, falling back to the defaults."""
        try:
            return self.schedule[name]
        except KeyError:
            return _default_jobs()[name]


def data_dir_or_default(data_dir: str | Path | None) -> Path:
    """
    Return data_dir as a Path if not empty. Otherwise return the
    default value for the data_dir (i.e., `./.noisepipe` like git).
    """
    return Path.cwd() / ".noisepipe" if data_dir is None else Path(data_dir)


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load the configuration from the given YAML file.

    Args:
        config_path: path to the YAML file, or None to use the defaults.

    Returns:
        A validated Config instance.

    Raises:
        ConfigError: if the file cannot be parsed or is inconsistent.
    """
    if config_path is None:
        return _validate(Config())

    path = Path(config_path)
    try:
        content = path.read_text()
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc

    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"config must be a mapping: {path}")

    # Allow overriding only a subset of the scheduled jobs
    if "schedule" in data and isinstance(data["schedule"], dict):
        merged = {name: _job_to_dict(job) for name, job in _default_jobs().items()}
        for name, job in data["schedule"].items():
            merged[name] = {**merged.get(name, {}), **(job or {})}
        data["schedule"] = merged

    try:
        config = dacite.from_dict(
            Config,
            data,
            config=dacite.Config(type_hooks={float: float}, strict=True),
        )
    except (dacite.DaciteError, TypeError, ValueError) as exc:
        raise ConfigError(f"invalid config {path}: {exc}") from exc

    return _validate(config)


def _job_to_dict(job: JobConfig) -> dict[str, float | int]:
    return {"interval": job.interval, "timeout": job.timeout, "max_retries": job.max_retries}


def _validate(config: Config) -> Config:
    """Check the invariants dacite cannot express."""
    if config.version != 0:
        raise ConfigError(f"unsupported config version: {config.version}")
    if not config.stations or any(not station.strip() for station in config.stations):
        raise ConfigError("stations must be a non-empty list of names")
    if config.ingest.batch_size <= 0:
        raise ConfigError(f"ingest.batch_size must be positive: {config.ingest.batch_size}")
    if config.ingest.max_attempts <= 0:
        raise ConfigError(f"ingest.max_attempts must be positive: {config.ingest.max_attempts}")
    if config.ingest.max_concurrent_jobs <= 0:
        raise ConfigError(
            f"ingest.max_concurrent_jobs must be positive: {config.ingest.max_concurrent_jobs}"
        )
    if config.cache.max_items <= 0 or config.cache.max_bytes <= 0:
        raise ConfigError("cache.max_items and cache.max_bytes must be positive")
    for name, job in config.schedule.items():
        if job.interval <= 0 or job.timeout <= 0 or job.max_retries <= 0:
            raise ConfigError(f"schedule.{name}: interval, timeout and max_retries must be > 0")
    for table, days in config.retention.items():
        if days <= 0:
            raise ConfigError(f"retention.{table} must be a positive number of days")
    if config.weather.url is not None and not config.weather.url.startswith(("http://", "https://")):
        raise ConfigError(f"weather.url must be an http(s) URL: {config.weather.url}")
    return config
