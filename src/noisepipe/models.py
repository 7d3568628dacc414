"""Data types shared by the store, the ingestion and the aggregation code."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class Granularity(str, Enum):
    """Enumerate the available rollup granularities."""

    MIN15 = "15min"
    HOURLY = "hourly"
    DAILY = "daily"

    @property
    def table(self) -> str:
        """Name of the materialized table holding this granularity."""
        return f"measurements_{self.value}_agg"

    @property
    def width(self) -> timedelta:
        """Width of a single bucket."""
        return _WIDTHS[self]

    def floor(self, when: datetime) -> datetime:
        """Return the start of the bucket containing `when`."""
        if self is Granularity.DAILY:
            return when.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is Granularity.HOURLY:
            return when.replace(minute=0, second=0, microsecond=0)
        return when.replace(minute=when.minute - when.minute % 15, second=0, microsecond=0)


_WIDTHS = {
    Granularity.MIN15: timedelta(minutes=15),
    Granularity.HOURLY: timedelta(hours=1),
    Granularity.DAILY: timedelta(days=1),
}


@dataclass(frozen=True, kw_only=True)
class MeasurementRecord:
    """
    A single normalized measurement.

    Attributes:
        station: the station name (e.g., "ort")
        time: canonical local datetime formatted as "YYYY-MM-DD HH:MM:SS"
        value: the measured level
        source_file: base name of the file the row comes from
        datetime: ISO-8601 rendering of `time` ("YYYY-MM-DDTHH:MM:SS")
        raw_fields: JSON dump of the original row
    """

    station: str
    time: str
    value: float
    source_file: str
    datetime: str
    raw_fields: str


@dataclass(frozen=True, kw_only=True)
class AggregateBucket:
    """Rollup of the measurements of a station inside a bucket."""

    station: str
    bucket_start: str
    granularity: Granularity
    avg: float
    min: float
    max: float
    count: int
    alarm_count: int = 0


@dataclass(frozen=True, kw_only=True)
class ThresholdBlock:
    """
    Per-station time-of-day thresholds.

    A block where `from_time > to_time` wraps past midnight.
    """

    station: str
    from_time: str
    to_time: str
    warning_threshold: float
    alarm_threshold: float


@dataclass(frozen=True, kw_only=True)
class RetentionPolicy:
    """How long to keep the rows of a table."""

    table: str
    retention_days: int
    last_cleanup: str | None = None
    enabled: bool = True


@dataclass(frozen=True, kw_only=True)
class WeatherReading:
    """A reading fetched from the external weather source."""

    station: str
    time: str
    wind_speed: float | None = None
    wind_dir: str | None = None
    rel_humidity: float | None = None
    temperature: float | None = None


@dataclass(frozen=True, kw_only=True)
class Page:
    """A page of query results."""

    rows: list[dict] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 25

    @property
    def total_pages(self) -> int:
        return -(-self.total_count // self.page_size) if self.page_size else 0
