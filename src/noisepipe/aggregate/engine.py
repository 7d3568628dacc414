"""Module implementing the aggregation engine."""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Final

import pandas as pd

from ..ingest.processor import TagInvalidator, station_tag
from ..models import AggregateBucket, Granularity, ThresholdBlock
from ..store import DEFAULT_ALARM_THRESHOLD, MeasurementStore, isoformat

log = logging.getLogger("aggregate/engine")

AGGREGATED_TAG: Final[str] = "aggregated"

VACUUM_THRESHOLD: Final[int] = 10_000

DEFAULT_WINDOWS: Final[dict[Granularity, timedelta]] = {
    Granularity.MIN15: timedelta(hours=2),
    Granularity.HOURLY: timedelta(days=1),
    Granularity.DAILY: timedelta(days=2),
}

_PANDAS_FREQ: Final[dict[Granularity, str]] = {
    Granularity.MIN15: "15min",
    Granularity.HOURLY: "h",
    Granularity.DAILY: "D",
}


@dataclass(frozen=True, kw_only=True)
class AggregationResult:
    """Outcome of a refresh."""

    buckets: dict[Granularity, int] = field(default_factory=dict)
    stations: list[str] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass(frozen=True, kw_only=True)
class CleanupResult:
    """Outcome of a retention cleanup."""

    deleted: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    vacuumed: bool = False
    vacuum_error: str | None = None

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())


@dataclass(frozen=True, kw_only=True)
class MaintenanceReport:
    """Outcome of refresh + cleanup + optimize; failed steps are in `errors`."""

    aggregation: AggregationResult | None = None
    cleanup: CleanupResult | None = None
    optimized: bool = False
    errors: dict[str, str] = field(default_factory=dict)


def time_in_window(clock: str, from_time: str, to_time: str) -> bool:
    """
    Return whether `clock` (HH:MM[:SS]) lies inside a time-of-day block.

    Blocks are half open. A block with `from_time > to_time` wraps past
    midnight (e.g., 22:00-06:00).
    """
    if from_time <= to_time:
        return from_time <= clock < to_time
    return clock >= from_time or clock < to_time


def _alarm_thresholds(frame: pd.DataFrame, blocks: Sequence[ThresholdBlock]) -> pd.Series:
    """Return, for each row, the alarm threshold of the matching block."""
    thresholds = pd.Series(float("nan"), index=frame.index)
    clock = frame["datetime"].str.slice(11, 19)
    by_station: dict[str, list[ThresholdBlock]] = {}
    for block in blocks:
        by_station.setdefault(block.station, []).append(block)
    for station, station_blocks in by_station.items():
        of_station = frame["station"] == station
        for block in sorted(station_blocks, key=lambda b: b.from_time):
            start, end = _pad_clock(block.from_time), _pad_clock(block.to_time)
            inside = clock.map(lambda c, s=start, e=end: time_in_window(c, s, e)).astype(bool)
            thresholds = thresholds.mask(of_station & inside & thresholds.isna(), block.alarm_threshold)
    return thresholds.fillna(DEFAULT_ALARM_THRESHOLD)


def _pad_clock(value: str) -> str:
    return value if len(value) >= 8 else f"{value}:00"


def compute_buckets(
    frame: pd.DataFrame,
    granularity: Granularity,
    thresholds: Sequence[ThresholdBlock] = (),
) -> list[AggregateBucket]:
    """
    Roll raw measurements up into buckets.

    Args:
        frame: DataFrame with columns station, datetime (ISO string), value.
        granularity: bucket width.
        thresholds: time-of-day blocks used to count alarms.

    Returns:
        Buckets sorted by station and bucket start.
    """
    if frame.empty:
        return []

    # 1. sort so identical inputs always produce identical outputs
    frame = frame.sort_values(["station", "datetime", "value"], kind="mergesort").reset_index(drop=True)

    # 2. assign rows to buckets and flag the alarms
    frame = frame.assign(
        bucket=pd.to_datetime(frame["datetime"]).dt.floor(_PANDAS_FREQ[granularity]),
        alarm=(frame["value"] >= _alarm_thresholds(frame, thresholds)).astype(int),
    )

    # 3. aggregate
    grouped = (
        frame.groupby(["station", "bucket"], sort=True)
        .agg(
            avg=("value", "mean"),
            min=("value", "min"),
            max=("value", "max"),
            count=("value", "size"),
            alarm_count=("alarm", "sum"),
        )
        .reset_index()
    )

    return [
        AggregateBucket(
            station=row["station"],
            bucket_start=isoformat(row["bucket"].to_pydatetime()),
            granularity=granularity,
            avg=float(row["avg"]),
            min=float(row["min"]),
            max=float(row["max"]),
            count=int(row["count"]),
            alarm_count=int(row["alarm_count"]),
        )
        for row in grouped.to_dict("records")
    ]


class AggregationEngine:
    """Maintains the rollup tables and applies the retention policies."""

    def __init__(
        self,
        store: MeasurementStore,
        *,
        cache: TagInvalidator | None = None,
        windows: dict[Granularity, timedelta] | None = None,
        retention: dict[str, int] | None = None,
        vacuum_threshold: int = VACUUM_THRESHOLD,
    ):
        """
        Initialize the engine.

        Parameters:
            store: the measurement store.
            cache: optional cache invalidated after a refresh.
            windows: trailing window recomputed for each granularity.
            retention: retention days overriding the defaults, by table.
            vacuum_threshold: deleted rows above which we VACUUM.
        """
        self.store = store
        self.cache = cache
        self.windows = {**DEFAULT_WINDOWS, **(windows or {})}
        self.retention = dict(retention or {})
        self.vacuum_threshold = vacuum_threshold

    def ensure_default_policies(self) -> None:
        """Seed the retention policies (defaults merged with the overrides)."""
        self.store.ensure_retention_policies(self.retention)

    def refresh(
        self,
        granularities: Iterable[Granularity | str] | None = None,
        now: datetime | None = None,
    ) -> AggregationResult:
        """
        Recompute the buckets inside the trailing window of each granularity.

        The window start is floored to a bucket boundary, so every bucket
        we write is computed from all of its rows.
        """
        t0 = time.monotonic()
        now = now or datetime.now()
        selected = [Granularity(g) for g in granularities] if granularities else list(Granularity)
        thresholds = self.store.read_thresholds()

        counts: dict[Granularity, int] = {}
        stations: set[str] = set()
        for granularity in selected:
            since = granularity.floor(now - self.windows[granularity])
            log.info("aggregating %s since %s... start", granularity.value, isoformat(since))
            frame = self.store.read_measurements(since=since, until=now)
            buckets = compute_buckets(frame, granularity, thresholds)
            counts[granularity] = self.store.upsert_aggregates(granularity, buckets)
            stations.update(bucket.station for bucket in buckets)
            log.info("aggregating %s... ok: %d buckets", granularity.value, counts[granularity])

        if self.cache is not None and counts and any(counts.values()):
            self.cache.invalidate_by_tags([AGGREGATED_TAG, *(station_tag(s) for s in sorted(stations))])

        return AggregationResult(
            buckets=counts,
            stations=sorted(stations),
            duration_ms=(time.monotonic() - t0) * 1000,
        )

    def cleanup(self, now: datetime | None = None) -> CleanupResult:
        """
        Delete the rows older than each enabled retention policy.

        A failing table is logged and does not stop the others.
        """
        now = now or datetime.now()
        deleted: dict[str, int] = {}
        failed: dict[str, str] = {}
        for policy in self.store.retention_policies():
            cutoff = now - timedelta(days=policy.retention_days)
            log.info("cleaning %s before %s... start", policy.table, isoformat(cutoff))
            try:
                deleted[policy.table] = self.store.delete_older_than(policy.table, cutoff)
            except (sqlite3.Error, ValueError) as exc:
                failed[policy.table] = str(exc)
                log.error("cleaning %s... failure: %s", policy.table, exc)
                continue
            log.info("cleaning %s... ok: %d rows", policy.table, deleted[policy.table])

        vacuumed = False
        vacuum_error: str | None = None
        if sum(deleted.values()) > self.vacuum_threshold:
            log.info("vacuum... start")
            try:
                self.store.vacuum()
            except sqlite3.Error as exc:
                vacuum_error = str(exc)
                log.error("vacuum... failure: %s", exc)
            else:
                vacuumed = True
                log.info("vacuum... ok")

        return CleanupResult(
            deleted=deleted,
            failed=failed,
            vacuumed=vacuumed,
            vacuum_error=vacuum_error,
        )

    def optimize(self) -> None:
        """Refresh the query planner statistics."""
        log.info("optimize... start")
        self.store.analyze()
        log.info("optimize... ok")

    def run_maintenance(
        self,
        now: datetime | None = None,
        *,
        with_refresh: bool = True,
        with_optimize: bool = True,
    ) -> MaintenanceReport:
        """
        Run refresh, cleanup and optimize; each step runs even if another fails.

        A failed VACUUM is reported under the "vacuum" error key.
        """
        errors: dict[str, str] = {}

        aggregation: AggregationResult | None = None
        if with_refresh:
            try:
                aggregation = self.refresh(now=now)
            except Exception as exc:
                errors["refresh"] = str(exc)
                log.error("maintenance refresh... failure: %s", exc)

        cleanup: CleanupResult | None = None
        try:
            cleanup = self.cleanup(now=now)
        except Exception as exc:
            errors["cleanup"] = str(exc)
            log.error("maintenance cleanup... failure: %s", exc)
        else:
            if cleanup.vacuum_error is not None:
                errors["vacuum"] = cleanup.vacuum_error

        optimized = False
        if with_optimize:
            try:
                self.optimize()
                optimized = True
            except Exception as exc:
                errors["optimize"] = str(exc)
                log.error("maintenance optimize... failure: %s", exc)

        return MaintenanceReport(
            aggregation=aggregation,
            cleanup=cleanup,
            optimized=optimized,
            errors=errors,
        )
