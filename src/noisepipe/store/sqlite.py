"""Module implementing the SQLite measurement store."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Final

import pandas as pd

from ..errors import TransientStorageBusy
from ..models import (
    AggregateBucket,
    Granularity,
    MeasurementRecord,
    Page,
    RetentionPolicy,
    ThresholdBlock,
    WeatherReading,
)

log = logging.getLogger("store/sqlite")

BUSY_TIMEOUT_SECONDS: Final[float] = 5.0

DEFAULT_ALARM_THRESHOLD: Final[float] = 60.0

DEFAULT_RETENTION_DAYS: Final[dict[str, int]] = {
    "measurements": 90,
    "weather": 30,
    Granularity.MIN15.table: 30,
    Granularity.HOURLY.table: 365,
    Granularity.DAILY.table: 1095,
}

# Column holding the timestamp each table is cleaned up by
_RETENTION_COLUMNS: Final[dict[str, str]] = {
    "measurements": "datetime",
    "weather": "time",
    Granularity.MIN15.table: "bucket_start",
    Granularity.HOURLY.table: "bucket_start",
    Granularity.DAILY.table: "bucket_start",
}

_SORTABLE_COLUMNS: Final[tuple[str, ...]] = ("datetime", "time", "value", "station")

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS measurements (
    station TEXT NOT NULL,
    time TEXT NOT NULL,
    value REAL NOT NULL,
    source_file TEXT NOT NULL,
    datetime TEXT NOT NULL,
    raw_fields TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (station, time)
);
CREATE INDEX IF NOT EXISTS idx_measurements_station_datetime
    ON measurements(station, datetime DESC, value);
CREATE INDEX IF NOT EXISTS idx_measurements_datetime
    ON measurements(datetime);
CREATE INDEX IF NOT EXISTS idx_measurements_source_datetime
    ON measurements(source_file, datetime);

CREATE TABLE IF NOT EXISTS thresholds (
    station TEXT NOT NULL,
    from_time TEXT NOT NULL,
    to_time TEXT NOT NULL,
    warning_threshold REAL NOT NULL,
    alarm_threshold REAL NOT NULL,
    PRIMARY KEY (station, from_time)
);

CREATE TABLE IF NOT EXISTS data_retention_policies (
    table_name TEXT PRIMARY KEY,
    retention_days INTEGER NOT NULL,
    last_cleanup TEXT,
    enabled INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS weather (
    station TEXT NOT NULL,
    time TEXT NOT NULL,
    wind_speed REAL,
    wind_dir TEXT,
    rel_humidity REAL,
    temperature REAL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (station, time)
);
"""

_AGGREGATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    station TEXT NOT NULL,
    bucket_start TEXT NOT NULL,
    avg REAL NOT NULL,
    min REAL NOT NULL,
    max REAL NOT NULL,
    count INTEGER NOT NULL,
    alarm_count INTEGER NOT NULL DEFAULT 0,
    last_updated TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (station, bucket_start)
);
CREATE INDEX IF NOT EXISTS idx_{table}_station_bucket
    ON {table}(station, bucket_start DESC);
"""


def is_busy_error(exc: sqlite3.Error) -> bool:
    """Return True if the error means another writer holds the database."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def isoformat(when: datetime) -> str:
    """Format a datetime the way the store compares timestamps."""
    return when.strftime("%Y-%m-%dT%H:%M:%S")


class MeasurementStore:
    """
    Time-series store backed by SQLite.

    Each thread gets its own connection. Write transactions are serialized
    by a store-wide lock so that a single process never competes with
    itself for the SQLite write lock; other processes are handled through
    the busy timeout and `TransientStorageBusy`.
    """

    def __init__(self, path: str | Path, *, busy_timeout: float = BUSY_TIMEOUT_SECONDS):
        """
        Initialize the store.

        Parameters:
            path: path of the SQLite database (created if missing).
            busy_timeout: seconds SQLite waits for a lock before failing.
        """
        self.path = Path(path)
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._write_lock = threading.RLock()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

    def connection(self) -> sqlite3.Connection:
        """Return the connection owned by the calling thread."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA temp_store = MEMORY")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def close(self) -> None:
        """Close every connection opened by the store."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    def ensure_schema(self) -> None:
        """Create the tables and the indexes if they do not exist."""
        with self.transaction() as conn:
            for statement in _split_script(_SCHEMA_SQL):
                conn.execute(statement)
            for granularity in Granularity:
                for statement in _split_script(_AGGREGATE_SCHEMA_SQL.format(table=granularity.table)):
                    conn.execute(statement)
        log.debug("schema for %s... ok", self.path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the enclosed statements inside a write transaction.

        Commits on success and rolls back on any exception.

        Raises:
            TransientStorageBusy: if SQLite cannot acquire the write lock.
        """
        conn = self.connection()
        with self._write_lock:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                if is_busy_error(exc):
                    raise TransientStorageBusy(str(exc)) from exc
                raise
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    # Measurements

    def upsert_measurement(self, conn: sqlite3.Connection, record: MeasurementRecord) -> bool:
        """
        Insert or replace a measurement keyed by (station, time).

        Must be called inside `transaction()`.

        Returns:
            True if a row was written.

        Raises:
            TransientStorageBusy: if the database is locked by another writer.
        """
        try:
            cursor = conn.execute(
                "INSERT OR REPLACE INTO measurements "
                "(station, time, value, source_file, datetime, raw_fields) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.station,
                    record.time,
                    record.value,
                    record.source_file,
                    record.datetime,
                    record.raw_fields,
                ),
            )
        except sqlite3.OperationalError as exc:
            if is_busy_error(exc):
                raise TransientStorageBusy(str(exc)) from exc
            raise
        return cursor.rowcount > 0

    def count_measurements(self, station: str | None = None) -> int:
        """Return the number of stored measurements, optionally for one station."""
        conn = self.connection()
        if station is None:
            row = conn.execute("SELECT COUNT(*) AS n FROM measurements").fetchone()
        else:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM measurements WHERE station = ?", (station,)
            ).fetchone()
        return int(row["n"])

    def get_measurement(self, station: str, time: str) -> MeasurementRecord | None:
        """Return the measurement stored under the given key, if any."""
        row = (
            self.connection()
            .execute(
                "SELECT station, time, value, source_file, datetime, raw_fields "
                "FROM measurements WHERE station = ? AND time = ?",
                (station, time),
            )
            .fetchone()
        )
        if row is None:
            return None
        return MeasurementRecord(**dict(row))

    def read_measurements(self, *, since: datetime, until: datetime) -> pd.DataFrame:
        """
        Read the measurements with `since <= datetime < until`.

        Returns:
            A DataFrame with columns station, datetime, value sorted by
            station and datetime.
        """
        return pd.read_sql_query(
            "SELECT station, datetime, value FROM measurements "
            "WHERE datetime >= ? AND datetime < ? ORDER BY station, datetime",
            self.connection(),
            params=(isoformat(since), isoformat(until)),
        )

    def query_measurements(
        self,
        *,
        station: str | None = None,
        date: str | None = None,
        search: str | None = None,
        page: int = 1,
        page_size: int = 25,
        sort_by: str = "datetime",
        sort_order: str = "desc",
    ) -> Page:
        """
        Paginated, sortable and filterable listing of the measurements.

        Args:
            station: only return rows of this station.
            date: only return rows of this date (DD.MM.YYYY or YYYY-MM-DD).
            search: substring matched against station, time and value.
            page: 1-based page number.
            page_size: rows per page (clamped to 1..1000).
            sort_by: one of datetime, time, value, station.
            sort_order: asc or desc.
        """
        column = sort_by if sort_by in _SORTABLE_COLUMNS else "datetime"
        order = "ASC" if sort_order.lower() == "asc" else "DESC"
        limit = min(max(1, page_size), 1000)
        offset = max(0, (page - 1) * limit)

        where: list[str] = []
        params: list[str | int] = []
        if station:
            where.append("station = ?")
            params.append(station)
        if date:
            if "." in date:
                day, month, year = date.split(".")
                date = f"{year}-{month.zfill(2)}-{day.zfill(2)}"
            where.append("substr(datetime, 1, 10) = ?")
            params.append(date)
        if search:
            pattern = f"%{search}%"
            where.append("(station LIKE ? OR time LIKE ? OR CAST(value AS TEXT) LIKE ?)")
            params.extend((pattern, pattern, pattern))
        clause = f" WHERE {' AND '.join(where)}" if where else ""

        conn = self.connection()
        total = conn.execute(f"SELECT COUNT(*) AS n FROM measurements{clause}", params).fetchone()
        rows = conn.execute(
            f"SELECT station, time, value, datetime, source_file FROM measurements{clause} "
            f"ORDER BY {column} {order} LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return Page(
            rows=[dict(row) for row in rows],
            total_count=int(total["n"]),
            page=page,
            page_size=limit,
        )

    # Thresholds

    def set_thresholds(self, station: str, blocks: Iterable[ThresholdBlock]) -> None:
        """Replace the threshold blocks of a station."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM thresholds WHERE station = ?", (station,))
            conn.executemany(
                "INSERT INTO thresholds "
                "(station, from_time, to_time, warning_threshold, alarm_threshold) "
                "VALUES (?, ?, ?, ?, ?)",
                [
                    (station, b.from_time, b.to_time, b.warning_threshold, b.alarm_threshold)
                    for b in blocks
                ],
            )

    def read_thresholds(self) -> list[ThresholdBlock]:
        """Return every threshold block ordered by station and start time."""
        rows = (
            self.connection()
            .execute(
                "SELECT station, from_time, to_time, warning_threshold, alarm_threshold "
                "FROM thresholds ORDER BY station, from_time"
            )
            .fetchall()
        )
        return [ThresholdBlock(**dict(row)) for row in rows]

    # Aggregates

    def upsert_aggregates(self, granularity: Granularity, buckets: Iterable[AggregateBucket]) -> int:
        """Insert or replace the given buckets and return how many we wrote."""
        values = [
            (b.station, b.bucket_start, b.avg, b.min, b.max, b.count, b.alarm_count)
            for b in buckets
        ]
        if not values:
            return 0
        with self.transaction() as conn:
            conn.executemany(
                f"INSERT OR REPLACE INTO {granularity.table} "
                "(station, bucket_start, avg, min, max, count, alarm_count, last_updated) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)",
                values,
            )
        return len(values)

    def read_aggregates(
        self,
        granularity: Granularity,
        *,
        station: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AggregateBucket]:
        """Return the stored buckets ordered by station and bucket start."""
        where: list[str] = []
        params: list[str] = []
        if station is not None:
            where.append("station = ?")
            params.append(station)
        if since is not None:
            where.append("bucket_start >= ?")
            params.append(isoformat(since))
        if until is not None:
            where.append("bucket_start < ?")
            params.append(isoformat(until))
        clause = f" WHERE {' AND '.join(where)}" if where else ""
        rows = (
            self.connection()
            .execute(
                "SELECT station, bucket_start, avg, min, max, count, alarm_count "
                f"FROM {granularity.table}{clause} ORDER BY station, bucket_start",
                params,
            )
            .fetchall()
        )
        return [AggregateBucket(granularity=granularity, **dict(row)) for row in rows]

    # Retention

    def ensure_retention_policies(self, overrides: dict[str, int] | None = None) -> None:
        """
        Seed the retention policies.

        Existing policies keep their last cleanup time; the retention days
        are reset to the defaults merged with `overrides`.
        """
        policies = {**DEFAULT_RETENTION_DAYS, **(overrides or {})}
        for table in policies:
            if table not in _RETENTION_COLUMNS:
                raise ValueError(f"no retention support for table: {table}")
        with self.transaction() as conn:
            conn.executemany(
                "INSERT INTO data_retention_policies (table_name, retention_days) VALUES (?, ?) "
                "ON CONFLICT(table_name) DO UPDATE SET retention_days = excluded.retention_days",
                list(policies.items()),
            )

    def retention_policies(self, *, enabled_only: bool = True) -> list[RetentionPolicy]:
        """Return the configured retention policies."""
        sql = "SELECT table_name, retention_days, last_cleanup, enabled FROM data_retention_policies"
        if enabled_only:
            sql += " WHERE enabled = 1"
        rows = self.connection().execute(sql + " ORDER BY table_name").fetchall()
        return [
            RetentionPolicy(
                table=row["table_name"],
                retention_days=int(row["retention_days"]),
                last_cleanup=row["last_cleanup"],
                enabled=bool(row["enabled"]),
            )
            for row in rows
        ]

    def set_policy_enabled(self, table: str, enabled: bool) -> None:
        """Enable or disable the retention policy of a table."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE data_retention_policies SET enabled = ? WHERE table_name = ?",
                (int(enabled), table),
            )

    def delete_older_than(self, table: str, cutoff: datetime) -> int:
        """Delete the rows of `table` older than `cutoff` and return the count."""
        try:
            column = _RETENTION_COLUMNS[table]
        except KeyError as exc:
            raise ValueError(f"no retention support for table: {table}") from exc
        with self.transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE {column} < ?", (isoformat(cutoff),))
            conn.execute(
                "UPDATE data_retention_policies SET last_cleanup = ? WHERE table_name = ?",
                (isoformat(datetime.now()), table),
            )
        return cursor.rowcount

    def vacuum(self) -> None:
        """Compact the database file."""
        with self._write_lock:
            self.connection().execute("VACUUM")

    def analyze(self) -> None:
        """Refresh the query-planner statistics."""
        with self._write_lock:
            conn = self.connection()
            conn.execute("ANALYZE")
            conn.execute("PRAGMA optimize")

    # Weather

    def insert_weather(self, reading: WeatherReading) -> None:
        """Insert or replace a weather reading."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO weather "
                "(station, time, wind_speed, wind_dir, rel_humidity, temperature) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    reading.station,
                    reading.time,
                    reading.wind_speed,
                    reading.wind_dir,
                    reading.rel_humidity,
                    reading.temperature,
                ),
            )

    def latest_weather(self, station: str) -> WeatherReading | None:
        """Return the most recent weather reading of a station, if any."""
        row = (
            self.connection()
            .execute(
                "SELECT station, time, wind_speed, wind_dir, rel_humidity, temperature "
                "FROM weather WHERE station = ? ORDER BY time DESC LIMIT 1",
                (station,),
            )
            .fetchone()
        )
        return None if row is None else WeatherReading(**dict(row))

    def is_healthy(self) -> bool:
        """Return whether a trivial query succeeds."""
        try:
            return self.connection().execute("SELECT 1").fetchone()[0] == 1
        except sqlite3.Error as exc:
            log.error("health check for %s... failure: %s", self.path, exc)
            return False


def _split_script(script: str) -> list[str]:
    return [statement.strip() for statement in script.split(";") if statement.strip()]
