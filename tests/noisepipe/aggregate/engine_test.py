"""Tests for the noisepipe.aggregate.engine module."""

import sqlite3
from datetime import datetime, timedelta
from unittest.mock import Mock

import pandas as pd
import pytest

from noisepipe.aggregate import AggregationEngine, compute_buckets, time_in_window
from noisepipe.models import Granularity, ThresholdBlock


def _frame(rows: list[tuple[str, str, float]]) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=["station", "datetime", "value"])


def _block(station: str, start: str, end: str, alarm: float) -> ThresholdBlock:
    return ThresholdBlock(
        station=station,
        from_time=start,
        to_time=end,
        warning_threshold=alarm - 5,
        alarm_threshold=alarm,
    )


class TestTimeInWindow:
    """Time-of-day blocks."""

    def test_daytime_block(self):
        assert time_in_window("12:00", "06:00", "22:00")
        assert not time_in_window("22:00", "06:00", "22:00")
        assert time_in_window("06:00", "06:00", "22:00")

    def test_overnight_block(self):
        assert time_in_window("23:30", "22:00", "06:00")
        assert time_in_window("01:00", "22:00", "06:00")
        assert not time_in_window("12:00", "22:00", "06:00")


class TestComputeBuckets:
    """Rolling raw rows up into buckets."""

    def test_empty(self):
        assert compute_buckets(_frame([]), Granularity.HOURLY) == []

    def test_hourly_statistics(self):
        frame = _frame(
            [
                ("ort", "2025-06-01T10:00:00", 40.0),
                ("ort", "2025-06-01T10:30:00", 50.0),
                ("ort", "2025-06-01T10:59:59", 60.0),
                ("ort", "2025-06-01T11:00:00", 70.0),
            ]
        )
        buckets = compute_buckets(frame, Granularity.HOURLY)
        assert [b.bucket_start for b in buckets] == ["2025-06-01T10:00:00", "2025-06-01T11:00:00"]
        first = buckets[0]
        assert first.avg == 50.0
        assert first.min == 40.0
        assert first.max == 60.0
        assert first.count == 3
        assert first.granularity == Granularity.HOURLY

    def test_fifteen_minute_boundaries(self):
        frame = _frame(
            [
                ("ort", "2025-06-01T10:14:59", 40.0),
                ("ort", "2025-06-01T10:15:00", 50.0),
            ]
        )
        buckets = compute_buckets(frame, Granularity.MIN15)
        assert [b.bucket_start for b in buckets] == ["2025-06-01T10:00:00", "2025-06-01T10:15:00"]

    def test_daily(self):
        frame = _frame([("ort", "2025-06-01T00:00:00", 40.0), ("ort", "2025-06-01T23:59:59", 50.0)])
        (bucket,) = compute_buckets(frame, Granularity.DAILY)
        assert bucket.bucket_start == "2025-06-01T00:00:00"
        assert bucket.count == 2

    def test_stations_are_separate(self):
        frame = _frame([("ort", "2025-06-01T10:00:00", 40.0), ("band", "2025-06-01T10:00:00", 50.0)])
        buckets = compute_buckets(frame, Granularity.HOURLY)
        assert [(b.station, b.avg) for b in buckets] == [("band", 50.0), ("ort", 40.0)]

    def test_default_alarm_threshold(self):
        frame = _frame([("ort", "2025-06-01T10:00:00", 59.9), ("ort", "2025-06-01T10:00:01", 60.0)])
        (bucket,) = compute_buckets(frame, Granularity.HOURLY)
        assert bucket.alarm_count == 1

    def test_alarms_follow_time_blocks(self):
        blocks = [_block("ort", "22:00", "06:00", 45), _block("ort", "06:00", "22:00", 55)]
        frame = _frame(
            [
                ("ort", "2025-06-01T23:00:00", 50.0),
                ("ort", "2025-06-01T12:00:00", 50.0),
                ("ort", "2025-06-01T12:00:01", 55.0),
                ("band", "2025-06-01T12:00:00", 60.0),
            ]
        )
        buckets = compute_buckets(frame, Granularity.DAILY, blocks)
        alarms = {b.station: b.alarm_count for b in buckets}
        assert alarms == {"ort": 2, "band": 1}

    def test_deterministic(self):
        rows = [
            ("ort", "2025-06-01T10:00:00", 40.0),
            ("band", "2025-06-01T10:10:00", 41.0),
            ("ort", "2025-06-01T11:20:00", 42.0),
            ("ort", "2025-06-01T10:40:00", 43.0),
        ]
        first = compute_buckets(_frame(rows), Granularity.HOURLY)
        second = compute_buckets(_frame(list(reversed(rows))), Granularity.HOURLY)
        assert first == second


class TestRefresh:
    """Recomputing the trailing windows."""

    def test_window_is_floored(self, store, insert_measurements):
        insert_measurements(
            [
                ("ort", "2025-06-01 08:29:59", 10.0),
                ("ort", "2025-06-01 08:31:00", 40.0),
                ("ort", "2025-06-01 08:44:00", 50.0),
                ("ort", "2025-06-01 10:36:00", 60.0),
                ("ort", "2025-06-01 10:38:00", 70.0),
            ]
        )
        engine = AggregationEngine(store)
        result = engine.refresh([Granularity.MIN15], now=datetime(2025, 6, 1, 10, 37))
        assert result.buckets == {Granularity.MIN15: 2}
        buckets = store.read_aggregates(Granularity.MIN15)
        assert [(b.bucket_start, b.count) for b in buckets] == [
            ("2025-06-01T08:30:00", 2),
            ("2025-06-01T10:30:00", 1),
        ]

    def test_all_granularities(self, store, insert_measurements):
        insert_measurements([("ort", "2025-06-01 10:00:00", 50.0)])
        result = AggregationEngine(store).refresh(now=datetime(2025, 6, 1, 10, 30))
        assert result.buckets == {
            Granularity.MIN15: 1,
            Granularity.HOURLY: 1,
            Granularity.DAILY: 1,
        }
        assert result.stations == ["ort"]

    def test_refresh_is_idempotent(self, store, insert_measurements):
        insert_measurements([("ort", "2025-06-01 10:00:00", 50.0)])
        engine = AggregationEngine(store)
        now = datetime(2025, 6, 1, 10, 30)
        engine.refresh(["hourly"], now=now)
        insert_measurements([("ort", "2025-06-01 10:10:00", 60.0)])
        engine.refresh(["hourly"], now=now)
        (bucket,) = store.read_aggregates(Granularity.HOURLY)
        assert bucket.count == 2
        assert bucket.avg == 55.0

    def test_invalidates_cache(self, store, insert_measurements):
        insert_measurements([("ort", "2025-06-01 10:00:00", 50.0)])
        cache = Mock()
        AggregationEngine(store, cache=cache).refresh(["hourly"], now=datetime(2025, 6, 1, 10, 30))
        cache.invalidate_by_tags.assert_called_once_with(["aggregated", "station_ort"])

    def test_no_invalidation_without_buckets(self, store):
        cache = Mock()
        AggregationEngine(store, cache=cache).refresh(now=datetime(2025, 6, 1, 10, 30))
        cache.invalidate_by_tags.assert_not_called()

    def test_unknown_granularity(self, store):
        with pytest.raises(ValueError):
            AggregationEngine(store).refresh(["weekly"])


class TestCleanup:
    """Retention enforcement."""

    def test_deletes_expired_rows(self, store, insert_measurements):
        now = datetime(2025, 6, 1, 12, 0)
        old = (now - timedelta(days=91)).strftime("%Y-%m-%d %H:%M:%S")
        insert_measurements([("ort", old, 50.0), ("ort", "2025-06-01 10:00:00", 50.0)])
        engine = AggregationEngine(store)
        engine.ensure_default_policies()
        result = engine.cleanup(now=now)
        assert result.deleted["measurements"] == 1
        assert result.total_deleted == 1
        assert not result.failed
        assert store.count_measurements() == 1

    def test_retention_overrides(self, store, insert_measurements):
        now = datetime(2025, 6, 1, 12, 0)
        insert_measurements([("ort", "2025-05-20 10:00:00", 50.0)])
        engine = AggregationEngine(store, retention={"measurements": 7})
        engine.ensure_default_policies()
        assert engine.cleanup(now=now).deleted["measurements"] == 1

    def test_failing_table_does_not_stop_the_others(self, store, monkeypatch):
        engine = AggregationEngine(store)
        engine.ensure_default_policies()
        original = store.delete_older_than

        def delete(table, cutoff):
            if table == "weather":
                raise sqlite3.OperationalError("disk I/O error")
            return original(table, cutoff)

        monkeypatch.setattr(store, "delete_older_than", delete)
        result = engine.cleanup(now=datetime(2025, 6, 1))
        assert result.failed == {"weather": "disk I/O error"}
        assert "measurements" in result.deleted
        assert "measurements_daily_agg" in result.deleted

    def test_vacuum_above_threshold(self, store, insert_measurements, monkeypatch):
        insert_measurements([("ort", "2020-01-01 10:00:00", 50.0), ("ort", "2020-01-01 10:00:01", 50.0)])
        vacuum = Mock()
        monkeypatch.setattr(store, "vacuum", vacuum)
        engine = AggregationEngine(store, vacuum_threshold=1)
        engine.ensure_default_policies()
        assert engine.cleanup(now=datetime(2025, 6, 1)).vacuumed
        vacuum.assert_called_once_with()

    def test_no_vacuum_below_threshold(self, store, monkeypatch):
        vacuum = Mock()
        monkeypatch.setattr(store, "vacuum", vacuum)
        engine = AggregationEngine(store)
        engine.ensure_default_policies()
        assert not engine.cleanup(now=datetime(2025, 6, 1)).vacuumed
        vacuum.assert_not_called()

    def test_failing_vacuum_keeps_the_deleted_counts(self, store, insert_measurements, monkeypatch):
        insert_measurements([("ort", "2020-01-01 10:00:00", 50.0), ("ort", "2020-01-01 10:00:01", 50.0)])
        monkeypatch.setattr(store, "vacuum", Mock(side_effect=sqlite3.OperationalError("disk I/O")))
        engine = AggregationEngine(store, vacuum_threshold=1)
        engine.ensure_default_policies()
        result = engine.cleanup(now=datetime(2025, 6, 1))
        assert result.deleted["measurements"] == 2
        assert not result.vacuumed
        assert result.vacuum_error == "disk I/O"


class TestRunMaintenance:
    """Refresh, cleanup and optimize together."""

    def test_all_steps(self, store, insert_measurements):
        insert_measurements([("ort", "2025-06-01 10:00:00", 50.0)])
        engine = AggregationEngine(store)
        engine.ensure_default_policies()
        report = engine.run_maintenance(now=datetime(2025, 6, 1, 10, 30))
        assert report.errors == {}
        assert report.aggregation.buckets[Granularity.HOURLY] == 1
        assert report.cleanup is not None
        assert report.optimized

    def test_failing_step_does_not_stop_the_others(self, store, monkeypatch):
        engine = AggregationEngine(store)
        engine.ensure_default_policies()
        monkeypatch.setattr(engine, "refresh", Mock(side_effect=RuntimeError("boom")))
        report = engine.run_maintenance(now=datetime(2025, 6, 1))
        assert report.errors == {"refresh": "boom"}
        assert report.aggregation is None
        assert report.cleanup is not None
        assert report.optimized

    def test_failing_vacuum_still_optimizes(self, store, insert_measurements, monkeypatch):
        insert_measurements([("ort", "2020-01-01 10:00:00", 50.0), ("ort", "2020-01-01 10:00:01", 50.0)])
        monkeypatch.setattr(store, "vacuum", Mock(side_effect=sqlite3.OperationalError("disk I/O")))
        analyze = Mock()
        monkeypatch.setattr(store, "analyze", analyze)
        engine = AggregationEngine(store, vacuum_threshold=1)
        engine.ensure_default_policies()
        report = engine.run_maintenance(now=datetime(2025, 6, 1))
        assert report.errors == {"vacuum": "disk I/O"}
        assert report.cleanup.deleted["measurements"] == 2
        analyze.assert_called_once_with()
        assert report.optimized

    def test_skipped_steps(self, store, monkeypatch):
        engine = AggregationEngine(store)
        engine.ensure_default_policies()
        refresh, analyze = Mock(), Mock()
        monkeypatch.setattr(engine, "refresh", refresh)
        monkeypatch.setattr(store, "analyze", analyze)
        report = engine.run_maintenance(now=datetime(2025, 6, 1), with_refresh=False, with_optimize=False)
        refresh.assert_not_called()
        analyze.assert_not_called()
        assert report.cleanup is not None
        assert not report.optimized
