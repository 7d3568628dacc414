"""Tests for the noisepipe.ingest.processor module."""

import sqlite3
from pathlib import Path
from unittest.mock import Mock

import pytest

from noisepipe.errors import FileProcessingError, TransientStorageBusy
from noisepipe.ingest.checkpoint import read_checkpoint, write_checkpoint
from noisepipe.ingest.processor import RowProcessor, list_csv_files


def _processor(store, **kwargs) -> RowProcessor:
    kwargs.setdefault("sleep", lambda _: None)
    return RowProcessor(store, **kwargs)


class TestListCsvFiles:
    """Directory enumeration."""

    def test_sorted_visible_csv_only(self, tmp_path: Path):
        for name in ("b.csv", "a.CSV", ".hidden.csv", "c.txt", "a.csv.meta.json"):
            (tmp_path / name).write_text("x")
        assert [p.name for p in list_csv_files(tmp_path)] == ["a.CSV", "b.csv"]


class TestProcessFile:
    """Importing a single file."""

    def test_imports_all_rows(self, store, tmp_path, write_csv, make_rows):
        path = write_csv(tmp_path / "ort" / "a.csv", make_rows(250))
        result = _processor(store).process_file("ort", path)
        assert result.inserted_count == 250
        assert result.skipped_count == 0
        assert result.error_count == 0
        assert result.last_line == 250
        assert store.count_measurements("ort") == 250
        assert read_checkpoint(path).last_line == 250

    def test_values_are_normalized(self, store, tmp_path, write_csv):
        path = write_csv(tmp_path / "a.csv", ["01.06.2025;8:5:3;;45,5"])
        _processor(store).process_file("ort", path)
        record = store.get_measurement("ort", "2025-06-01 08:05:03")
        assert record is not None
        assert record.value == 45.5
        assert record.source_file == "a.csv"

    def test_invalid_rows_are_skipped(self, store, tmp_path, write_csv):
        rows = [
            "01.06.2025;10:00:00;;45",
            "01.06.2025;;;45",
            "01.06.2025;10:00:02;;999",
            "01.06.2025;10:00:03;;",
            "01.06.2025;10:00:04;;50",
        ]
        path = write_csv(tmp_path / "a.csv", rows)
        result = _processor(store).process_file("ort", path)
        assert result.inserted_count == 2
        assert result.skipped_count == 3
        assert result.last_line == 5

    def test_blank_lines_count_as_skipped(self, store, tmp_path, write_csv):
        path = write_csv(tmp_path / "a.csv", ["01.06.2025;10:00:00;;45", "", "01.06.2025;10:00:02;;46"])
        result = _processor(store).process_file("ort", path)
        assert result.inserted_count == 2
        assert result.last_line == 3

    def test_lines_with_extra_fields_are_skipped(self, store, tmp_path, write_csv):
        rows = ["01.06.2025;10:00:00;;45", "01.06.2025;10:00:01;;46;1;2", "01.06.2025;10:00:02;;47"]
        path = write_csv(tmp_path / "a.csv", rows)
        result = _processor(store).process_file("ort", path)
        assert result.inserted_count == 2
        assert result.skipped_count == 1
        assert result.last_line == 3

    @pytest.mark.parametrize("batch_size", [1, 2, 1000])
    def test_rerun_after_malformed_lines_inserts_nothing(self, store, tmp_path, write_csv, batch_size):
        rows = [
            "01.06.2025;10:00:00;;45",
            "01.06.2025;10:00:01;;46;1;2",
            "",
            "01.06.2025;10:00:03;;47",
            "01.06.2025;10:00:04;;48;9",
        ]
        path = write_csv(tmp_path / "a.csv", rows)
        first = _processor(store, batch_size=batch_size).process_file("ort", path)
        assert first.inserted_count == 2
        assert first.skipped_count == 3
        assert first.last_line == 5
        assert read_checkpoint(path).last_line == 5

        second = _processor(store, batch_size=batch_size).process_file("ort", path)
        assert second.inserted_count == 0
        assert second.last_line == 5

    def test_empty_file(self, store, tmp_path):
        path = tmp_path / "a.csv"
        path.write_text("")
        result = _processor(store).process_file("ort", path)
        assert result.inserted_count == 0
        assert result.last_line == 0

    def test_header_only(self, store, tmp_path, write_csv):
        path = write_csv(tmp_path / "a.csv", [])
        result = _processor(store).process_file("ort", path)
        assert result.inserted_count == 0
        assert not (tmp_path / "a.csv.meta.json").exists()

    def test_missing_file(self, store, tmp_path):
        with pytest.raises(FileNotFoundError):
            _processor(store).process_file("ort", tmp_path / "missing.csv")

    def test_progress_reaches_100(self, store, tmp_path, write_csv, make_rows):
        path = write_csv(tmp_path / "a.csv", make_rows(30))
        progress = Mock()
        _processor(store, batch_size=10).process_file("ort", path, progress=progress)
        values = [call.args[0] for call in progress.call_args_list]
        assert values == sorted(values)
        assert values[-1] == 100

    def test_invalidates_station_cache(self, store, tmp_path, write_csv, make_rows):
        path = write_csv(tmp_path / "a.csv", make_rows(3))
        cache = Mock()
        _processor(store, cache=cache).process_file("ort", path)
        cache.invalidate_by_tags.assert_called_once_with(["station_ort"])

    def test_rejects_bad_settings(self, store):
        with pytest.raises(ValueError):
            RowProcessor(store, batch_size=0)
        with pytest.raises(ValueError):
            RowProcessor(store, max_attempts=0)


class TestIdempotency:
    """Re-importing never duplicates rows."""

    def test_second_run_resumes_at_end(self, store, tmp_path, write_csv, make_rows):
        path = write_csv(tmp_path / "a.csv", make_rows(20))
        processor = _processor(store)
        processor.process_file("ort", path)
        result = processor.process_file("ort", path)
        assert result.inserted_count == 0
        assert store.count_measurements() == 20

    def test_reimport_without_checkpoint(self, store, tmp_path, write_csv, make_rows):
        path = write_csv(tmp_path / "a.csv", make_rows(20))
        processor = _processor(store)
        processor.process_file("ort", path)
        (tmp_path / "a.csv.meta.json").unlink()
        result = processor.process_file("ort", path)
        assert result.inserted_count == 20
        assert store.count_measurements() == 20

    def test_appended_rows_only(self, store, tmp_path, write_csv, make_rows):
        rows = make_rows(15)
        path = write_csv(tmp_path / "a.csv", rows[:10])
        processor = _processor(store)
        processor.process_file("ort", path)
        write_csv(path, rows)
        result = processor.process_file("ort", path)
        assert result.inserted_count == 5
        assert result.last_line == 15
        assert store.count_measurements() == 15


class TestCrashRecovery:
    """Resuming from the checkpoint after a failure."""

    def test_resumes_from_checkpoint(self, store, tmp_path, write_csv, make_rows):
        path = write_csv(tmp_path / "a.csv", make_rows(250))
        write_checkpoint(path, 100)
        result = _processor(store).process_file("ort", path)
        assert result.inserted_count == 150
        assert store.count_measurements() == 150

    def test_rewritten_file_is_imported_again(self, store, tmp_path, write_csv, make_rows):
        path = write_csv(tmp_path / "a.csv", make_rows(20))
        _processor(store).process_file("ort", path)
        assert read_checkpoint(path).checksum is not None

        write_csv(path, make_rows(20, day="02.06.2025"))
        result = _processor(store).process_file("ort", path)
        assert result.inserted_count == 20
        assert store.count_measurements("ort") == 40

    def test_truncated_file_starts_over(self, store, tmp_path, write_csv, make_rows):
        path = write_csv(tmp_path / "a.csv", make_rows(20))
        _processor(store).process_file("ort", path)

        write_csv(path, make_rows(5, start_hour=12))
        result = _processor(store).process_file("ort", path)
        assert result.inserted_count == 5
        assert result.last_line == 5
        assert read_checkpoint(path).last_line == 5

    def test_failure_mid_chunk_is_retried_from_checkpoint(
        self, store, tmp_path, write_csv, make_rows, monkeypatch
    ):
        path = write_csv(tmp_path / "a.csv", make_rows(250))
        original = store.upsert_measurement
        calls = {"n": 0}

        def flaky(conn, record):
            calls["n"] += 1
            if calls["n"] == 150:
                raise RuntimeError("simulated crash")
            return original(conn, record)

        monkeypatch.setattr(store, "upsert_measurement", flaky)
        result = _processor(store).process_file("ort", path)

        # The second chunk rolled back, so the retry starts at row 100
        assert result.inserted_count == 150
        assert result.last_line == 250
        assert store.count_measurements() == 250

    def test_checkpoint_never_ahead_of_commits(self, store, tmp_path, write_csv, make_rows, monkeypatch):
        path = write_csv(tmp_path / "a.csv", make_rows(250))

        def broken(conn, record):
            if record.time.endswith("10:02:30"):
                raise RuntimeError("simulated crash")
            return True

        monkeypatch.setattr(store, "upsert_measurement", broken)
        with pytest.raises(FileProcessingError):
            _processor(store, max_attempts=1).process_file("ort", path)
        assert read_checkpoint(path).last_line == 100

    def test_gives_up_after_max_attempts(self, store, tmp_path, write_csv, make_rows, monkeypatch):
        path = write_csv(tmp_path / "a.csv", make_rows(5))
        transaction = Mock(side_effect=sqlite3.OperationalError("disk I/O error"))
        monkeypatch.setattr(store, "transaction", transaction)
        sleeps: list[float] = []
        processor = RowProcessor(store, max_attempts=3, retry_delay=1.0, sleep=sleeps.append)
        with pytest.raises(FileProcessingError) as info:
            processor.process_file("ort", path)
        assert info.value.attempts == 3
        assert info.value.station == "ort"
        assert info.value.file_name == "a.csv"
        assert transaction.call_count == 3
        assert sleeps == [1.0, 2.0]


class TestBusyRetry:
    """Per-row retry when the store is busy."""

    def test_retries_then_succeeds(self, store, tmp_path, write_csv, make_rows, monkeypatch):
        path = write_csv(tmp_path / "a.csv", make_rows(1))
        original = store.upsert_measurement
        failures = {"left": 2}

        def busy(conn, record):
            if failures["left"]:
                failures["left"] -= 1
                raise TransientStorageBusy("database is locked")
            return original(conn, record)

        monkeypatch.setattr(store, "upsert_measurement", busy)
        sleeps: list[float] = []
        result = RowProcessor(store, sleep=sleeps.append).process_file("ort", path)
        assert result.inserted_count == 1
        assert sleeps == [0.1, 0.2]

    def test_counts_error_after_five_attempts(self, store, tmp_path, write_csv, make_rows, monkeypatch):
        path = write_csv(tmp_path / "a.csv", make_rows(2))
        upsert = Mock(side_effect=TransientStorageBusy("database is locked"))
        monkeypatch.setattr(store, "upsert_measurement", upsert)
        result = _processor(store).process_file("ort", path)
        assert result.error_count == 2
        assert result.inserted_count == 0
        assert upsert.call_count == 10


class TestProcessAll:
    """Processing every station directory."""

    def test_all_stations(self, store, tmp_path, write_csv, make_rows):
        root = tmp_path / "csv"
        write_csv(root / "ort" / "a.csv", make_rows(3))
        write_csv(root / "ort" / "b.csv", make_rows(2, start_hour=11))
        write_csv(root / "band" / "a.csv", make_rows(4))
        results = _processor(store).process_all(root)
        assert [(r.station, r.file_name) for r in results] == [
            ("band", "a.csv"),
            ("ort", "a.csv"),
            ("ort", "b.csv"),
        ]
        assert store.count_measurements() == 9

    def test_failures_are_recorded(self, store, tmp_path, write_csv, make_rows, monkeypatch):
        root = tmp_path / "csv"
        write_csv(root / "ort" / "a.csv", make_rows(3))
        monkeypatch.setattr(store, "transaction", Mock(side_effect=sqlite3.OperationalError("boom")))
        results = _processor(store, max_attempts=1).process_all(root, ["ort", "missing"])
        assert len(results) == 1
        assert results[0].error is not None
