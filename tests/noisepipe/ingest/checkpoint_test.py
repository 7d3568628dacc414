"""Tests for the noisepipe.ingest.checkpoint module."""

import json
from pathlib import Path
from unittest.mock import patch

from noisepipe.ingest.checkpoint import (
    Checkpoint,
    checkpoint_path,
    file_checksum,
    is_stale,
    lock_path,
    read_checkpoint,
    reset_checkpoint,
    write_checkpoint,
)


class TestPaths:
    """Side-car naming."""

    def test_checkpoint_path(self, tmp_path: Path):
        assert checkpoint_path(tmp_path / "a.csv") == tmp_path / "a.csv.meta.json"

    def test_lock_path(self, tmp_path: Path):
        assert lock_path(tmp_path / "a.csv") == tmp_path / "a.csv.lock"


class TestReadCheckpoint:
    """Reading, including the degraded cases."""

    def test_missing(self, tmp_path: Path):
        assert read_checkpoint(tmp_path / "a.csv") == Checkpoint()

    def test_malformed_json(self, tmp_path: Path):
        (tmp_path / "a.csv.meta.json").write_text("{not json")
        assert read_checkpoint(tmp_path / "a.csv").last_line == 0

    def test_negative_line(self, tmp_path: Path):
        (tmp_path / "a.csv.meta.json").write_text(json.dumps({"last_line": -3}))
        assert read_checkpoint(tmp_path / "a.csv").last_line == 0

    def test_wrong_type(self, tmp_path: Path):
        (tmp_path / "a.csv.meta.json").write_text(json.dumps({"last_line": "12"}))
        assert read_checkpoint(tmp_path / "a.csv").last_line == 0

    def test_not_an_object(self, tmp_path: Path):
        (tmp_path / "a.csv.meta.json").write_text("[1, 2]")
        assert read_checkpoint(tmp_path / "a.csv").last_line == 0


class TestWriteCheckpoint:
    """Writing."""

    def test_roundtrip(self, tmp_path: Path):
        written = write_checkpoint(tmp_path / "a.csv", 42)
        assert written.last_line == 42
        stored = read_checkpoint(tmp_path / "a.csv")
        assert stored.last_line == 42
        assert stored.last_processed_at is not None

    def test_file_format(self, tmp_path: Path):
        write_checkpoint(tmp_path / "a.csv", 7)
        data = json.loads((tmp_path / "a.csv.meta.json").read_text())
        assert data == {
            "last_line": 7,
            "last_processed_at": data["last_processed_at"],
            "checksum": None,
        }

    def test_never_moves_backwards(self, tmp_path: Path):
        write_checkpoint(tmp_path / "a.csv", 10)
        assert write_checkpoint(tmp_path / "a.csv", 5).last_line == 10
        assert read_checkpoint(tmp_path / "a.csv").last_line == 10

    def test_durable_write_fsyncs(self, tmp_path: Path):
        with patch("noisepipe.atomic.os.fsync") as fsync:
            write_checkpoint(tmp_path / "a.csv", 3, durable=True)
        fsync.assert_called_once()

    def test_non_durable_write_does_not_fsync(self, tmp_path: Path):
        with patch("noisepipe.atomic.os.fsync") as fsync:
            write_checkpoint(tmp_path / "a.csv", 3)
        fsync.assert_not_called()

    def test_no_temporary_files_left(self, tmp_path: Path):
        write_checkpoint(tmp_path / "a.csv", 3)
        assert sorted(p.name for p in tmp_path.iterdir()) == ["a.csv.meta.json"]

    def test_checksum_is_kept_until_replaced(self, tmp_path: Path):
        write_checkpoint(tmp_path / "a.csv", 3, checksum="5:abc")
        assert write_checkpoint(tmp_path / "a.csv", 4).checksum == "5:abc"
        assert write_checkpoint(tmp_path / "a.csv", 5, checksum="6:def").checksum == "6:def"

    def test_reset(self, tmp_path: Path):
        write_checkpoint(tmp_path / "a.csv", 10)
        reset_checkpoint(tmp_path / "a.csv")
        reset_checkpoint(tmp_path / "a.csv")
        assert read_checkpoint(tmp_path / "a.csv") == Checkpoint()


class TestStaleness:
    """Noticing rewritten and truncated files."""

    def test_appended_file_keeps_its_checksum(self, tmp_path: Path):
        path = tmp_path / "a.csv"
        path.write_text("Datum;Systemzeit;LAF\n01.06.2025;10:00:00;45\n")
        checkpoint = Checkpoint(last_line=1, checksum=file_checksum(path))
        with path.open("a") as filep:
            filep.write("01.06.2025;10:00:01;46\n")
        assert not is_stale(checkpoint, path, data_rows=2)

    def test_rewritten_file(self, tmp_path: Path):
        path = tmp_path / "a.csv"
        path.write_text("Datum;Systemzeit;LAF\n01.06.2025;10:00:00;45\n")
        checkpoint = Checkpoint(last_line=1, checksum=file_checksum(path))
        path.write_text("Datum;Systemzeit;LAF\n02.06.2025;10:00:00;45\n")
        assert is_stale(checkpoint, path, data_rows=1)

    def test_truncated_file(self, tmp_path: Path):
        path = tmp_path / "a.csv"
        path.write_text("Datum;Systemzeit;LAF\n")
        assert is_stale(Checkpoint(last_line=3), path, data_rows=0)

    def test_without_checksum(self, tmp_path: Path):
        path = tmp_path / "a.csv"
        path.write_text("Datum;Systemzeit;LAF\n01.06.2025;10:00:00;45\n")
        assert not is_stale(Checkpoint(last_line=1), path, data_rows=1)

    def test_invalid_checksum(self, tmp_path: Path):
        path = tmp_path / "a.csv"
        path.write_text("x\n")
        assert is_stale(Checkpoint(last_line=0, checksum="garbage"), path, data_rows=0)
