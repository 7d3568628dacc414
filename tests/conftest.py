"""Shared pytest fixtures for noisepipe tests."""

from collections.abc import Callable, Iterable, Iterator
from pathlib import Path

import pytest

from noisepipe.models import MeasurementRecord
from noisepipe.store import MeasurementStore

DEFAULT_HEADER = "Datum;Systemzeit ;LAF;LAS"


@pytest.fixture
def store(tmp_path: Path) -> Iterator[MeasurementStore]:
    """Return an initialized store living in tmp_path."""
    store = MeasurementStore(tmp_path / "measurements.sqlite")
    store.ensure_schema()
    yield store
    store.close()


@pytest.fixture
def write_csv() -> Callable[..., Path]:
    """Return a function writing a semicolon-delimited file."""

    def write(path: Path, rows: Iterable[str], header: str = DEFAULT_HEADER) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join([header, *rows]) + "\n")
        return path

    return write


@pytest.fixture
def make_rows() -> Callable[..., list[str]]:
    """Return a function generating `count` valid rows one second apart."""

    def make(count: int, *, day: str = "01.06.2025", start_hour: int = 10, value: str = "45,5"):
        rows = []
        for index in range(count):
            total = start_hour * 3600 + index
            clock = f"{total // 3600:02d}:{total % 3600 // 60:02d}:{total % 60:02d}"
            rows.append(f"{day};{clock};;{value}")
        return rows

    return make


@pytest.fixture
def insert_measurements(store: MeasurementStore) -> Callable[..., None]:
    """Return a function inserting (station, "YYYY-MM-DD HH:MM:SS", value) tuples."""

    def insert(rows: Iterable[tuple[str, str, float]]) -> None:
        with store.transaction() as conn:
            for station, time, value in rows:
                store.upsert_measurement(
                    conn,
                    MeasurementRecord(
                        station=station,
                        time=time,
                        value=value,
                        source_file="test.csv",
                        datetime=time.replace(" ", "T"),
                        raw_fields="{}",
                    ),
                )

    return insert
