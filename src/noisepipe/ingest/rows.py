"""Validation and normalization of measurement rows."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from datetime import date, datetime
from typing import Final

from dateutil import parser as dateparser

from ..errors import MalformedTimestamp, MissingField, OutOfRangeValue
from ..models import MeasurementRecord

# Value columns in order of preference
VALUE_COLUMNS: Final[tuple[str, ...]] = (
    "LAF",
    "LAS",
    "LAeq",
    "Lmax",
    "Lmin",
    "LAFT5s",
    "LAFTeq",
    "LAF5s",
    "LCFeq",
    "LCF5s",
)

SYSTEM_TIME_COLUMN: Final[str] = "Systemzeit"

MIN_VALUE: Final[float] = 0.0

MAX_VALUE: Final[float] = 200.0


def _field(row: Mapping[str, object], name: str) -> str:
    value = row.get(name)
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def parse_system_time(value: str) -> str:
    """
    Normalize a `Systemzeit` cell to `HH:MM:SS`.

    Raises:
        MalformedTimestamp: unless the value has at least three numeric
            `:`-separated parts within the clock range.
    """
    parts = [part.strip() for part in value.split(":")]
    if len(parts) < 3 or not all(part.isdigit() for part in parts[:3]):
        raise MalformedTimestamp(f"invalid system time: {value!r}")
    hour, minute, second = (int(part) for part in parts[:3])
    if hour > 23 or minute > 59 or second > 59:
        raise MalformedTimestamp(f"system time out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}:{second:02d}"


def parse_value(row: Mapping[str, object]) -> tuple[str, float]:
    """
    Select the first non-empty value column and parse it.

    Returns:
        The name of the column and the parsed value.

    Raises:
        MissingField: if no value column is filled.
        OutOfRangeValue: if the value is not a number within [0, 200].
    """
    for column in VALUE_COLUMNS:
        raw = _field(row, column)
        if not raw:
            continue
        try:
            value = float(raw.replace(",", "."))
        except ValueError as exc:
            raise OutOfRangeValue(f"{column} is not numeric: {raw!r}") from exc
        if not math.isfinite(value) or not MIN_VALUE <= value <= MAX_VALUE:
            raise OutOfRangeValue(f"{column} out of range: {raw!r}")
        return column, value
    raise MissingField("no value column is filled")


def parse_date(row: Mapping[str, object], fallback: date) -> date:
    """
    Return the calendar date of a row.

    We look at `Datum` (DD.MM.YYYY), then `Date` (YYYY-MM-DD), then
    `datetime` (any ISO-8601 datetime) and finally use `fallback`.

    Raises:
        MalformedTimestamp: if the first present date column is malformed.
    """
    if datum := _field(row, "Datum"):
        try:
            return datetime.strptime(datum, "%d.%m.%Y").date()
        except ValueError as exc:
            raise MalformedTimestamp(f"invalid Datum: {datum!r}") from exc
    if iso_date := _field(row, "Date"):
        try:
            return date.fromisoformat(iso_date)
        except ValueError as exc:
            raise MalformedTimestamp(f"invalid Date: {iso_date!r}") from exc
    if iso_datetime := _field(row, "datetime"):
        try:
            return dateparser.isoparse(iso_datetime).date()
        except ValueError as exc:
            raise MalformedTimestamp(f"invalid datetime: {iso_datetime!r}") from exc
    return fallback


def normalize_row(
    row: Mapping[str, object],
    *,
    station: str,
    file_name: str,
    fallback_date: date,
) -> MeasurementRecord:
    """
    Turn a raw row into a MeasurementRecord.

    Args:
        row: mapping from (whitespace-stripped) header name to cell.
        station: the station owning the file.
        file_name: base name of the source file.
        fallback_date: date used when the row carries none (usually
            the modification date of the file).

    Raises:
        RowValidationError: if the row must be skipped.
    """
    system_time = _field(row, SYSTEM_TIME_COLUMN)
    if not system_time:
        raise MissingField(f"missing {SYSTEM_TIME_COLUMN}")
    clock = parse_system_time(system_time)
    column, value = parse_value(row)
    day = parse_date(row, fallback_date).isoformat()
    raw = {key: _field(row, key) for key in row}
    raw["value_column"] = column
    return MeasurementRecord(
        station=station,
        time=f"{day} {clock}",
        value=value,
        source_file=file_name,
        datetime=f"{day}T{clock}",
        raw_fields=json.dumps(raw, sort_keys=True),
    )
