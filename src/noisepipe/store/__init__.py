"""Package implementing the measurement store.

The `MeasurementStore` keeps raw measurements keyed by (station, time)
with insert-or-replace semantics, so re-importing the same or a corrected
file never creates duplicates. It also owns the per-granularity rollup
tables written by `noisepipe.aggregate`, the time-of-day threshold
table, the retention policies and the weather readings.
"""

from .sqlite import (
    DEFAULT_ALARM_THRESHOLD,
    DEFAULT_RETENTION_DAYS,
    MeasurementStore,
    is_busy_error,
    isoformat,
)

__all__ = [
    "DEFAULT_ALARM_THRESHOLD",
    "DEFAULT_RETENTION_DAYS",
    "MeasurementStore",
    "is_busy_error",
    "isoformat",
]
