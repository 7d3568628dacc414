"""Package maintaining the 15min, hourly and daily rollups."""

from .engine import (
    AGGREGATED_TAG,
    DEFAULT_WINDOWS,
    AggregationEngine,
    AggregationResult,
    CleanupResult,
    MaintenanceReport,
    compute_buckets,
    time_in_window,
)

__all__ = [
    "AGGREGATED_TAG",
    "DEFAULT_WINDOWS",
    "AggregationEngine",
    "AggregationResult",
    "CleanupResult",
    "MaintenanceReport",
    "compute_buckets",
    "time_in_window",
]
