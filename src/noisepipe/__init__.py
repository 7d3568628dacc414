"""Noise measurement ingestion, aggregation and caching.

This library imports the semicolon-delimited files written by the noise
monitoring stations into a SQLite time-series store, keeps 15min, hourly
and daily rollups up to date, and serves derived results through a
tag-invalidated two-tier cache.
"""

from importlib.metadata import PackageNotFoundError, version

from .aggregate import AggregationEngine
from .cache import IntelligentCache
from .config import Config, load_config
from .ingest import ImportCoordinator, Priority, RowProcessor
from .schedule import Scheduler
from .services import Services
from .store import MeasurementStore
from .watch import ChangeDetector

try:
    __version__ = version("noisepipe")
except PackageNotFoundError:  # pragma: no cover - running from a source tree
    __version__ = "0.0.0"

__all__ = [
    "AggregationEngine",
    "ChangeDetector",
    "Config",
    "ImportCoordinator",
    "IntelligentCache",
    "MeasurementStore",
    "Priority",
    "RowProcessor",
    "Scheduler",
    "Services",
    "load_config",
    "__version__",
]
