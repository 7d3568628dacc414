"""Package watching the station directories for new or changed files."""

from .detector import ChangeDetector, WatcherStatus, is_watched_file

__all__ = ["ChangeDetector", "WatcherStatus", "is_watched_file"]
