"""Disk tier of the cache.

Each entry is a JSON file named after the SHA256 of its key:

    $dir/{sha256[:2]}/{sha256}.json

Writes go through a temporary file and `os.replace` while holding a
FileLock on `{sha256}.json.lock`, so concurrent processes never observe
partial files.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from collections.abc import Iterator
from pathlib import Path

from filelock import BaseFileLock, FileLock

from ..atomic import write_json_atomic
from .entry import CacheEntry

log = logging.getLogger("cache/disk")


class DiskTier:
    """Unbounded directory of cache entries."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return self.directory / digest[:2] / f"{digest}.json"

    def lock(self, path: Path) -> BaseFileLock:
        """Return a FileLock guarding the given entry file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(path.with_name(path.name + ".lock"))

    def write(self, entry: CacheEntry) -> None:
        path = self.path_for(entry.key)
        with self.lock(path):
            write_json_atomic(path, entry.to_dict())

    def read(self, key: str) -> CacheEntry | None:
        """Return the entry of `key`, or None if missing or unreadable."""
        return self._load(self.path_for(key))

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        with self.lock(path):
            path.unlink(missing_ok=True)
        path.with_name(path.name + ".lock").unlink(missing_ok=True)
        return True

    def remove_path(self, path: Path) -> None:
        path.unlink(missing_ok=True)
        path.with_name(path.name + ".lock").unlink(missing_ok=True)

    def scan(self) -> Iterator[tuple[Path, CacheEntry | None]]:
        """Yield every entry file with its parsed entry (None when unreadable)."""
        if not self.directory.exists():
            return
        for path in sorted(self.directory.glob("*/*.json")):
            yield path, self._load(path)

    def clear(self) -> None:
        if self.directory.exists():
            shutil.rmtree(self.directory)

    def _load(self, path: Path) -> CacheEntry | None:
        try:
            return CacheEntry.from_dict(json.loads(path.read_text()))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("reading cache entry %s... failure: %s", path, exc)
            return None
