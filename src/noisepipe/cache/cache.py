"""Module implementing the two-tier intelligent cache."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from .disk import DiskTier
from .entry import CacheEntry, adaptive_ttl, encoded_size

log = logging.getLogger("cache")

DEFAULT_MAX_ITEMS: Final[int] = 2000

DEFAULT_MAX_BYTES: Final[int] = 256 * 1024 * 1024

DEFAULT_DEMOTE_THRESHOLD: Final[int] = 5

DEFAULT_SWEEP_INTERVAL: Final[float] = 300.0

TOP_KEYS: Final[int] = 10


@dataclass(frozen=True, kw_only=True)
class CacheStats:
    """Counters describing the cache activity."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    demotions: int = 0
    size: int = 0
    memory_bytes: int = 0
    hit_rate: float = 0.0
    top_keys: list[tuple[str, int]] = field(default_factory=list)


@dataclass(frozen=True, kw_only=True)
class WarmupItem:
    """A key to precompute with `IntelligentCache.warmup`."""

    key: str
    generator: Callable[[], Any]
    ttl: float | None = None
    tags: tuple[str, ...] = ()


class IntelligentCache:
    """
    Memory LRU backed by an optional disk tier.

    Values must be JSON-serializable. Reads look in memory first and
    then on disk, promoting disk hits into memory. Entries evicted from
    memory after more than `demote_threshold` hits are written to disk
    instead of being dropped. Tags map to the keys carrying them across
    both tiers, so `invalidate_by_tags` removes every copy.
    """

    def __init__(
        self,
        directory: str | Path | None = None,
        *,
        max_items: int = DEFAULT_MAX_ITEMS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        demote_threshold: int = DEFAULT_DEMOTE_THRESHOLD,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache.

        Parameters:
            directory: where the disk tier lives (None disables it).
            max_items: memory item ceiling.
            max_bytes: memory byte ceiling (JSON-encoded size).
            demote_threshold: hits above which evicted entries go to disk.
            sweep_interval: seconds between background sweeps.
            clock: returns the current epoch seconds.
        """
        self.disk = DiskTier(directory) if directory is not None else None
        self.max_items = max_items
        self.max_bytes = max_bytes
        self.demote_threshold = demote_threshold
        self.sweep_interval = sweep_interval
        self._clock = clock

        self._lock = threading.RLock()
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._memory_bytes = 0
        self._tags: dict[str, set[str]] = {}
        self._counters = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "evictions": 0,
            "demotions": 0,
        }

        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

    # Reads and writes

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value of `key`, or `default` on a miss."""
        with self._lock:
            now = self._clock()

            # 1. memory tier
            entry = self._memory.get(key)
            if entry is not None:
                if not entry.is_expired(now):
                    entry.hit_count += 1
                    entry.last_access_at = now
                    self._memory.move_to_end(key)
                    self._counters["hits"] += 1
                    return entry.data
                self._remove_memory(key)
                if self.disk is not None:
                    self.disk.delete(key)
                self._unindex(key)

            # 2. disk tier
            if self.disk is not None:
                entry = self.disk.read(key)
                if entry is not None:
                    if not entry.is_expired(now):
                        entry.hit_count += 1
                        entry.last_access_at = now
                        self._insert_memory(entry)
                        self._index(key, entry.tags)
                        self._counters["hits"] += 1
                        return entry.data
                    self.disk.delete(key)
                    self._unindex(key)

            self._counters["misses"] += 1
            return default

    def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: float | None = None,
        tags: Iterable[str] = (),
        priority: str = "normal",
        persist_to_disk: bool = False,
    ) -> None:
        """
        Store `value` under `key`.

        Args:
            key: the cache key.
            value: JSON-serializable value.
            ttl: seconds to live (default: adaptive, see `adaptive_ttl`).
            tags: tags used for invalidation.
            priority: "high" also writes the entry to disk.
            persist_to_disk: also write the entry to disk.

        Raises:
            TypeError: if the value is not JSON-serializable.
        """
        size = encoded_size(value)
        with self._lock:
            now = self._clock()
            previous = self._memory.get(key)
            hits = previous.hit_count if previous is not None else 0
            entry = CacheEntry(
                key=key,
                data=value,
                created_at=now,
                ttl=ttl if ttl is not None else adaptive_ttl(key, hits),
                hit_count=hits,
                last_access_at=now,
                tags=frozenset(tags),
                size=size,
            )
            if previous is not None:
                self._remove_memory(key)
            self._unindex(key)
            self._index(key, entry.tags)
            self._counters["sets"] += 1
            if self.disk is not None:
                if priority == "high" or persist_to_disk:
                    self.disk.write(entry)
                else:
                    # An older disk copy would come back after eviction
                    self.disk.delete(key)
            self._insert_memory(entry)

    def delete(self, key: str) -> bool:
        """Remove `key` from both tiers. Returns whether it was present."""
        with self._lock:
            removed = self._remove_memory(key) is not None
            if self.disk is not None:
                removed = self.disk.delete(key) or removed
            self._unindex(key)
            if removed:
                self._counters["deletes"] += 1
            return removed

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Remove every entry carrying any of `tags` and return how many keys."""
        with self._lock:
            keys: set[str] = set()
            for tag in tags:
                keys.update(self._tags.get(tag, ()))
            for key in keys:
                self.delete(key)
            if keys:
                log.debug("invalidated %d keys", len(keys))
            return len(keys)

    def clear(self) -> None:
        """Drop everything from both tiers."""
        with self._lock:
            self._memory.clear()
            self._memory_bytes = 0
            self._tags.clear()
            if self.disk is not None:
                self.disk.clear()

    def warmup(self, items: Iterable[WarmupItem]) -> int:
        """
        Precompute the missing items with high priority.

        A failing generator is logged and skipped. Returns how many
        items were computed.
        """
        warmed = 0
        for item in items:
            if self.contains(item.key):
                continue
            try:
                value = item.generator()
            except Exception as exc:
                log.warning("warming %s... failure: %s", item.key, exc)
                continue
            self.set(item.key, value, ttl=item.ttl, tags=item.tags, priority="high")
            warmed += 1
        log.info("cache warmup... ok: %d items", warmed)
        return warmed

    def contains(self, key: str) -> bool:
        """Return whether a fresh copy of `key` exists, without counting a hit."""
        with self._lock:
            now = self._clock()
            entry = self._memory.get(key)
            if entry is not None and not entry.is_expired(now):
                return True
            if self.disk is not None:
                entry = self.disk.read(key)
                return entry is not None and not entry.is_expired(now)
            return False

    def stats(self) -> CacheStats:
        with self._lock:
            lookups = self._counters["hits"] + self._counters["misses"]
            top = sorted(self._memory.values(), key=lambda e: (-e.hit_count, e.key))[:TOP_KEYS]
            return CacheStats(
                **self._counters,
                size=len(self._memory),
                memory_bytes=self._memory_bytes,
                hit_rate=self._counters["hits"] / lookups if lookups else 0.0,
                top_keys=[(e.key, e.hit_count) for e in top],
            )

    # Maintenance

    def sweep(self) -> int:
        """Purge expired entries from both tiers. Returns how many we removed."""
        removed = 0
        with self._lock:
            now = self._clock()
            for key in [k for k, e in self._memory.items() if e.is_expired(now)]:
                self._remove_memory(key)
                self._unindex(key)
                removed += 1
            if self.disk is not None:
                for path, entry in self.disk.scan():
                    if entry is not None and not entry.is_expired(now):
                        continue
                    self.disk.remove_path(path)
                    if entry is not None and entry.key not in self._memory:
                        self._unindex(entry.key)
                    removed += 1
        log.debug("cache sweep... ok: %d removed", removed)
        return removed

    def start(self) -> None:
        """Rebuild the tag index from disk and start the background sweeper."""
        with self._lock:
            if self.disk is not None:
                now = self._clock()
                for _, entry in self.disk.scan():
                    if entry is not None and not entry.is_expired(now):
                        self._index(entry.key, entry.tags)
            if self._sweeper is not None:
                return
            self._stop_event.clear()
            self._sweeper = threading.Thread(target=self._sweep_loop, name="cache-sweeper", daemon=True)
            self._sweeper.start()

    def stop(self) -> None:
        """Stop the background sweeper."""
        self._stop_event.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.join()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception as exc:
                log.error("cache sweep... failure: %s", exc)

    # Internals (callers hold the lock)

    def _insert_memory(self, entry: CacheEntry) -> None:
        if entry.key in self._memory:
            self._remove_memory(entry.key)
        self._memory[entry.key] = entry
        self._memory_bytes += entry.size
        self._evict()

    def _remove_memory(self, key: str) -> CacheEntry | None:
        entry = self._memory.pop(key, None)
        if entry is not None:
            self._memory_bytes -= entry.size
        return entry

    def _evict(self) -> None:
        while self._memory and (
            len(self._memory) > self.max_items or self._memory_bytes > self.max_bytes
        ):
            key, entry = next(iter(self._memory.items()))
            self._remove_memory(key)
            self._counters["evictions"] += 1
            if self.disk is not None and entry.hit_count > self.demote_threshold:
                self.disk.write(entry)
                self._counters["demotions"] += 1
                continue
            if self.disk is None or not self.disk.path_for(key).exists():
                self._unindex(key)

    def _index(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            self._tags.setdefault(tag, set()).add(key)

    def _unindex(self, key: str) -> None:
        for tag in [t for t, keys in self._tags.items() if key in keys]:
            self._tags[tag].discard(key)
            if not self._tags[tag]:
                del self._tags[tag]
