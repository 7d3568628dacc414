"""Cache entries and the adaptive TTL policy."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Final

DEFAULT_TTL: Final[float] = 300.0

# Base TTL (seconds) by key namespace, checked in order
NAMESPACE_TTLS: Final[tuple[tuple[str, float], ...]] = (
    ("station_data", 120.0),
    ("aggregated", 900.0),
    ("historical", 3600.0),
)

HOT_HITS: Final[int] = 10

WARM_HITS: Final[int] = 5


def base_ttl(key: str) -> float:
    """Return the TTL of the namespace the key belongs to."""
    for namespace, ttl in NAMESPACE_TTLS:
        if namespace in key:
            return ttl
    return DEFAULT_TTL


def adaptive_ttl(key: str, hit_count: int = 0) -> float:
    """
    Return the TTL to use when (re)writing `key`.

    Entries that are read often live longer: more than 10 hits triple
    the namespace TTL, more than 5 hits double it.
    """
    ttl = base_ttl(key)
    if hit_count > HOT_HITS:
        return ttl * 3
    if hit_count > WARM_HITS:
        return ttl * 2
    return ttl


def encoded_size(data: Any) -> int:
    """Return the size of the JSON encoding of `data`."""
    return len(json.dumps(data, separators=(",", ":")))


@dataclass(kw_only=True)
class CacheEntry:
    """
    A cached value with its bookkeeping.

    Attributes:
        key: the cache key
        data: the JSON-serializable value
        created_at: epoch seconds of the write
        ttl: time to live in seconds
        hit_count: number of reads served
        last_access_at: epoch seconds of the last read or write
        tags: tags used for invalidation
        size: bytes of the JSON encoding of data
    """

    key: str
    data: Any
    created_at: float
    ttl: float
    hit_count: int = 0
    last_access_at: float = 0.0
    tags: frozenset[str] = field(default_factory=frozenset)
    size: int = 0

    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at()

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "data": self.data,
            "created_at": self.created_at,
            "ttl": self.ttl,
            "hit_count": self.hit_count,
            "last_access_at": self.last_access_at,
            "tags": sorted(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        """Build an entry from `to_dict` output; raises KeyError/TypeError/ValueError."""
        return cls(
            key=str(data["key"]),
            data=data["data"],
            created_at=float(data["created_at"]),
            ttl=float(data["ttl"]),
            hit_count=int(data.get("hit_count", 0)),
            last_access_at=float(data.get("last_access_at", data["created_at"])),
            tags=frozenset(data.get("tags", ())),
            size=encoded_size(data["data"]),
        )
