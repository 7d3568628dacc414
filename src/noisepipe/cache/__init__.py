"""Package implementing the intelligent two-tier cache."""

from .cache import CacheStats, IntelligentCache, WarmupItem
from .disk import DiskTier
from .entry import CacheEntry, adaptive_ttl, base_ttl

__all__ = [
    "CacheEntry",
    "CacheStats",
    "DiskTier",
    "IntelligentCache",
    "WarmupItem",
    "adaptive_ttl",
    "base_ttl",
]
