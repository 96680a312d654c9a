"""
Adaptive caching for resilient-access.

Provides TTL caching with semantic lookup, priority eviction, compression
and persistence.
"""

from resilient_access.cache.backends import (
    CacheEntry,
    CachePersistence,
    DiskPersistence,
    NullPersistence,
    Priority,
)
from resilient_access.cache.codecs import CacheCodec, ZlibJsonCodec, estimate_size
from resilient_access.cache.key import SemanticHints, make_cache_key, normalize_tags
from resilient_access.cache.manager import (
    AdaptiveCache,
    CacheConfig,
    CacheLookup,
    CacheStats,
    LookupSource,
    SetOptions,
)

__all__ = [
    "AdaptiveCache",
    "CacheCodec",
    "CacheConfig",
    "CacheEntry",
    "CacheLookup",
    "CachePersistence",
    "CacheStats",
    "DiskPersistence",
    "LookupSource",
    "NullPersistence",
    "Priority",
    "SemanticHints",
    "SetOptions",
    "ZlibJsonCodec",
    "estimate_size",
    "make_cache_key",
    "normalize_tags",
]
