"""
Adaptive cache.

TTL-bounded key/value cache with semantic-similarity lookup, priority
weighted eviction under a memory budget, pluggable compression and
persistence of high-priority entries.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from resilient_access.cache.backends import (
    CacheEntry,
    CachePersistence,
    NullPersistence,
    Priority,
)
from resilient_access.cache.codecs import CacheCodec, ZlibJsonCodec, estimate_size
from resilient_access.cache.key import SemanticHints, normalize_tags
from resilient_access.clock import Clock, SystemClock, TimerHandle
from resilient_access.errors import CapacityError
from resilient_access.telemetry import get_logger

logger = get_logger("resilient_access.cache")

_MB = 1024 * 1024


def _default_category_ttls() -> dict[str, float]:
    return {
        "ai-analysis": 3600.0,
        "product-info": 86400.0,
        "ebay-api": 900.0,
    }


@dataclass
class CacheConfig:
    """Cache configuration.

    Attributes:
        max_bytes: Memory budget for stored payloads
        default_ttl: TTL when neither the caller nor a rule picks one
        compression_threshold: Values larger than this go through the codec
        similarity_floor: Minimum semantic score for a similar-entry hit
        cleanup_interval: Seconds between background TTL sweeps
        large_value_bytes: Values larger than this get ``large_value_ttl``
        large_value_ttl: TTL for large values without a category rule
        category_ttls: TTL per hint category
    """

    max_bytes: int = 50 * _MB
    default_ttl: float = 1800.0
    compression_threshold: int = 10 * 1024
    similarity_floor: int = 50
    cleanup_interval: float = 300.0
    large_value_bytes: int = 100 * 1024
    large_value_ttl: float = 7200.0
    category_ttls: dict[str, float] = field(default_factory=_default_category_ttls)

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Create configuration from environment variables."""
        return cls(
            max_bytes=int(os.getenv("RESILIENT_ACCESS_CACHE_MAX_BYTES", str(50 * _MB))),
            default_ttl=float(os.getenv("RESILIENT_ACCESS_CACHE_DEFAULT_TTL", "1800")),
            compression_threshold=int(
                os.getenv("RESILIENT_ACCESS_CACHE_COMPRESSION_THRESHOLD", str(10 * 1024))
            ),
            similarity_floor=int(os.getenv("RESILIENT_ACCESS_CACHE_SIMILARITY_FLOOR", "50")),
            cleanup_interval=float(os.getenv("RESILIENT_ACCESS_CACHE_CLEANUP_INTERVAL", "300")),
        )


@dataclass(frozen=True)
class SetOptions:
    """Options for ``AdaptiveCache.set``.

    Attributes:
        ttl: TTL override in seconds
        priority: Eviction priority
        tags: Explicit tags (e.g. 'brand:nike')
        hints: Semantic hints; also add derived tags
        raise_on_capacity: Raise CapacityError instead of returning False
    """

    ttl: float | None = None
    priority: Priority = Priority.MEDIUM
    tags: tuple[str, ...] = ()
    hints: SemanticHints | None = None
    raise_on_capacity: bool = False


class LookupSource(str, Enum):
    """Where a lookup was served from."""

    EXACT = "exact"
    SEMANTIC = "semantic"
    STALE = "stale"
    MISS = "miss"


@dataclass(frozen=True)
class CacheLookup:
    """Result of ``AdaptiveCache.lookup``.

    Attributes:
        value: Cached value (None on a miss)
        hit: Whether a value was found
        source: exact, semantic, stale or miss
        key: Key of the entry that served the value
        score: Semantic score for a semantic hit
    """

    value: Any
    hit: bool
    source: LookupSource
    key: str | None = None
    score: int | None = None


@dataclass
class CacheStats:
    """Cache statistics.

    Attributes:
        hits: Lookups answered with a value (any source)
        misses: Lookups with no value
        semantic_hits: Hits served by a similar entry
        stale_hits: Hits served by an expired entry
        sets: Successful writes
        evictions: Entries evicted for capacity
        expirations: Expired entries removed
        rejections: Writes rejected for capacity
        item_count: Entries currently stored
        memory_usage: Bytes currently stored
    """

    hits: int = 0
    misses: int = 0
    semantic_hits: int = 0
    stale_hits: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0
    rejections: int = 0
    item_count: int = 0
    memory_usage: int = 0

    @property
    def total_requests(self) -> int:
        """Get total number of lookups."""
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Get cache hit rate (0.0 to 1.0)."""
        total = self.total_requests
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "semantic_hits": self.semantic_hits,
            "stale_hits": self.stale_hits,
            "sets": self.sets,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "rejections": self.rejections,
            "item_count": self.item_count,
            "memory_usage": self.memory_usage,
            "total_requests": self.total_requests,
            "hit_rate": self.hit_rate,
        }

    def reset(self) -> None:
        """Reset counters (item count and memory usage are kept)."""
        self.hits = 0
        self.misses = 0
        self.semantic_hits = 0
        self.stale_hits = 0
        self.sets = 0
        self.evictions = 0
        self.expirations = 0
        self.rejections = 0


class AdaptiveCache:
    """Adaptive in-memory cache with optional persistence.

    Reads and writes are synchronous and guarded by a re-entrant lock;
    callers only ever receive values and copies of statistics.

    Example:
        >>> cache = AdaptiveCache(CacheConfig(max_bytes=10 * 1024 * 1024))
        >>> hints = SemanticHints(category="clothing", brand="Nike")
        >>> cache.set("pricing:nike-air-max-90", prices, SetOptions(hints=hints))
        >>> value, hit = cache.get("pricing:nike-air-max-95", hints=hints)
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Clock | None = None,
        codec: CacheCodec | None = None,
        persistence: CachePersistence | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            config: Cache configuration
            clock: Time source for TTLs and maintenance
            codec: Codec for values above the compression threshold
            persistence: Store for high and critical priority entries
        """
        self._config = config or CacheConfig()
        self._clock = clock or SystemClock()
        self._codec = codec or ZlibJsonCodec()
        self._persistence = persistence or NullPersistence()
        self._entries: dict[str, CacheEntry] = {}
        self._stats = CacheStats()
        self._lock = threading.RLock()
        self._maintenance: TimerHandle | None = None

    @property
    def config(self) -> CacheConfig:
        """Get cache configuration."""
        return self._config

    # -- reads -------------------------------------------------------------

    def get(
        self,
        key: str,
        hints: SemanticHints | None = None,
        allow_stale: bool = False,
    ) -> tuple[Any, bool]:
        """Get a value.

        Args:
            key: Exact key
            hints: Semantic hints for a similar-entry lookup on miss
            allow_stale: Serve an expired exact entry when nothing live matches

        Returns:
            Tuple of (value, hit)
        """
        result = self.lookup(key, hints=hints, allow_stale=allow_stale)
        return result.value, result.hit

    def lookup(
        self,
        key: str,
        hints: SemanticHints | None = None,
        allow_stale: bool = False,
        count_miss: bool = True,
    ) -> CacheLookup:
        """Get a value along with where it came from.

        Order: live exact entry, best live semantic match at or above the
        similarity floor, expired exact entry (only with ``allow_stale``).
        With ``count_miss=False`` a miss is left for the caller to settle
        through ``record_miss`` or a later lookup.
        """
        now = self._clock.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_expired(now):
                value = self._read(entry, now)
                if value is not _UNREADABLE:
                    self._stats.hits += 1
                    logger.debug("Cache hit", key=key, source="exact")
                    return CacheLookup(value, True, LookupSource.EXACT, key)

            if hints is not None and not hints.is_empty:
                match = self._find_similar(hints, now)
                if match is not None:
                    similar, score = match
                    value = self._read(similar, now)
                    if value is not _UNREADABLE:
                        self._stats.hits += 1
                        self._stats.semantic_hits += 1
                        logger.debug(
                            "Cache hit", key=key, source="semantic", served=similar.key, score=score
                        )
                        return CacheLookup(
                            value, True, LookupSource.SEMANTIC, similar.key, score
                        )

            entry = self._entries.get(key)
            if allow_stale and entry is not None:
                value = self._read(entry, now)
                if value is not _UNREADABLE:
                    self._stats.hits += 1
                    self._stats.stale_hits += 1
                    logger.info(
                        "Serving stale cache entry",
                        key=key,
                        expired_for=round(now - entry.expires_at, 3),
                    )
                    return CacheLookup(value, True, LookupSource.STALE, key)

            if count_miss:
                self._stats.misses += 1
            logger.debug("Cache miss", key=key)
            return CacheLookup(None, False, LookupSource.MISS)

    def record_miss(self) -> None:
        """Count a miss deferred by ``lookup(count_miss=False)``."""
        with self._lock:
            self._stats.misses += 1

    def _find_similar(
        self, hints: SemanticHints, now: float
    ) -> tuple[CacheEntry, int] | None:
        best: tuple[CacheEntry, int] | None = None
        for entry in self._entries.values():
            if entry.is_expired(now):
                continue
            score = hints.score(entry.tags)
            if score > 0 and (best is None or score > best[1]):
                best = (entry, score)
        if best is not None and best[1] >= self._config.similarity_floor:
            return best
        return None

    def _read(self, entry: CacheEntry, now: float) -> Any:
        if entry.compressed:
            try:
                value = self._codec.decompress(entry.payload)
            except Exception as e:
                logger.error("Cache decompression failed, dropping entry", key=entry.key, error=str(e))
                self._remove(entry.key)
                return _UNREADABLE
        else:
            value = entry.payload
        entry.touch(now)
        return value

    # -- writes ------------------------------------------------------------

    def set(self, key: str, value: Any, options: SetOptions | None = None) -> bool:
        """Store a value.

        Args:
            key: Exact key
            value: Value to cache
            options: TTL, priority, tags and hints

        Returns:
            True if stored, False if rejected for capacity

        Raises:
            CapacityError: If rejected and ``options.raise_on_capacity`` is set
        """
        options = options or SetOptions()
        raw_size = estimate_size(value)
        payload, compressed, size = self._encode(key, value, raw_size)

        tags = set(normalize_tags(options.tags))
        if options.hints is not None:
            tags |= options.hints.tags()
        ttl = self._resolve_ttl(options, raw_size)

        now = self._clock.time()
        with self._lock:
            if not self._make_room(key, size, now):
                self._stats.rejections += 1
                available = self._config.max_bytes - self._stats.memory_usage
                logger.warning(
                    "Cache write rejected, no room",
                    key=key,
                    size=size,
                    available=available,
                    priority=options.priority.value,
                )
                if options.raise_on_capacity:
                    raise CapacityError(key, size, available)
                return False

            entry = CacheEntry(
                key=key,
                payload=payload,
                created_at=now,
                ttl=ttl,
                priority=options.priority,
                size=size,
                tags=frozenset(tags),
                compressed=compressed,
            )
            self._remove(key, persisted=not entry.priority.persistent)
            self._insert(entry)
            self._stats.sets += 1

            if entry.priority.persistent:
                self._persistence.save(entry)

        logger.debug(
            "Cache set",
            key=key,
            size=size,
            ttl=ttl,
            priority=options.priority.value,
            compressed=compressed,
        )
        return True

    def _encode(self, key: str, value: Any, raw_size: int) -> tuple[Any, bool, int]:
        if raw_size <= self._config.compression_threshold:
            return value, False, raw_size
        try:
            data = self._codec.compress(value)
            lossless = self._codec.decompress(data) == value
        except Exception as e:
            logger.warning("Cache compression failed, storing uncompressed", key=key, error=str(e))
            return value, False, raw_size
        if not lossless:
            # e.g. tuples and int dict keys do not survive JSON
            logger.debug("Cache codec is lossy for value, storing uncompressed", key=key)
            return value, False, raw_size
        return data, True, len(data)

    def _resolve_ttl(self, options: SetOptions, raw_size: int) -> float:
        if options.ttl is not None:
            return options.ttl
        category = options.hints.category if options.hints else None
        if category:
            ttl = self._config.category_ttls.get(category.lower())
            if ttl is not None:
                return ttl
        if raw_size > self._config.large_value_bytes:
            return self._config.large_value_ttl
        return self._config.default_ttl

    def _make_room(self, key: str, size: int, now: float) -> bool:
        budget = self._config.max_bytes
        if size > budget:
            return False

        existing = self._entries.get(key)
        replaced = existing.size if existing is not None else 0
        if self._stats.memory_usage - replaced + size <= budget:
            return True

        # Expired entries go first, whatever their priority.
        expired = [k for k, e in self._entries.items() if k != key and e.is_expired(now)]
        for k in expired:
            self._remove(k)
            self._stats.expirations += 1

        needed = self._stats.memory_usage - replaced + size - budget
        if needed <= 0:
            return True

        candidates = sorted(
            (e for k, e in self._entries.items() if k != key and e.priority != Priority.CRITICAL),
            key=lambda e: e.eviction_score(now),
        )
        plan: list[CacheEntry] = []
        freed = 0
        for candidate in candidates:
            if freed >= needed:
                break
            plan.append(candidate)
            freed += candidate.size

        if freed < needed:
            return False

        for victim in plan:
            self._remove(victim.key)
            self._stats.evictions += 1
        logger.info("Evicted cache entries", count=len(plan), freed_bytes=freed, for_key=key)
        return True

    def _insert(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._stats.item_count += 1
        self._stats.memory_usage += entry.size

    def _remove(self, key: str, persisted: bool = True) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        self._stats.item_count -= 1
        self._stats.memory_usage -= entry.size
        if persisted and entry.priority.persistent:
            self._persistence.delete(key)
        return entry

    # -- invalidation ------------------------------------------------------

    def invalidate_by_tag(self, tags: Iterable[str]) -> int:
        """Remove every entry whose tags intersect ``tags``.

        Returns:
            Number of entries removed
        """
        wanted = normalize_tags([tags] if isinstance(tags, str) else tags)
        with self._lock:
            keys = [k for k, e in self._entries.items() if e.tags & wanted]
            for key in keys:
                self._remove(key)
        logger.info("Invalidated cache entries by tag", tags=sorted(wanted), count=len(keys))
        return len(keys)

    def delete(self, key: str) -> bool:
        """Remove one entry.

        Returns:
            True if the key was present
        """
        with self._lock:
            return self._remove(key) is not None

    def clear(self) -> None:
        """Remove every entry, persisted ones included, and reset statistics."""
        with self._lock:
            self._entries.clear()
            self._stats = CacheStats()
            self._persistence.clear()
        logger.info("Cache cleared")

    def sweep_expired(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock.time()
        with self._lock:
            keys = [k for k, e in self._entries.items() if e.is_expired(now)]
            freed = 0
            for key in keys:
                entry = self._remove(key)
                if entry is not None:
                    freed += entry.size
            self._stats.expirations += len(keys)
        if keys:
            logger.info("Swept expired cache entries", count=len(keys), freed_bytes=freed)
        return len(keys)

    # -- persistence and maintenance ---------------------------------------

    def load_persisted(self) -> int:
        """Restore live entries from persistence.

        Expired records are deleted; records that do not fit the budget are
        skipped.

        Returns:
            Number of entries restored
        """
        now = self._clock.time()
        loaded = 0
        with self._lock:
            for entry in self._persistence.load_all():
                if entry.is_expired(now):
                    self._persistence.delete(entry.key)
                    continue
                if entry.key in self._entries:
                    continue
                if self._stats.memory_usage + entry.size > self._config.max_bytes:
                    logger.warning("No room for persisted entry", key=entry.key, size=entry.size)
                    continue
                self._insert(entry)
                loaded += 1
        logger.info("Loaded persisted cache entries", count=loaded)
        return loaded

    def start_maintenance(self) -> None:
        """Arm the periodic TTL sweep on the clock. Idempotent."""
        with self._lock:
            if self._maintenance is not None and not self._maintenance.cancelled:
                return
            self._maintenance = self._clock.call_later(
                self._config.cleanup_interval, self._maintenance_tick
            )

    def _maintenance_tick(self) -> None:
        self.sweep_expired()
        with self._lock:
            if self._maintenance is None or self._maintenance.cancelled:
                return
            self._maintenance = self._clock.call_later(
                self._config.cleanup_interval, self._maintenance_tick
            )

    def shutdown(self) -> None:
        """Stop background maintenance."""
        with self._lock:
            if self._maintenance is not None:
                self._maintenance.cancel()
                self._maintenance = None

    # -- introspection -----------------------------------------------------

    def stats(self) -> CacheStats:
        """Get a copy of cache statistics."""
        with self._lock:
            return CacheStats(**vars(self._stats))

    def keys(self) -> list[str]:
        """Get the stored keys, expired ones included."""
        with self._lock:
            return list(self._entries)

    def tags_for(self, key: str) -> frozenset[str]:
        """Get the tags stored with ``key``."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.tags if entry is not None else frozenset()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_UNREADABLE = object()
