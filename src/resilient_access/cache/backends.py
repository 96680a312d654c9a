"""
Cache entries and persistence backends.

Provides the entry model with its eviction score, plus disk and null
persistence for high-priority entries.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from resilient_access.telemetry import get_logger

logger = get_logger("resilient_access.cache.backends")

_HOUR = 3600.0


class Priority(str, Enum):
    """Entry priority; critical entries are never evicted for capacity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]

    @property
    def persistent(self) -> bool:
        """Whether entries of this priority are written to persistence."""
        return self in (Priority.HIGH, Priority.CRITICAL)


_PRIORITY_WEIGHTS: dict[Priority, int] = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 4,
    Priority.CRITICAL: 10,
}


@dataclass
class CacheEntry:
    """A cache entry with metadata.

    Attributes:
        key: Exact-match key
        payload: Stored value, or codec bytes when ``compressed``
        created_at: Creation time (epoch seconds)
        ttl: Time-to-live in seconds
        priority: Eviction priority
        size: Stored size in bytes
        tags: Normalized tags (explicit plus hint-derived)
        compressed: Whether ``payload`` holds codec output
        last_accessed: Time of the last hit (epoch seconds)
        access_count: Number of hits, starting at 1 for the write
    """

    key: str
    payload: Any
    created_at: float
    ttl: float
    priority: Priority = Priority.MEDIUM
    size: int = 0
    tags: frozenset[str] = field(default_factory=frozenset)
    compressed: bool = False
    last_accessed: float = 0.0
    access_count: int = 1

    def __post_init__(self) -> None:
        if not self.last_accessed:
            self.last_accessed = self.created_at

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        """Check if the entry's age exceeds its TTL."""
        return now - self.created_at > self.ttl

    def touch(self, now: float) -> None:
        """Record a hit."""
        self.access_count += 1
        self.last_accessed = now

    def eviction_score(self, now: float) -> float:
        """Score used to rank eviction candidates (lower = evict first).

        ``priority_weight * (access_count / age_hours) / (1 + recency_hours)``
        """
        age_hours = max(0.0, now - self.created_at) / _HOUR
        frequency = self.access_count / age_hours if age_hours > 0 else float(self.access_count)
        recency_hours = max(0.0, now - self.last_accessed) / _HOUR
        return self.priority.weight * frequency * (1 / (1 + recency_hours))

    def to_record(self) -> dict[str, Any]:
        """Serialize for persistence."""
        payload = (
            base64.b64encode(self.payload).decode("ascii")
            if self.compressed
            else self.payload
        )
        return {
            "key": self.key,
            "payload": payload,
            "compressed": self.compressed,
            "created_at": self.created_at,
            "last_accessed": self.last_accessed,
            "access_count": self.access_count,
            "ttl": self.ttl,
            "priority": self.priority.value,
            "size": self.size,
            "tags": sorted(self.tags),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> CacheEntry:
        """Deserialize a persisted record."""
        compressed = bool(record.get("compressed", False))
        payload = record["payload"]
        if compressed:
            payload = base64.b64decode(payload)
        return cls(
            key=record["key"],
            payload=payload,
            created_at=float(record["created_at"]),
            ttl=float(record["ttl"]),
            priority=Priority(record.get("priority", "medium")),
            size=int(record.get("size", 0)),
            tags=frozenset(record.get("tags", [])),
            compressed=compressed,
            last_accessed=float(record.get("last_accessed", record["created_at"])),
            access_count=int(record.get("access_count", 1)),
        )


class CachePersistence(ABC):
    """Durable storage for high-priority cache entries."""

    @abstractmethod
    def save(self, entry: CacheEntry) -> None:
        """Write an entry (replacing any previous one with the same key)."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove an entry if present."""
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry."""
        raise NotImplementedError

    @abstractmethod
    def load_all(self) -> list[CacheEntry]:
        """Read every stored entry, expired or not."""
        raise NotImplementedError


class NullPersistence(CachePersistence):
    """Persistence that stores nothing."""

    def save(self, entry: CacheEntry) -> None:
        pass

    def delete(self, key: str) -> None:
        pass

    def clear(self) -> None:
        pass

    def load_all(self) -> list[CacheEntry]:
        return []


class DiskPersistence(CachePersistence):
    """JSON-file persistence, one file per key.

    Example:
        >>> persistence = DiskPersistence("~/.cache/resilient-access")
        >>> cache = AdaptiveCache(persistence=persistence)
        >>> cache.load_persisted()
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize disk persistence.

        Args:
            path: Directory for entry files (created if missing)
        """
        self._path = Path(path).expanduser()
        self._path.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def _key_to_path(self, key: str) -> Path:
        key_hash = hashlib.sha256(key.encode()).hexdigest()
        return self._path / f"{key_hash}.json"

    def save(self, entry: CacheEntry) -> None:
        path = self._key_to_path(entry.key)
        try:
            content = json.dumps(entry.to_record())
        except (TypeError, ValueError) as e:
            logger.warning("Entry is not JSON-serializable, not persisted", key=entry.key, error=str(e))
            return

        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            logger.warning("Cache persistence write failed", key=entry.key, error=str(e))
            tmp.unlink(missing_ok=True)

    def delete(self, key: str) -> None:
        self._key_to_path(key).unlink(missing_ok=True)

    def clear(self) -> None:
        for path in self._path.glob("*.json"):
            path.unlink(missing_ok=True)

    def load_all(self) -> list[CacheEntry]:
        entries = []
        for path in sorted(self._path.glob("*.json")):
            try:
                entries.append(CacheEntry.from_record(json.loads(path.read_text(encoding="utf-8"))))
            except (json.JSONDecodeError, KeyError, ValueError, OSError) as e:
                logger.warning("Skipping unreadable cache file", file=path.name, error=str(e))
        return entries
