"""
Compression codecs for large cache values.
"""

from __future__ import annotations

import json
import zlib
from abc import ABC, abstractmethod
from typing import Any


class CacheCodec(ABC):
    """Converts values to compact bytes and back."""

    @abstractmethod
    def compress(self, value: Any) -> bytes:
        """Compress a value.

        Raises:
            Exception: Any error; the cache then stores the value uncompressed
        """
        raise NotImplementedError

    @abstractmethod
    def decompress(self, data: bytes) -> Any:
        """Restore a value produced by ``compress``."""
        raise NotImplementedError


class ZlibJsonCodec(CacheCodec):
    """JSON serialization followed by zlib compression.

    Values must be JSON-serializable; anything else fails compression and is
    kept as-is by the cache.
    """

    def __init__(self, level: int = 6) -> None:
        self._level = level

    def compress(self, value: Any) -> bytes:
        payload = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        return zlib.compress(payload.encode("utf-8"), self._level)

    def decompress(self, data: bytes) -> Any:
        return json.loads(zlib.decompress(data).decode("utf-8"))


def estimate_size(value: Any) -> int:
    """Approximate in-memory size of a value as its JSON byte length."""
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    return len(json.dumps(value, default=str, ensure_ascii=False).encode("utf-8"))
