"""
Cache keys and semantic hints.

Provides deterministic key generation and the descriptive tags used for
semantic (similar-item) lookups.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

CATEGORY_WEIGHT = 50
BRAND_WEIGHT = 30
ITEM_TYPE_WEIGHT = 20


def normalize_tag(tag: str) -> str:
    """Normalize a tag for storage and comparison."""
    return tag.strip().lower()


def normalize_tags(tags: Iterable[str]) -> frozenset[str]:
    """Normalize a collection of tags, dropping empty ones."""
    return frozenset(t for t in (normalize_tag(tag) for tag in tags) if t)


@dataclass(frozen=True)
class SemanticHints:
    """Descriptive context of a cached value.

    Two different literal keys about the same kind of item (same category,
    brand or item type) can share a cached result through these hints.

    Attributes:
        category: Data or product category (e.g. 'ebay-api', 'clothing')
        brand: Brand name
        item_type: Item type (e.g. 'sneakers')
    """

    category: str | None = None
    brand: str | None = None
    item_type: str | None = None

    def tags(self) -> frozenset[str]:
        """Tags derived from the hints (``category:x``, ``brand:y``, ``item_type:z``)."""
        tags = []
        if self.category:
            tags.append(f"category:{self.category}")
        if self.brand:
            tags.append(f"brand:{self.brand}")
        if self.item_type:
            tags.append(f"item_type:{self.item_type}")
        return normalize_tags(tags)

    def score(self, tags: frozenset[str]) -> int:
        """Weighted overlap between these hints and an entry's tags.

        Args:
            tags: Normalized tags of a cache entry

        Returns:
            Similarity score (category 50, brand 30, item type 20)
        """
        score = 0
        if self.category and normalize_tag(f"category:{self.category}") in tags:
            score += CATEGORY_WEIGHT
        if self.brand and normalize_tag(f"brand:{self.brand}") in tags:
            score += BRAND_WEIGHT
        if self.item_type and normalize_tag(f"item_type:{self.item_type}") in tags:
            score += ITEM_TYPE_WEIGHT
        return score

    @property
    def is_empty(self) -> bool:
        return not (self.category or self.brand or self.item_type)


def make_cache_key(namespace: str, *parts: Any, **params: Any) -> str:
    """Build a deterministic cache key.

    Positional parts are kept readable; keyword parameters are hashed so
    that argument order does not matter.

    Example:
        >>> key = make_cache_key("pricing", "nike", condition="new", limit=50)
        >>> key.startswith("pricing:nike:")
        True

    Args:
        namespace: Key prefix (usually the operation name)
        *parts: Readable key segments
        **params: Request parameters

    Returns:
        Cache key string
    """
    segments = [namespace, *(str(p) for p in parts)]
    if params:
        content = json.dumps(params, sort_keys=True, ensure_ascii=True, default=str)
        segments.append(hashlib.sha256(content.encode()).hexdigest()[:16])
    return ":".join(segments)
