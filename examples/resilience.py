#!/usr/bin/env python3
"""
Resilience patterns example.

This example demonstrates:
- Cache-aside fetches through the resilient executor
- Semantic cache hits and stale fallbacks
- Circuit breaker state and health reporting
- Proactive OAuth token refresh (when eBay credentials are set)

Usage:
    python examples/resilience.py

    # Optional token refresh demo
    export EBAY_CLIENT_ID="your-client-id"
    export EBAY_CLIENT_SECRET="your-client-secret"
    export EBAY_REFRESH_TOKEN="your-refresh-token"
    python examples/resilience.py
"""

import asyncio
import os
import random
import tempfile
import time

from resilient_access import (
    AccessConfig,
    AccessRuntime,
    CircuitBreakerConfig,
    ExecuteOptions,
    FileTokenStore,
    RetryPolicy,
    SemanticHints,
    SetOptions,
    TokenData,
    make_cache_key,
)
from resilient_access.errors import TransientNetworkError


class FlakyCatalog:
    """Simulated listing endpoint that fails a share of calls."""

    def __init__(self, failure_rate: float = 0.4) -> None:
        self.failure_rate = failure_rate
        self.calls = 0

    async def search(self, query: str) -> dict[str, object]:
        self.calls += 1
        await asyncio.sleep(0.01)
        if random.random() < self.failure_rate:
            raise TransientNetworkError("simulated upstream failure", status_code=503)
        return {"query": query, "results": [f"{query} #{i}" for i in range(3)]}


async def cached_fetch_demo(runtime: AccessRuntime) -> None:
    """Fetch through the cache and show where each value came from."""
    print("=== Cache-aside fetch ===")
    catalog = FlakyCatalog()

    for query, brand in [("air max", "nike"), ("air max", "nike"), ("dunk low", "nike")]:
        key = make_cache_key("ebay-search", query)
        try:
            result = await runtime.fetch(
                "ebay-search",
                key,
                lambda q=query: catalog.search(q),
                hints=SemanticHints(category="ebay-api", brand=brand),
            )
            print(f"  {query!r}: source={result.source.value} key={result.key}")
        except TransientNetworkError as e:
            print(f"  {query!r}: failed ({e})")

    print(f"  Upstream calls: {catalog.calls}")
    print(f"  Cache stats: {runtime.cache.stats().to_dict()}")
    print()


async def fallback_demo(runtime: AccessRuntime) -> None:
    """Serve a fallback when the upstream keeps failing."""
    print("=== Fallback ===")
    catalog = FlakyCatalog(failure_rate=1.0)

    result = await runtime.execute(
        "ebay-pricing",
        lambda: catalog.search("pricing"),
        ExecuteOptions(fallback=lambda: {"query": "pricing", "results": []}),
    )
    print(f"  Outcome: {result.outcome.value}, attempts: {result.attempts}")
    print(f"  Circuit: {runtime.breakers.get_state('ebay-pricing').value}")
    print()


async def stale_demo(runtime: AccessRuntime) -> None:
    """Serve an expired entry when the upstream is down."""
    print("=== Stale cache ===")
    key = make_cache_key("ebay-item", "v1|123456789")
    runtime.cache.set(key, {"price": 42.0}, SetOptions(ttl=0.05))
    await asyncio.sleep(0.1)

    catalog = FlakyCatalog(failure_rate=1.0)
    result = await runtime.fetch("ebay-item", key, lambda: catalog.search("item"))
    print(f"  Source: {result.source.value}, value: {result.value}")
    print()


async def token_refresh_demo(runtime: AccessRuntime) -> None:
    """Start a token manager from a refresh token in the environment."""
    refresh_token = os.getenv("EBAY_REFRESH_TOKEN")
    if not refresh_token:
        print("=== Token refresh (skipped: EBAY_REFRESH_TOKEN not set) ===")
        print()
        return

    print("=== Token refresh ===")
    with tempfile.TemporaryDirectory() as directory:
        manager = runtime.token_manager("demo-seller", FileTokenStore(directory))
        # An already-expired token makes the first get_valid_token refresh.
        await manager.start(
            TokenData(access_token="expired", refresh_token=refresh_token, expires_at=time.time())
        )
        try:
            access_token = await manager.get_valid_token()
            print(f"  Access token: {access_token[:12]}...")
        except Exception as e:
            print(f"  Refresh failed: {e}")
        print(f"  Status: {manager.get_status().to_dict()}")
        manager.close()
    print()


async def main() -> None:
    config = AccessConfig(
        breaker=CircuitBreakerConfig(failure_threshold=3, open_duration=30.0),
        retry=RetryPolicy(max_retries=2, base_delay=0.05, max_delay=0.2),
    )
    runtime = AccessRuntime(config)
    runtime.start()
    try:
        await cached_fetch_demo(runtime)
        await fallback_demo(runtime)
        await stale_demo(runtime)
        await token_refresh_demo(runtime)

        print("=== Health ===")
        print(f"  {runtime.system_health().to_dict()}")
    finally:
        await runtime.aclose()


if __name__ == "__main__":
    asyncio.run(main())
