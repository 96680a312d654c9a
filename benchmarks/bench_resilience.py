#!/usr/bin/env python3
"""
Resilience and cache performance benchmarks.

Measures the per-call overhead of the executor, circuit registry and cache.
"""

import asyncio
import time
from typing import Any

from resilient_access.cache import AdaptiveCache, CacheConfig, SemanticHints, SetOptions
from resilient_access.resilience import (
    CircuitBreakerRegistry,
    ExecuteOptions,
    ResilientExecutor,
    RetryPolicy,
)


async def noop_operation() -> str:
    """No-op operation for overhead measurement."""
    return "result"


def _report(name: str, iterations: int, elapsed: float) -> dict[str, Any]:
    return {
        "name": name,
        "iterations": iterations,
        "elapsed_seconds": elapsed,
        "throughput_ops": iterations / elapsed,
        "latency_us": (elapsed / iterations) * 1_000_000,
    }


async def benchmark_baseline(iterations: int = 10000) -> dict[str, Any]:
    """Benchmark baseline async operation."""
    start = time.perf_counter()
    for _ in range(iterations):
        await noop_operation()
    return _report("Baseline (no resilience)", iterations, time.perf_counter() - start)


async def benchmark_circuit_registry(iterations: int = 10000) -> dict[str, Any]:
    """Benchmark circuit gating around a call."""
    breakers = CircuitBreakerRegistry()

    start = time.perf_counter()
    for _ in range(iterations):
        if breakers.allow("bench"):
            await noop_operation()
            breakers.record_success("bench")
    return _report("CircuitBreakerRegistry", iterations, time.perf_counter() - start)


async def benchmark_executor_minimal(iterations: int = 10000) -> dict[str, Any]:
    """Benchmark the executor without retries or validation."""
    executor = ResilientExecutor(CircuitBreakerRegistry(), default_retry=RetryPolicy.no_retry())

    start = time.perf_counter()
    for _ in range(iterations):
        await executor.execute("bench", noop_operation)
    return _report("ResilientExecutor (minimal)", iterations, time.perf_counter() - start)


async def benchmark_executor_validated(iterations: int = 10000) -> dict[str, Any]:
    """Benchmark the executor with a quality validator and fallback."""
    executor = ResilientExecutor(CircuitBreakerRegistry())
    options = ExecuteOptions(
        fallback=lambda: "fallback",
        quality_validator=lambda value: 1.0,
        timeout=5.0,
    )

    start = time.perf_counter()
    for _ in range(iterations):
        await executor.execute("bench", noop_operation, options)
    return _report("ResilientExecutor (validated)", iterations, time.perf_counter() - start)


async def benchmark_cache_hits(iterations: int = 10000) -> dict[str, Any]:
    """Benchmark exact cache hits."""
    cache = AdaptiveCache(CacheConfig())
    cache.set("item:1", {"price": 42})

    start = time.perf_counter()
    for _ in range(iterations):
        cache.get("item:1")
    return _report("AdaptiveCache (exact hit)", iterations, time.perf_counter() - start)


async def benchmark_cache_semantic(iterations: int = 1000, entries: int = 500) -> dict[str, Any]:
    """Benchmark semantic lookups over a populated cache."""
    cache = AdaptiveCache(CacheConfig())
    for i in range(entries):
        cache.set(
            f"search:{i}",
            {"rank": i},
            SetOptions(hints=SemanticHints(category="ebay-api", brand=f"brand-{i % 25}")),
        )
    hints = SemanticHints(category="ebay-api", brand="brand-7")

    start = time.perf_counter()
    for _ in range(iterations):
        cache.lookup("search:missing", hints=hints)
    return _report(
        f"AdaptiveCache (semantic, {entries} entries)", iterations, time.perf_counter() - start
    )


async def benchmark_concurrent_execution(
    concurrency: int = 100, iterations: int = 100
) -> dict[str, Any]:
    """Benchmark concurrent executor calls."""
    executor = ResilientExecutor(CircuitBreakerRegistry())

    async def task() -> None:
        for _ in range(iterations):
            await executor.execute("bench", noop_operation)

    start = time.perf_counter()
    await asyncio.gather(*[task() for _ in range(concurrency)])
    elapsed = time.perf_counter() - start

    return _report(f"Concurrent ({concurrency} tasks)", concurrency * iterations, elapsed)


async def run_benchmarks() -> None:
    """Run all benchmarks and print results."""
    print("=" * 60)
    print("Resilience Benchmarks")
    print("=" * 60)
    print()

    benchmarks = [
        benchmark_baseline,
        benchmark_circuit_registry,
        benchmark_executor_minimal,
        benchmark_executor_validated,
        benchmark_cache_hits,
        benchmark_cache_semantic,
    ]

    baseline_latency = 0.0

    for bench in benchmarks:
        result = await bench()
        if result["name"].startswith("Baseline"):
            baseline_latency = result["latency_us"]

        overhead = ""
        if baseline_latency > 0 and not result["name"].startswith("Baseline"):
            overhead_us = result["latency_us"] - baseline_latency
            overhead = f" (+{overhead_us:.2f}µs)"

        print(f"{result['name']}:")
        print(f"  Throughput: {result['throughput_ops']:.0f} ops/sec")
        print(f"  Latency: {result['latency_us']:.2f} µs/op{overhead}")
        print()

    print("Concurrent Execution:")
    for concurrency in [10, 50, 100]:
        result = await benchmark_concurrent_execution(concurrency=concurrency)
        print(f"  {concurrency} parallel: {result['throughput_ops']:.0f} ops/sec")


if __name__ == "__main__":
    asyncio.run(run_benchmarks())
