"""Root pytest fixtures for resilient-access tests."""

from __future__ import annotations

import pytest

from resilient_access.auth import MemoryTokenStore, RefreshTransport, TokenData
from resilient_access.cache import AdaptiveCache, CacheConfig
from resilient_access.clock import ManualClock
from resilient_access.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    HealthMonitor,
    ResilientExecutor,
    RetryPolicy,
)


class FakeRefreshTransport(RefreshTransport):
    """Scripted refresh transport.

    Each ``exchange`` pops the next scripted outcome: an exception is raised,
    anything else is returned. With an empty script a token valid for one
    hour is issued.
    """

    def __init__(self, clock: ManualClock, *outcomes: object) -> None:
        self._clock = clock
        self.outcomes = list(outcomes)
        self.calls: list[str] = []
        self.gate: object = None

    async def exchange(self, refresh_token: str) -> TokenData:
        self.calls.append(refresh_token)
        if self.gate is not None:
            await self.gate.wait()  # type: ignore[attr-defined]
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome  # type: ignore[return-value]
        return make_token(self._clock, expires_in=3600, access_token=f"access-{len(self.calls)}")


def make_token(
    clock: ManualClock,
    expires_in: float = 3600,
    access_token: str = "access-0",
    refresh_token: str | None = "refresh-0",
) -> TokenData:
    """Build a token that expires ``expires_in`` seconds from the clock's now."""
    now = clock.time()
    return TokenData(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + expires_in,
        updated_at=now,
    )


@pytest.fixture
def clock() -> ManualClock:
    """Deterministic clock."""
    return ManualClock()


@pytest.fixture
def breakers(clock: ManualClock) -> CircuitBreakerRegistry:
    """Circuit registry with a threshold of 3 and a 60s open duration."""
    return CircuitBreakerRegistry(
        CircuitBreakerConfig(failure_threshold=3, open_duration=60.0, half_open_max_requests=1),
        clock=clock,
    )


@pytest.fixture
def health(clock: ManualClock, breakers: CircuitBreakerRegistry) -> HealthMonitor:
    return HealthMonitor(clock=clock, breakers=breakers)


@pytest.fixture
def executor(
    clock: ManualClock, breakers: CircuitBreakerRegistry, health: HealthMonitor
) -> ResilientExecutor:
    """Executor without jitter so delays are exact."""
    return ResilientExecutor(
        breakers,
        clock=clock,
        health=health,
        default_retry=RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0, jitter=False),
    )


@pytest.fixture
def cache(clock: ManualClock) -> AdaptiveCache:
    """Small cache (10 KB budget, no compression)."""
    return AdaptiveCache(
        CacheConfig(max_bytes=10_000, compression_threshold=1_000_000),
        clock=clock,
    )


@pytest.fixture
def token_store() -> MemoryTokenStore:
    return MemoryTokenStore()
