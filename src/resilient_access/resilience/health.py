"""
Health tracking for resilient operations.

Keeps the last outcome per operation, error counts by category, and derives
an overall healthy/degraded/unhealthy view combined with circuit summaries.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from resilient_access.clock import Clock, SystemClock
from resilient_access.errors import classify_error

if TYPE_CHECKING:
    from resilient_access.resilience.circuit_breaker import CircuitBreakerRegistry

DEFAULT_MAX_AGE = 300.0


class HealthStatus(str, Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Last observed outcome of one operation.

    Attributes:
        name: Operation name
        healthy: Whether the last attempt succeeded
        latency: Seconds from the start of the call to this outcome
        error: Error message of a failed attempt
        checked_at: Wall-clock time of the observation
    """

    name: str
    healthy: bool
    latency: float = 0.0
    error: str | None = None
    checked_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "healthy": self.healthy,
            "latency_ms": round(self.latency * 1000, 3),
            "error": self.error,
            "checked_at": self.checked_at,
        }


@dataclass
class ErrorRate:
    """Error counters for one operation."""

    name: str
    error_rate: float
    errors: int
    requests: int
    categories: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "error_rate": self.error_rate,
            "errors": self.errors,
            "requests": self.requests,
            "categories": dict(self.categories),
        }


@dataclass
class SystemHealth:
    """Aggregated health of every tracked operation.

    Attributes:
        overall: Healthy when every operation is healthy, degraded when more
            than half are, unhealthy otherwise
        services: Last result per operation
        circuits: Circuit summaries (name, state, failures)
        error_rates: Error counters per operation
    """

    overall: HealthStatus
    services: list[HealthCheckResult] = field(default_factory=list)
    circuits: list[dict[str, Any]] = field(default_factory=list)
    error_rates: list[ErrorRate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "overall": self.overall.value,
            "services": [s.to_dict() for s in self.services],
            "circuits": list(self.circuits),
            "error_rates": [r.to_dict() for r in self.error_rates],
        }


@dataclass
class _Counters:
    requests: int = 0
    errors: int = 0
    last_error_at: float | None = None
    categories: dict[str, int] = field(default_factory=dict)


class HealthMonitor:
    """Tracks per-operation health fed by the executor.

    Example:
        >>> monitor = HealthMonitor()
        >>> monitor.record("ebay-search", healthy=True, latency=0.12)
        >>> monitor.system_health().overall
        <HealthStatus.HEALTHY: 'healthy'>
    """

    def __init__(
        self,
        clock: Clock | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._breakers = breakers
        self._results: dict[str, HealthCheckResult] = {}
        self._counters: dict[str, _Counters] = {}
        self._lock = threading.Lock()

    def record(
        self,
        name: str,
        healthy: bool,
        latency: float = 0.0,
        error: BaseException | str | None = None,
    ) -> None:
        """Record the outcome of one attempt.

        Args:
            name: Operation name
            healthy: Whether the attempt succeeded
            latency: Seconds since the call started
            error: The failure, counted by category when it is an exception
        """
        now = self._clock.time()
        with self._lock:
            self._results[name] = HealthCheckResult(
                name=name,
                healthy=healthy,
                latency=latency,
                error=str(error) if error is not None else None,
                checked_at=now,
            )
            counters = self._counters.setdefault(name, _Counters())
            counters.requests += 1
            if not healthy:
                counters.errors += 1
                counters.last_error_at = now
                category = (
                    classify_error(error).value
                    if isinstance(error, BaseException)
                    else "other"
                )
                counters.categories[category] = counters.categories.get(category, 0) + 1

    def get(self, name: str) -> HealthCheckResult | None:
        """Get the last result for an operation."""
        with self._lock:
            result = self._results.get(name)
            if result is None:
                return None
            return HealthCheckResult(**vars(result))

    def error_categories(self, name: str) -> dict[str, int]:
        """Get error counts by category for an operation."""
        with self._lock:
            counters = self._counters.get(name)
            return dict(counters.categories) if counters else {}

    def system_health(self) -> SystemHealth:
        """Aggregate every tracked operation into one view."""
        with self._lock:
            services = [HealthCheckResult(**vars(r)) for r in self._results.values()]
            error_rates = [
                ErrorRate(
                    name=name,
                    error_rate=c.errors / max(c.requests, 1),
                    errors=c.errors,
                    requests=c.requests,
                    categories=dict(c.categories),
                )
                for name, c in self._counters.items()
                if c.errors
            ]

        healthy = sum(1 for s in services if s.healthy)
        if not services or healthy == len(services):
            overall = HealthStatus.HEALTHY
        elif healthy / len(services) > 0.5:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.UNHEALTHY

        circuits: list[dict[str, Any]] = []
        if self._breakers is not None:
            circuits = [
                {"name": s.name, "state": s.state.value, "failures": s.failure_count}
                for s in self._breakers.snapshots()
            ]

        return SystemHealth(
            overall=overall,
            services=services,
            circuits=circuits,
            error_rates=error_rates,
        )

    def prune(self, max_age: float = DEFAULT_MAX_AGE) -> int:
        """Drop results older than ``max_age`` seconds.

        Returns:
            Number of results removed
        """
        cutoff = self._clock.time() - max_age
        with self._lock:
            stale = [n for n, r in self._results.items() if r.checked_at < cutoff]
            for name in stale:
                del self._results[name]
                self._counters.pop(name, None)
            return len(stale)

    def reset(self) -> None:
        """Forget all results and counters."""
        with self._lock:
            self._results.clear()
            self._counters.clear()
