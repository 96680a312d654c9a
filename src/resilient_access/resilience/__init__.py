"""
Resilience layer - circuit breakers, retry, resilient execution and health.

- CircuitBreakerRegistry: Per-operation Closed/Open/Half-Open state machines
- RetryPolicy: Exponential backoff with jitter over classified errors
- ResilientExecutor: Circuit gating, timeout, retry, fallback and quality checks
- HealthMonitor: Per-operation outcomes and overall system health
"""

from resilient_access.resilience.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitSnapshot,
    CircuitState,
)
from resilient_access.resilience.executor import (
    DEFAULT_QUALITY_THRESHOLD,
    ExecuteOptions,
    OperationResult,
    Outcome,
    ResilientExecutor,
)
from resilient_access.resilience.health import (
    ErrorRate,
    HealthCheckResult,
    HealthMonitor,
    HealthStatus,
    SystemHealth,
)
from resilient_access.resilience.retry import RetryPolicy

__all__ = [
    # Circuit breaker
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitSnapshot",
    "CircuitState",
    # Executor
    "DEFAULT_QUALITY_THRESHOLD",
    "ExecuteOptions",
    "OperationResult",
    "Outcome",
    "ResilientExecutor",
    # Health
    "ErrorRate",
    "HealthCheckResult",
    "HealthMonitor",
    "HealthStatus",
    "SystemHealth",
    # Retry
    "RetryPolicy",
]
