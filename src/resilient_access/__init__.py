"""resilient-access: reliable calls to flaky third-party endpoints.

Circuit-breaker-protected retries, proactive OAuth token refresh and an
adaptive cache, wired together by ``AccessRuntime``.
"""
from __future__ import annotations

from resilient_access._features import HAS_KEYRING, require_extra
from resilient_access.auth import (
    ChangeNotifier,
    FileTokenStore,
    HttpRefreshTransport,
    KeyringTokenStore,
    MemoryTokenStore,
    RefreshConfig,
    RefreshResult,
    RefreshStatus,
    RefreshTransport,
    TokenData,
    TokenEvent,
    TokenEventType,
    TokenLifecycleManager,
    TokenStore,
)
from resilient_access.cache import (
    AdaptiveCache,
    CacheConfig,
    DiskPersistence,
    Priority,
    SemanticHints,
    SetOptions,
    make_cache_key,
)
from resilient_access.clock import Clock, ManualClock, SystemClock
from resilient_access.config import AccessConfig
from resilient_access.errors import (
    AccessError,
    AuthGrantError,
    CapacityError,
    CircuitOpenError,
    ErrorClass,
    FallbackError,
    OperationTimeoutError,
    RateLimitError,
    StorageError,
    TransientNetworkError,
    ValidationError,
)
from resilient_access.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    ExecuteOptions,
    HealthMonitor,
    OperationResult,
    Outcome,
    ResilientExecutor,
    RetryPolicy,
)
from resilient_access.runtime import (
    AccessRuntime,
    FetchResult,
    FetchSource,
    get_runtime,
    init,
    shutdown,
)

__version__ = "0.1.0"

__all__ = [
    # Runtime
    "AccessConfig",
    "AccessRuntime",
    "FetchResult",
    "FetchSource",
    "get_runtime",
    "init",
    "shutdown",
    # Clock
    "Clock",
    "ManualClock",
    "SystemClock",
    # Resilience
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ExecuteOptions",
    "HealthMonitor",
    "OperationResult",
    "Outcome",
    "ResilientExecutor",
    "RetryPolicy",
    # Cache
    "AdaptiveCache",
    "CacheConfig",
    "DiskPersistence",
    "Priority",
    "SemanticHints",
    "SetOptions",
    "make_cache_key",
    # Auth
    "ChangeNotifier",
    "FileTokenStore",
    "HttpRefreshTransport",
    "KeyringTokenStore",
    "MemoryTokenStore",
    "RefreshConfig",
    "RefreshResult",
    "RefreshStatus",
    "RefreshTransport",
    "TokenData",
    "TokenEvent",
    "TokenEventType",
    "TokenLifecycleManager",
    "TokenStore",
    # Errors
    "AccessError",
    "AuthGrantError",
    "CapacityError",
    "CircuitOpenError",
    "ErrorClass",
    "FallbackError",
    "OperationTimeoutError",
    "RateLimitError",
    "StorageError",
    "TransientNetworkError",
    "ValidationError",
    # Feature flags
    "HAS_KEYRING",
    "require_extra",
    # Version
    "__version__",
]
