"""
Process runtime wiring the resilience components together.

``AccessRuntime`` owns one clock, circuit registry, health monitor,
executor, cache and change notifier, and offers a cache-aside ``fetch``.
Construct it directly and pass it around, or use ``init()`` /
``get_runtime()`` / ``shutdown()`` for a process-wide instance.
"""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from resilient_access.auth.manager import TokenLifecycleManager
from resilient_access.auth.notifier import ChangeNotifier
from resilient_access.auth.transport import HttpRefreshTransport
from resilient_access.cache.backends import DiskPersistence
from resilient_access.cache.manager import AdaptiveCache, LookupSource, SetOptions
from resilient_access.clock import Clock, SystemClock
from resilient_access.config import AccessConfig
from resilient_access.resilience.circuit_breaker import CircuitBreakerRegistry
from resilient_access.resilience.executor import (
    ExecuteOptions,
    OperationResult,
    Outcome,
    ResilientExecutor,
)
from resilient_access.resilience.health import HealthMonitor, SystemHealth
from resilient_access.telemetry import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from resilient_access.auth.store import TokenStore
    from resilient_access.auth.transport import RefreshTransport
    from resilient_access.cache.backends import CachePersistence
    from resilient_access.cache.key import SemanticHints

logger = get_logger("resilient_access.runtime")

T = TypeVar("T")


class FetchSource(str, Enum):
    """Where a fetched value came from."""

    CACHE = "cache"
    SEMANTIC_CACHE = "semantic_cache"
    UPSTREAM = "upstream"
    FALLBACK = "fallback"
    STALE_CACHE = "stale_cache"


_LOOKUP_SOURCES = {
    LookupSource.EXACT: FetchSource.CACHE,
    LookupSource.SEMANTIC: FetchSource.SEMANTIC_CACHE,
    LookupSource.STALE: FetchSource.STALE_CACHE,
}


@dataclass
class FetchResult(Generic[T]):
    """Result of ``AccessRuntime.fetch``.

    Attributes:
        value: The value
        source: Where the value came from
        key: Cache key of the value (for semantic hits, the matched entry)
        result: Executor result when the upstream was called
        cached: Whether the value was written to the cache
    """

    value: T
    source: FetchSource
    key: str
    result: OperationResult[T] | None = None
    cached: bool = False

    @property
    def from_cache(self) -> bool:
        return self.source in (
            FetchSource.CACHE,
            FetchSource.SEMANTIC_CACHE,
            FetchSource.STALE_CACHE,
        )


class AccessRuntime:
    """Shared resilience components for one process.

    Example:
        >>> runtime = AccessRuntime(AccessConfig.from_yaml("access.yaml"))
        >>> listing = await runtime.fetch(
        ...     "ebay-item",
        ...     make_cache_key("ebay-item", item_id),
        ...     lambda: client.get_item(item_id),
        ...     hints=SemanticHints(category="ebay-api", brand="nike"),
        ... )
        >>> listing.value, listing.source
    """

    def __init__(
        self,
        config: AccessConfig | None = None,
        *,
        clock: Clock | None = None,
        persistence: CachePersistence | None = None,
    ) -> None:
        """Initialize the runtime.

        Args:
            config: Aggregate configuration
            clock: Shared time source
            persistence: Cache persistence (defaults to ``config.cache_dir`` on disk)
        """
        self._config = config or AccessConfig()
        self._clock = clock or SystemClock()
        self._breakers = CircuitBreakerRegistry(self._config.breaker, clock=self._clock)
        self._health = HealthMonitor(clock=self._clock, breakers=self._breakers)
        self._executor = ResilientExecutor(
            self._breakers,
            clock=self._clock,
            health=self._health,
            default_retry=self._config.retry,
        )
        if persistence is None and self._config.cache_dir:
            persistence = DiskPersistence(self._config.cache_dir)
        self._cache = AdaptiveCache(self._config.cache, clock=self._clock, persistence=persistence)
        self._notifier = ChangeNotifier()
        self._managers: list[TokenLifecycleManager] = []
        self._owned_transports: list[RefreshTransport] = []
        self._started = False

    @property
    def config(self) -> AccessConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def health(self) -> HealthMonitor:
        return self._health

    @property
    def executor(self) -> ResilientExecutor:
        return self._executor

    @property
    def cache(self) -> AdaptiveCache:
        return self._cache

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    def start(self) -> None:
        """Load persisted cache entries and arm cache maintenance.

        Needs a running event loop when using the system clock.
        """
        if self._started:
            return
        self._cache.load_persisted()
        self._cache.start_maintenance()
        self._started = True

    async def execute(
        self,
        name: str,
        operation: Callable[[], Awaitable[T] | T],
        options: ExecuteOptions | None = None,
    ) -> OperationResult[T]:
        """Shortcut for ``executor.execute``."""
        return await self._executor.execute(name, operation, self._options(options))

    async def fetch(
        self,
        name: str,
        key: str,
        operation: Callable[[], Awaitable[T] | T],
        *,
        hints: SemanticHints | None = None,
        set_options: SetOptions | None = None,
        options: ExecuteOptions | None = None,
        allow_stale: bool = True,
    ) -> FetchResult[T]:
        """Cache-aside read through the resilient executor.

        Order: live cache entry (exact, then semantic), upstream call,
        fallback, expired cache entry.

        Args:
            name: Operation name (selects the circuit)
            key: Cache key
            operation: Upstream call
            hints: Semantic hints for lookup and for tagging the stored value
            set_options: Options for storing the upstream value
            options: Executor options
            allow_stale: Serve an expired entry when the upstream fails

        Returns:
            FetchResult naming the value's source

        Raises:
            AccessError: The upstream failed and nothing could be served
        """
        # The miss is counted once the outcome is known, so a stale serve is one hit
        cached = self._cache.lookup(key, hints=hints, count_miss=False)
        if cached.hit:
            return FetchResult(
                value=cached.value,
                source=_LOOKUP_SOURCES[cached.source],
                key=cached.key or key,
            )

        result = await self._executor.execute(name, operation, self._options(options))

        if result.outcome != Outcome.FAILURE or not allow_stale:
            self._cache.record_miss()

        if result.outcome == Outcome.SUCCESS:
            store_options = set_options or SetOptions()
            if hints is not None and store_options.hints is None:
                store_options = dataclasses.replace(store_options, hints=hints)
            stored = self._cache.set(key, result.value, store_options)
            return FetchResult(
                value=result.value,  # type: ignore[arg-type]
                source=FetchSource.UPSTREAM,
                key=key,
                result=result,
                cached=stored,
            )

        if result.outcome == Outcome.FALLBACK:
            return FetchResult(
                value=result.value,  # type: ignore[arg-type]
                source=FetchSource.FALLBACK,
                key=key,
                result=result,
            )

        if allow_stale:
            stale = self._cache.lookup(key, allow_stale=True)
            if stale.hit:
                logger.warning(
                    "Upstream failed, serving cached value",
                    operation=name,
                    key=key,
                    error=str(result.error),
                )
                return FetchResult(
                    value=stale.value,
                    source=_LOOKUP_SOURCES[stale.source],
                    key=key,
                    result=result,
                )

        return FetchResult(value=result.unwrap(), source=FetchSource.UPSTREAM, key=key)

    def token_manager(
        self,
        principal: str,
        store: TokenStore,
        transport: RefreshTransport | None = None,
    ) -> TokenLifecycleManager:
        """Create a token manager wired to this runtime.

        Args:
            principal: Credential owner
            store: Token storage
            transport: Refresh transport (an eBay HTTP transport by default)

        Returns:
            TokenLifecycleManager sharing this runtime's executor and notifier
        """
        if transport is None:
            transport = HttpRefreshTransport(clock=self._clock)
            self._owned_transports.append(transport)
        manager = TokenLifecycleManager(
            principal,
            store,
            transport,
            self._executor,
            clock=self._clock,
            notifier=self._notifier,
            config=self._config.refresh,
        )
        self._managers.append(manager)
        return manager

    def system_health(self) -> SystemHealth:
        return self._health.system_health()

    def status(self) -> dict[str, Any]:
        """Get a combined status snapshot."""
        return {
            "health": self._health.system_health().to_dict(),
            "cache": self._cache.stats().to_dict(),
            "tokens": [m.get_status().to_dict() for m in self._managers],
        }

    def close(self) -> None:
        """Stop token managers and cache maintenance."""
        for manager in self._managers:
            manager.close()
        self._managers.clear()
        self._cache.shutdown()
        self._started = False

    async def aclose(self) -> None:
        """Close, and release transports created by ``token_manager``."""
        self.close()
        for transport in self._owned_transports:
            await transport.aclose()
        self._owned_transports.clear()

    def _options(self, options: ExecuteOptions | None) -> ExecuteOptions:
        """Fill in the configured quality threshold where the caller left it unset."""
        if options is None:
            return ExecuteOptions(quality_threshold=self._config.quality_threshold)
        if options.quality_threshold is None:
            return dataclasses.replace(options, quality_threshold=self._config.quality_threshold)
        return options


_runtime: AccessRuntime | None = None
_runtime_lock = threading.Lock()


def init(config: AccessConfig | None = None, **kwargs: Any) -> AccessRuntime:
    """Create the process-wide runtime, replacing (and closing) any previous one.

    Args:
        config: Aggregate configuration
        **kwargs: Passed to ``AccessRuntime``

    Returns:
        The new runtime
    """
    global _runtime
    with _runtime_lock:
        if _runtime is not None:
            _runtime.close()
        _runtime = AccessRuntime(config, **kwargs)
        logger.info("Runtime initialized")
        return _runtime


def get_runtime() -> AccessRuntime:
    """Get the process-wide runtime, creating a default one on first use."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = AccessRuntime()
        return _runtime


def shutdown() -> None:
    """Close and forget the process-wide runtime."""
    global _runtime
    with _runtime_lock:
        if _runtime is not None:
            _runtime.close()
            _runtime = None
