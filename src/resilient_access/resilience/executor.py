"""
Resilient executor: circuit gating, timeout, retry with backoff, fallback
and result-quality checks behind one call.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from resilient_access.clock import Clock, SystemClock
from resilient_access.errors import (
    CircuitOpenError,
    FallbackError,
    OperationTimeoutError,
    ValidationError,
    classify_error,
)
from resilient_access.resilience.circuit_breaker import (
    CircuitBreakerRegistry,
    CircuitState,
)
from resilient_access.resilience.retry import RetryPolicy
from resilient_access.telemetry import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from resilient_access.resilience.health import HealthMonitor

T = TypeVar("T")

logger = get_logger("resilient_access.resilience.executor")

DEFAULT_QUALITY_THRESHOLD = 0.6


class Outcome(str, Enum):
    """Terminal outcome of a resilient call."""

    SUCCESS = "success"
    FALLBACK = "fallback"
    FAILURE = "failure"


@dataclass(frozen=True)
class ExecuteOptions:
    """Per-call options for ``ResilientExecutor.execute``.

    Attributes:
        retry: Retry policy (executor default when None)
        fallback: Zero-argument callable used when the primary path fails
        quality_validator: Maps a result to a score in [0, 1]
        timeout: Per-attempt timeout in seconds
        quality_threshold: Scores below this prefer the fallback on the last attempt
            (``DEFAULT_QUALITY_THRESHOLD`` when None)
    """

    retry: RetryPolicy | None = None
    fallback: Callable[[], Awaitable[Any] | Any] | None = None
    quality_validator: Callable[[Any], float] | None = None
    timeout: float | None = None
    quality_threshold: float | None = None


@dataclass
class OperationResult(Generic[T]):
    """Outcome of one ``execute`` call.

    Attributes:
        name: Operation name
        success: True for a primary or fallback success
        value: Result value (primary or fallback)
        error: Last primary error, if the primary path failed
        fallback_error: The fallback's own error, if it also failed
        attempts: Physical attempts of the primary operation
        elapsed: Seconds spent in the call, including backoff sleeps
        fallback_used: Whether the fallback was invoked
        circuit_state: Circuit state when the call finished
        quality_score: Score of the returned value, when a validator ran
        outcome: success, fallback or failure
    """

    name: str
    success: bool
    value: T | None = None
    error: BaseException | None = None
    fallback_error: BaseException | None = None
    attempts: int = 0
    elapsed: float = 0.0
    fallback_used: bool = False
    circuit_state: CircuitState = CircuitState.CLOSED
    quality_score: float | None = None
    outcome: Outcome = Outcome.FAILURE

    def unwrap(self) -> T:
        """Return the value or raise the typed error.

        Raises:
            FallbackError: The fallback failed after the primary failed
            Exception: The primary error when no fallback ran
        """
        if self.success:
            return self.value  # type: ignore[return-value]
        if self.fallback_error is not None:
            raise FallbackError(self.name, self.error, self.fallback_error)
        if self.error is not None:
            raise self.error
        raise RuntimeError(f"Operation '{self.name}' failed without an error")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (without the value)."""
        return {
            "name": self.name,
            "success": self.success,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "elapsed": self.elapsed,
            "fallback_used": self.fallback_used,
            "circuit_state": self.circuit_state.value,
            "quality_score": self.quality_score,
            "error": str(self.error) if self.error else None,
            "fallback_error": str(self.fallback_error) if self.fallback_error else None,
        }


async def _resolve(value: Awaitable[T] | T) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


class ResilientExecutor:
    """Executes operations behind named circuit breakers.

    Every physical attempt is gated by the circuit for ``name`` and recorded
    back into it; fallback calls never touch the circuit.

    Example:
        >>> executor = ResilientExecutor(CircuitBreakerRegistry())
        >>> result = await executor.execute(
        ...     "ebay-search",
        ...     lambda: client.search("nike air max"),
        ...     ExecuteOptions(fallback=lambda: [], timeout=10.0),
        ... )
        >>> items = result.unwrap()
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry | None = None,
        clock: Clock | None = None,
        health: HealthMonitor | None = None,
        default_retry: RetryPolicy | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            breakers: Circuit registry shared with other consumers
            clock: Clock used for backoff sleeps and elapsed time
            health: Optional monitor fed with every attempt
            default_retry: Policy used when a call does not supply one
        """
        self._clock = clock or SystemClock()
        self._breakers = breakers or CircuitBreakerRegistry(clock=self._clock)
        self._health = health
        self._default_retry = default_retry or RetryPolicy.default()

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def health(self) -> HealthMonitor | None:
        return self._health

    @property
    def default_retry(self) -> RetryPolicy:
        return self._default_retry

    async def execute(
        self,
        name: str,
        operation: Callable[[], Awaitable[T] | T],
        options: ExecuteOptions | None = None,
    ) -> OperationResult[T]:
        """Run ``operation`` with circuit gating, retry and fallback.

        Args:
            name: Operation name (selects the circuit)
            operation: Zero-argument callable returning a value or awaitable
            options: Per-call options

        Returns:
            OperationResult with exactly one terminal outcome
        """
        options = options or ExecuteOptions()
        policy = options.retry or self._default_retry
        threshold = (
            DEFAULT_QUALITY_THRESHOLD
            if options.quality_threshold is None
            else options.quality_threshold
        )
        start = self._clock.monotonic()
        attempts = 0
        last_error: BaseException | None = None

        while attempts < policy.max_attempts:
            if not self._breakers.allow(name):
                rejection = CircuitOpenError(name, self._breakers.time_until_retry(name))
                if last_error is not None:
                    rejection.__cause__ = last_error
                logger.warning(
                    "Circuit rejected attempt",
                    operation=name,
                    attempts=attempts,
                    has_fallback=options.fallback is not None,
                )
                last_error = rejection
                break

            attempts += 1
            try:
                value = await self._attempt(name, operation, options.timeout)
            except asyncio.CancelledError:
                self._breakers.release(name)
                raise
            except Exception as exc:
                self._breakers.record_failure(name)
                self._record_health(name, start, exc)
                last_error = exc

                if attempts < policy.max_attempts and policy.is_retryable(exc):
                    delay = policy.delay_for(attempts, exc)
                    logger.info(
                        "Retrying operation",
                        operation=name,
                        attempt=attempts,
                        delay=round(delay, 3),
                        error_class=classify_error(exc).value,
                        error=str(exc),
                    )
                    await self._clock.sleep(delay)
                    continue

                logger.warning(
                    "Operation failed",
                    operation=name,
                    attempts=attempts,
                    retryable=policy.is_retryable(exc),
                    error_class=classify_error(exc).value,
                    error=str(exc),
                )
                break

            self._breakers.record_success(name)
            self._record_health(name, start, None)

            score = self._score(name, options, value)
            if (
                score is not None
                and score < threshold
                and attempts >= policy.max_attempts
                and options.fallback is not None
            ):
                logger.info(
                    "Low quality result, preferring fallback",
                    operation=name,
                    score=score,
                    threshold=threshold,
                )
                last_error = ValidationError(
                    f"Result quality {score:.2f} below {threshold:.2f}",
                    score=score,
                    threshold=threshold,
                )
                break

            if attempts > 1:
                logger.info("Operation recovered", operation=name, attempts=attempts)
            return OperationResult(
                name=name,
                success=True,
                value=value,
                attempts=attempts,
                elapsed=self._clock.monotonic() - start,
                circuit_state=self._breakers.get_state(name),
                quality_score=score,
                outcome=Outcome.SUCCESS,
            )

        return await self._finish_with_fallback(
            name, options, start, attempts, last_error
        )

    async def _attempt(
        self,
        name: str,
        operation: Callable[[], Awaitable[T] | T],
        timeout: float | None,
    ) -> T:
        result = operation()
        if not inspect.isawaitable(result):
            return result
        if timeout is None:
            return await result
        try:
            return await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(timeout, name) from exc

    async def _finish_with_fallback(
        self,
        name: str,
        options: ExecuteOptions,
        start: float,
        attempts: int,
        last_error: BaseException | None,
    ) -> OperationResult[Any]:
        if options.fallback is None:
            return OperationResult(
                name=name,
                success=False,
                error=last_error,
                attempts=attempts,
                elapsed=self._clock.monotonic() - start,
                circuit_state=self._breakers.get_state(name),
                outcome=Outcome.FAILURE,
            )

        try:
            value = await _resolve(options.fallback())
        except Exception as exc:
            logger.error(
                "Fallback failed",
                operation=name,
                primary_error=str(last_error) if last_error else None,
                error=str(exc),
            )
            return OperationResult(
                name=name,
                success=False,
                error=last_error,
                fallback_error=exc,
                attempts=attempts,
                elapsed=self._clock.monotonic() - start,
                fallback_used=True,
                circuit_state=self._breakers.get_state(name),
                outcome=Outcome.FAILURE,
            )

        logger.info("Served fallback", operation=name, attempts=attempts)
        return OperationResult(
            name=name,
            success=True,
            value=value,
            error=last_error,
            attempts=attempts,
            elapsed=self._clock.monotonic() - start,
            fallback_used=True,
            circuit_state=self._breakers.get_state(name),
            quality_score=self._score(name, options, value),
            outcome=Outcome.FALLBACK,
        )

    def _score(self, name: str, options: ExecuteOptions, value: Any) -> float | None:
        """Run the quality validator; a validator error scores 0.0."""
        if options.quality_validator is None:
            return None
        try:
            return float(options.quality_validator(value))
        except Exception as e:
            logger.warning(
                "Quality validator failed, scoring result as 0",
                operation=name,
                error=str(e),
            )
            return 0.0

    def _record_health(
        self, name: str, start: float, error: BaseException | None
    ) -> None:
        if self._health is None:
            return
        self._health.record(
            name,
            healthy=error is None,
            latency=self._clock.monotonic() - start,
            error=error,
        )
