"""Tests for ResilientExecutor."""

from __future__ import annotations

import asyncio

import pytest

from resilient_access.clock import ManualClock
from resilient_access.errors import (
    AuthGrantError,
    CircuitOpenError,
    FallbackError,
    OperationTimeoutError,
    TransientNetworkError,
    ValidationError,
)
from resilient_access.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    ExecuteOptions,
    HealthMonitor,
    Outcome,
    ResilientExecutor,
    RetryPolicy,
)


class FlakyOperation:
    """Fails ``failures`` times, then returns ``value``."""

    def __init__(self, failures: int, value: object = "ok", error: Exception | None = None):
        self.failures = failures
        self.value = value
        self.error = error or TransientNetworkError("connection reset")
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class TestExecute:
    """Tests for the retry loop."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, executor: ResilientExecutor) -> None:
        """Test a healthy call."""
        result = await executor.execute("ebay-search", FlakyOperation(0, value=[1, 2]))
        assert result.success
        assert result.outcome == Outcome.SUCCESS
        assert result.value == [1, 2]
        assert result.attempts == 1
        assert result.unwrap() == [1, 2]

    @pytest.mark.asyncio
    async def test_attempts_equal_failures_plus_one(
        self, executor: ResilientExecutor, clock: ManualClock
    ) -> None:
        """Test k transient failures then success take k+1 attempts."""
        operation = FlakyOperation(2)
        result = await executor.execute("ebay-search", operation)

        assert result.outcome == Outcome.SUCCESS
        assert result.attempts == 3
        assert operation.calls == 3
        assert clock.sleeps == [1.0, 2.0]
        assert result.elapsed == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_sync_operation(self, executor: ResilientExecutor) -> None:
        """Test plain (non-async) callables."""
        result = await executor.execute("local", lambda: 42)
        assert result.value == 42

    @pytest.mark.asyncio
    async def test_non_retryable_stops_at_once(
        self, executor: ResilientExecutor, clock: ManualClock
    ) -> None:
        """Test grant failures are not retried."""
        error = AuthGrantError("invalid_grant", oauth_error="invalid_grant")
        operation = FlakyOperation(10, error=error)

        result = await executor.execute("token-refresh", operation)

        assert result.outcome == Outcome.FAILURE
        assert result.attempts == 1
        assert result.error is error
        assert clock.sleeps == []
        with pytest.raises(AuthGrantError):
            result.unwrap()

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, clock: ManualClock) -> None:
        """Test the last error is reported when retries run out."""
        executor = ResilientExecutor(
            CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=10), clock=clock),
            clock=clock,
            default_retry=RetryPolicy(max_retries=2, jitter=False),
        )
        operation = FlakyOperation(10)

        result = await executor.execute("ebay-search", operation)

        assert result.outcome == Outcome.FAILURE
        assert result.attempts == 3
        assert isinstance(result.error, TransientNetworkError)
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_circuit_opens_mid_retry(
        self, executor: ResilientExecutor, breakers: CircuitBreakerRegistry
    ) -> None:
        """Test an attempt rejected by the circuit ends the call."""
        operation = FlakyOperation(10)

        result = await executor.execute("ebay-search", operation)

        assert operation.calls == 3
        assert result.attempts == 3
        assert isinstance(result.error, CircuitOpenError)
        assert isinstance(result.error.__cause__, TransientNetworkError)
        assert result.circuit_state == CircuitState.OPEN
        assert breakers.get_state("ebay-search") == CircuitState.OPEN


class TestFallback:
    """Tests for fallback handling."""

    @pytest.mark.asyncio
    async def test_open_circuit_uses_fallback_without_primary(
        self, executor: ResilientExecutor, breakers: CircuitBreakerRegistry
    ) -> None:
        """Test no primary call is made while the circuit is open."""
        for _ in range(3):
            breakers.record_failure("ebay-search")
        operation = FlakyOperation(0)

        result = await executor.execute(
            "ebay-search", operation, ExecuteOptions(fallback=lambda: "cached")
        )

        assert operation.calls == 0
        assert result.outcome == Outcome.FALLBACK
        assert result.success
        assert result.fallback_used
        assert result.value == "cached"
        assert result.attempts == 0
        assert isinstance(result.error, CircuitOpenError)

    @pytest.mark.asyncio
    async def test_async_fallback(self, executor: ResilientExecutor) -> None:
        """Test awaitable fallbacks after a non-retryable failure."""

        async def fallback() -> str:
            return "from-fallback"

        result = await executor.execute(
            "ebay-item",
            FlakyOperation(1, error=ValueError("bad payload")),
            ExecuteOptions(fallback=fallback),
        )

        assert result.outcome == Outcome.FALLBACK
        assert result.value == "from-fallback"
        assert isinstance(result.error, ValueError)

    @pytest.mark.asyncio
    async def test_fallback_failure_reported_distinctly(
        self, executor: ResilientExecutor
    ) -> None:
        """Test a failing fallback yields FallbackError on unwrap."""

        def broken() -> None:
            raise RuntimeError("fallback store offline")

        result = await executor.execute(
            "ebay-item",
            FlakyOperation(1, error=ValueError("bad payload")),
            ExecuteOptions(fallback=broken),
        )

        assert result.outcome == Outcome.FAILURE
        assert not result.success
        assert result.fallback_used
        assert isinstance(result.fallback_error, RuntimeError)
        with pytest.raises(FallbackError) as exc_info:
            result.unwrap()
        assert isinstance(exc_info.value.primary_error, ValueError)

    @pytest.mark.asyncio
    async def test_fallback_does_not_touch_circuit(
        self, executor: ResilientExecutor, breakers: CircuitBreakerRegistry
    ) -> None:
        """Test fallback calls are not recorded on the circuit."""

        def broken() -> None:
            raise RuntimeError("offline")

        await executor.execute(
            "ebay-item",
            FlakyOperation(1, error=ValueError("bad")),
            ExecuteOptions(fallback=broken),
        )

        assert breakers.snapshot("ebay-item").failure_count == 1


class TestQuality:
    """Tests for result quality validation."""

    @pytest.mark.asyncio
    async def test_low_quality_on_last_attempt_prefers_fallback(
        self, executor: ResilientExecutor
    ) -> None:
        """Test the fallback replaces a low-quality final result."""
        options = ExecuteOptions(
            retry=RetryPolicy.no_retry(),
            fallback=lambda: {"title": "Nike Air Max 90", "price": 120},
            quality_validator=lambda v: 0.9 if v.get("price") else 0.2,
        )

        result = await executor.execute("ai-analysis", lambda: {"title": "?"}, options)

        assert result.outcome == Outcome.FALLBACK
        assert result.value["price"] == 120
        assert result.quality_score == pytest.approx(0.9)
        assert isinstance(result.error, ValidationError)
        assert result.error.score == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_low_quality_before_last_attempt_is_returned(
        self, executor: ResilientExecutor
    ) -> None:
        """Test low-quality results are returned while attempts remain."""
        options = ExecuteOptions(
            fallback=lambda: "fallback",
            quality_validator=lambda v: 0.1,
        )

        result = await executor.execute("ai-analysis", lambda: "weak", options)

        assert result.outcome == Outcome.SUCCESS
        assert result.value == "weak"
        assert result.quality_score == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_threshold_is_configurable(self, executor: ResilientExecutor) -> None:
        """Test the threshold comes from the options."""
        options = ExecuteOptions(
            retry=RetryPolicy.no_retry(),
            fallback=lambda: "fallback",
            quality_validator=lambda v: 0.5,
            quality_threshold=0.4,
        )

        result = await executor.execute("ai-analysis", lambda: "good-enough", options)

        assert result.outcome == Outcome.SUCCESS

    @pytest.mark.asyncio
    async def test_validator_error_scores_zero(self, executor: ResilientExecutor) -> None:
        """Test a raising validator counts as low quality instead of escaping."""

        def validator(value: dict[str, float]) -> float:
            return value["confidence"]

        options = ExecuteOptions(
            retry=RetryPolicy.no_retry(),
            fallback=lambda: "fb",
            quality_validator=validator,
        )

        result = await executor.execute("ai-analysis", lambda: {}, options)

        assert result.outcome == Outcome.FALLBACK
        assert result.value == "fb"
        assert result.quality_score == 0.0
        assert isinstance(result.error, ValidationError)
        assert executor.breakers.get_state("ai-analysis") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_validator_error_without_fallback(self, executor: ResilientExecutor) -> None:
        """Test the primary value is returned when there is no fallback."""

        def validator(value: object) -> float:
            raise KeyError("confidence")

        options = ExecuteOptions(retry=RetryPolicy.no_retry(), quality_validator=validator)

        result = await executor.execute("ai-analysis", lambda: "raw", options)

        assert result.outcome == Outcome.SUCCESS
        assert result.value == "raw"
        assert result.quality_score == 0.0


class TestTimeoutAndCancel:
    """Tests for per-attempt timeouts and cancellation."""

    @pytest.mark.asyncio
    async def test_timeout(self, executor: ResilientExecutor) -> None:
        """Test slow attempts become OperationTimeoutError."""

        async def slow() -> str:
            await asyncio.sleep(1.0)
            return "late"

        result = await executor.execute(
            "ebay-search",
            slow,
            ExecuteOptions(retry=RetryPolicy.no_retry(), timeout=0.01),
        )

        assert result.outcome == Outcome.FAILURE
        assert isinstance(result.error, OperationTimeoutError)
        assert result.error.operation == "ebay-search"

    @pytest.mark.asyncio
    async def test_cancel_releases_half_open_slot(
        self,
        executor: ResilientExecutor,
        breakers: CircuitBreakerRegistry,
        clock: ManualClock,
    ) -> None:
        """Test a cancelled trial call gives its slot back."""
        for _ in range(3):
            breakers.record_failure("ebay-search")
        clock.advance(60)
        started = asyncio.Event()

        async def hang() -> None:
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(executor.execute("ebay-search", hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breakers.get_state("ebay-search") == CircuitState.HALF_OPEN
        assert breakers.allow("ebay-search")


class TestHealthFeed:
    """Tests for the health monitor feed."""

    @pytest.mark.asyncio
    async def test_attempts_recorded(
        self, executor: ResilientExecutor, health: HealthMonitor
    ) -> None:
        """Test each attempt updates the monitor."""
        await executor.execute("ebay-search", FlakyOperation(1))

        result = health.get("ebay-search")
        assert result is not None
        assert result.healthy
        assert health.error_categories("ebay-search") == {"network": 1}

    @pytest.mark.asyncio
    async def test_to_dict(self, executor: ResilientExecutor) -> None:
        """Test result serialization."""
        result = await executor.execute("ebay-search", FlakyOperation(0))
        data = result.to_dict()
        assert data["outcome"] == "success"
        assert data["attempts"] == 1
        assert data["circuit_state"] == "closed"
