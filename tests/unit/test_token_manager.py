"""Tests for TokenLifecycleManager."""

from __future__ import annotations

import asyncio

import pytest

from resilient_access.auth import (
    ChangeNotifier,
    MemoryTokenStore,
    RefreshConfig,
    RefreshState,
    TokenData,
    TokenEvent,
    TokenEventType,
    TokenLifecycleManager,
)
from resilient_access.clock import ManualClock
from resilient_access.errors import (
    AuthGrantError,
    CircuitOpenError,
    StorageError,
    TransientNetworkError,
)
from resilient_access.resilience import CircuitState, ResilientExecutor, RetryPolicy
from tests.conftest import FakeRefreshTransport, make_token

PRINCIPAL = "seller@example.com"


class FlakyStore(MemoryTokenStore):
    """Memory store whose saves can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_saves = False

    async def save(self, principal: str, token: TokenData) -> None:
        if self.fail_saves:
            raise StorageError("disk full", principal=principal)
        await super().save(principal, token)


def _manager(
    clock: ManualClock,
    store: MemoryTokenStore,
    transport: FakeRefreshTransport,
    executor: ResilientExecutor,
    *,
    notifier: ChangeNotifier | None = None,
    **config: object,
) -> TokenLifecycleManager:
    config.setdefault("exchange_retry", RetryPolicy.no_retry())
    return TokenLifecycleManager(
        PRINCIPAL,
        store,
        transport,
        executor,
        clock=clock,
        notifier=notifier,
        config=RefreshConfig(**config),  # type: ignore[arg-type]
    )


class TestRefreshConfig:
    """Tests for RefreshConfig."""

    def test_defaults(self) -> None:
        """Test default refresh settings."""
        config = RefreshConfig()
        assert config.refresh_buffer == 1800.0
        assert config.max_retries == 5
        assert config.exchange_retry.max_attempts == 5
        breaker = config.breaker_config()
        assert breaker.failure_threshold == 3
        assert breaker.open_duration == 60.0
        assert breaker.half_open_max_requests == 1

    def test_slot_backoff(self) -> None:
        """Test slot backoff doubles from 1s up to 60s."""
        config = RefreshConfig()
        assert [config.slot_backoff(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
        assert config.slot_backoff(10) == 60.0

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test environment overrides."""
        monkeypatch.setenv("RESILIENT_ACCESS_REFRESH_BUFFER", "600")
        monkeypatch.setenv("RESILIENT_ACCESS_REFRESH_MAX_RETRIES", "2")
        config = RefreshConfig.from_env()
        assert config.refresh_buffer == 600.0
        assert config.max_retries == 2


class TestScheduling:
    """Tests for proactive refresh scheduling."""

    @pytest.mark.asyncio
    async def test_start_arms_single_timer(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test a 60 minute token is refreshed 30 minutes before expiry."""
        manager = _manager(clock, token_store, FakeRefreshTransport(clock), executor)
        token = make_token(clock, 3600)

        await manager.start(token)

        assert len(clock.pending) == 1
        assert clock.pending[0].when == 1800.0
        status = manager.get_status()
        assert status.state == RefreshState.ACTIVE
        assert status.next_refresh == clock.time() + 1800
        assert await token_store.load(PRINCIPAL) == token

    @pytest.mark.asyncio
    async def test_timer_refreshes_and_reschedules(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test the timer refreshes the token and arms the next refresh."""
        transport = FakeRefreshTransport(clock)
        manager = _manager(clock, token_store, transport, executor)
        await manager.start(make_token(clock, 3600))

        clock.advance(1800)
        task = manager.in_flight
        assert task is not None
        result = await task

        assert result.success
        assert transport.calls == ["refresh-0"]
        assert manager.token is not None
        assert manager.token.access_token == "access-1"
        assert (await token_store.load(PRINCIPAL)) == manager.token
        assert len(clock.pending) == 1
        assert clock.pending[0].when == 3600.0
        status = manager.get_status()
        assert status.last_refresh == clock.time()
        assert status.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_timer(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test stop disarms the timer."""
        transport = FakeRefreshTransport(clock)
        manager = _manager(clock, token_store, transport, executor)
        await manager.start(make_token(clock, 3600))

        manager.stop()
        clock.advance(3600)

        assert clock.pending == []
        assert manager.in_flight is None
        assert transport.calls == []
        assert manager.get_status().state == RefreshState.INACTIVE

    @pytest.mark.asyncio
    async def test_token_without_refresh_token(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test tokens without a refresh token are not scheduled."""
        manager = _manager(clock, token_store, FakeRefreshTransport(clock), executor)
        await manager.start(make_token(clock, 3600, refresh_token=None))

        assert clock.pending == []
        result = await manager.force_refresh()
        assert not result.success
        assert isinstance(result.error, AuthGrantError)

    @pytest.mark.asyncio
    async def test_resume_from_store(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test resuming from a stored token."""
        manager = _manager(clock, token_store, FakeRefreshTransport(clock), executor)
        assert await manager.resume() is False

        await token_store.save(PRINCIPAL, make_token(clock, 3600))
        assert await manager.resume() is True
        assert manager.get_status().active
        assert len(clock.pending) == 1


class TestFailures:
    """Tests for refresh failure handling."""

    @pytest.mark.asyncio
    async def test_invalid_grant_is_terminal(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test a revoked grant clears the credential and stops refreshing."""
        transport = FakeRefreshTransport(
            clock, AuthGrantError("refresh token revoked", oauth_error="invalid_grant")
        )
        notifier = ChangeNotifier()
        events: list[TokenEvent] = []
        notifier.subscribe(events.append)
        manager = _manager(clock, token_store, transport, executor, notifier=notifier)
        await manager.start(make_token(clock, 3600))

        result = await manager.force_refresh()

        assert not result.success
        assert result.terminal
        assert transport.calls == ["refresh-0"]
        assert manager.token is None
        assert await token_store.load(PRINCIPAL) is None
        assert clock.pending == []
        status = manager.get_status()
        assert status.state == RefreshState.FAILED
        assert not status.active
        terminal = [e for e in events if e.type == TokenEventType.TERMINAL_FAILURE]
        assert len(terminal) == 1
        assert terminal[0].details == {"credential_cleared": True}

    @pytest.mark.asyncio
    async def test_transient_failure_backs_off(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test a failed slot is retried after the backoff."""
        transport = FakeRefreshTransport(clock, TransientNetworkError("connection reset"))
        manager = _manager(clock, token_store, transport, executor)
        await manager.start(make_token(clock, 3600))

        clock.advance(1800)
        result = await manager.in_flight  # type: ignore[misc]

        assert not result.success
        assert not result.terminal
        assert result.retry_after == 1.0
        assert manager.get_status().consecutive_failures == 1
        assert manager.get_status().state == RefreshState.ACTIVE
        assert manager.get_status().last_error.startswith("connection reset")  # type: ignore[union-attr]

        clock.advance(1)
        result = await manager.in_flight  # type: ignore[misc]

        assert result.success
        assert len(transport.calls) == 2
        status = manager.get_status()
        assert status.consecutive_failures == 0
        assert len(status.errors) == 1

    @pytest.mark.asyncio
    async def test_retry_does_not_precede_refresh_time(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test an early forced refresh failure keeps the original schedule."""
        transport = FakeRefreshTransport(clock, TransientNetworkError("connection reset"))
        manager = _manager(clock, token_store, transport, executor)
        await manager.start(make_token(clock, 3600))

        result = await manager.force_refresh()

        assert result.retry_after == 1800.0
        assert len(clock.pending) == 1
        assert clock.pending[0].when == 1800.0

    @pytest.mark.asyncio
    async def test_max_retries_stops(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test consecutive failed slots stop the manager but keep the token."""
        transport = FakeRefreshTransport(
            clock, TransientNetworkError("reset"), TransientNetworkError("reset")
        )
        manager = _manager(clock, token_store, transport, executor, max_retries=2)
        token = make_token(clock, 3600)
        await manager.start(token)

        clock.advance(1800)
        await manager.in_flight  # type: ignore[misc]
        clock.advance(1)
        result = await manager.in_flight  # type: ignore[misc]

        assert result.terminal
        assert manager.token == token
        assert await token_store.load(PRINCIPAL) == token
        assert clock.pending == []
        assert manager.get_status().state == RefreshState.FAILED

        await manager.start(token)
        assert manager.get_status().state == RefreshState.ACTIVE
        assert manager.get_status().consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_circuit_trips(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test an open refresh circuit rejects the exchange."""
        transport = FakeRefreshTransport(clock, TransientNetworkError("reset"))
        manager = _manager(clock, token_store, transport, executor, breaker_threshold=1)
        await manager.start(make_token(clock, 3600))

        first = await manager.force_refresh()
        assert not first.circuit_tripped
        assert executor.breakers.get_state("token-refresh") == CircuitState.OPEN

        clock.advance(30)
        result = await manager.force_refresh()

        assert result.circuit_tripped
        assert isinstance(result.error, CircuitOpenError)
        assert transport.calls == ["refresh-0"]
        assert manager.get_status().consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_failed_slots_wait_for_half_open(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test every retry slot after an outage reaches the network."""
        outage = [TransientNetworkError("bad gateway", status_code=502) for _ in range(20)]
        transport = FakeRefreshTransport(clock, *outage)
        manager = _manager(
            clock,
            token_store,
            transport,
            executor,
            exchange_retry=RetryPolicy(max_retries=4, base_delay=1.0, max_delay=10.0, jitter=False),
        )
        await manager.start(make_token(clock, 3600))

        clock.advance(1800)
        first = await manager.in_flight  # type: ignore[misc]
        assert first.circuit_tripped
        assert len(transport.calls) == 3
        # Opened at the third failure, four seconds of backoff ago
        assert first.retry_after == pytest.approx(56.0, abs=0.1)

        for _ in range(4):
            clock.advance(clock.pending[0].when - clock.monotonic())
            result = await manager.in_flight  # type: ignore[misc]

        assert result.terminal
        assert len(transport.calls) == 7
        assert manager.get_status().state == RefreshState.FAILED

    @pytest.mark.asyncio
    async def test_failed_save_keeps_old_token(
        self, clock: ManualClock, executor: ResilientExecutor
    ) -> None:
        """Test a token that cannot be persisted is not used."""
        store = FlakyStore()
        manager = _manager(clock, store, FakeRefreshTransport(clock), executor)
        token = make_token(clock, 3600)
        await manager.start(token)

        store.fail_saves = True
        result = await manager.force_refresh()

        assert not result.success
        assert isinstance(result.error, StorageError)
        assert manager.token == token
        assert await store.load(PRINCIPAL) == token
        assert manager.get_status().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_start_save_failure_raises(
        self, clock: ManualClock, executor: ResilientExecutor
    ) -> None:
        """Test start surfaces storage failures and stays inactive."""
        store = FlakyStore()
        store.fail_saves = True
        manager = _manager(clock, store, FakeRefreshTransport(clock), executor)

        with pytest.raises(StorageError):
            await manager.start(make_token(clock, 3600))

        assert manager.token is None
        assert not manager.get_status().active


class TestConcurrency:
    """Tests for coalesced refreshes and stop / sign-out races."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_refresh(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test concurrent get_valid_token calls cause one exchange."""
        transport = FakeRefreshTransport(clock)
        transport.gate = asyncio.Event()
        manager = _manager(clock, token_store, transport, executor)
        await manager.start(make_token(clock, 600))

        callers = [asyncio.create_task(manager.get_valid_token()) for _ in range(5)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        transport.gate.set()  # type: ignore[attr-defined]
        results = await asyncio.gather(*callers)

        assert results == ["access-1"] * 5
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_stop_during_refresh(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test a refresh finishing after stop does not rearm the timer."""
        transport = FakeRefreshTransport(clock)
        transport.gate = asyncio.Event()
        manager = _manager(clock, token_store, transport, executor)
        await manager.start(make_token(clock, 3600))

        clock.advance(1800)
        task = manager.in_flight
        assert task is not None
        await asyncio.sleep(0)
        manager.stop()
        transport.gate.set()  # type: ignore[attr-defined]
        result = await task

        assert result.success
        assert manager.token is not None
        assert manager.token.access_token == "access-1"
        assert clock.pending == []
        assert manager.get_status().state == RefreshState.INACTIVE

    @pytest.mark.asyncio
    async def test_sign_out_during_refresh(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test a refresh finishing after sign-out is discarded."""
        transport = FakeRefreshTransport(clock)
        transport.gate = asyncio.Event()
        manager = _manager(clock, token_store, transport, executor)
        await manager.start(make_token(clock, 3600))

        clock.advance(1800)
        task = manager.in_flight
        assert task is not None
        await asyncio.sleep(0)
        await manager.sign_out()
        transport.gate.set()  # type: ignore[attr-defined]
        result = await task

        assert not result.success
        assert manager.token is None
        assert await token_store.load(PRINCIPAL) is None


class TestAccess:
    """Tests for get_valid_token, sign-out and status."""

    @pytest.mark.asyncio
    async def test_valid_token_without_refresh(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test a fresh token is returned as-is."""
        transport = FakeRefreshTransport(clock)
        manager = _manager(clock, token_store, transport, executor)
        await manager.start(make_token(clock, 3600))

        assert await manager.get_valid_token() == "access-0"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_no_token_raises(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test missing credentials raise AuthGrantError."""
        manager = _manager(clock, token_store, FakeRefreshTransport(clock), executor)
        with pytest.raises(AuthGrantError):
            await manager.get_valid_token()

    @pytest.mark.asyncio
    async def test_expired_token_when_stopped(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test an expired token is not handed out by a stopped manager."""
        manager = _manager(clock, token_store, FakeRefreshTransport(clock), executor)
        await manager.start(make_token(clock, 3600))
        manager.stop()
        clock.advance(3600)

        with pytest.raises(AuthGrantError, match="expired"):
            await manager.get_valid_token()

    @pytest.mark.asyncio
    async def test_sign_out(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test sign-out clears memory and storage."""
        manager = _manager(clock, token_store, FakeRefreshTransport(clock), executor)
        await manager.start(make_token(clock, 3600))

        await manager.sign_out()

        assert manager.token is None
        assert await token_store.load(PRINCIPAL) is None
        assert clock.pending == []
        with pytest.raises(AuthGrantError):
            await manager.get_valid_token()

    @pytest.mark.asyncio
    async def test_status_to_dict(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test the status snapshot includes the refresh circuit."""
        manager = _manager(clock, token_store, FakeRefreshTransport(clock), executor)
        await manager.start(make_token(clock, 3600))

        data = manager.status().to_dict()

        assert data["principal"] == PRINCIPAL
        assert data["state"] == "active"
        assert data["has_token"] is True
        assert data["circuit"]["name"] == "token-refresh"
        assert data["circuit"]["state"] == "closed"
        assert "seller@example.com" in repr(manager)


class TestNotifications:
    """Tests for cross-manager notifications."""

    @pytest.mark.asyncio
    async def test_other_manager_picks_up_stored_token(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test a second manager restarts from a token stored by the first."""
        notifier = ChangeNotifier()
        first = _manager(clock, token_store, FakeRefreshTransport(clock), executor, notifier=notifier)
        second = _manager(
            clock, token_store, FakeRefreshTransport(clock), executor, notifier=notifier
        )
        token = make_token(clock, 3600)

        await first.start(token)
        await notifier.drain()

        assert second.token == token
        assert second.get_status().active

        await first.sign_out()
        await notifier.drain()

        assert second.token is None
        assert not second.get_status().active

        first.close()
        second.close()
        assert notifier.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_events_published(
        self,
        clock: ManualClock,
        token_store: MemoryTokenStore,
        executor: ResilientExecutor,
    ) -> None:
        """Test the lifecycle publishes its events."""
        notifier = ChangeNotifier()
        events: list[TokenEventType] = []
        notifier.subscribe(lambda e: events.append(e.type))
        manager = _manager(
            clock, token_store, FakeRefreshTransport(clock), executor, notifier=notifier
        )

        await manager.start(make_token(clock, 3600))
        await manager.force_refresh()
        manager.stop()

        assert events == [
            TokenEventType.STARTED,
            TokenEventType.STORED,
            TokenEventType.REFRESHED,
            TokenEventType.STOPPED,
        ]
