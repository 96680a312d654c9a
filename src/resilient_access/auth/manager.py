"""
Proactive OAuth token lifecycle management.

``TokenLifecycleManager`` owns one credential: it refreshes the access
token ahead of expiry through the resilient executor, persists every new
token before using it, and stops the credential on failures that retrying
cannot fix.
"""

from __future__ import annotations

import asyncio
import os
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from resilient_access.auth.tokens import (
    RefreshResult,
    RefreshState,
    RefreshStatus,
    TokenData,
    TokenEvent,
    TokenEventType,
)
from resilient_access.clock import Clock, SystemClock, TimerHandle
from resilient_access.errors import (
    AuthGrantError,
    CircuitOpenError,
    ErrorClass,
    StorageError,
    classify_error,
    is_oauth_grant_failure,
)
from resilient_access.resilience.circuit_breaker import CircuitBreakerConfig
from resilient_access.resilience.executor import ExecuteOptions, ResilientExecutor
from resilient_access.resilience.retry import RetryPolicy
from resilient_access.telemetry import LogContext, get_logger, set_log_context

if TYPE_CHECKING:
    from resilient_access.auth.notifier import ChangeNotifier
    from resilient_access.auth.store import TokenStore
    from resilient_access.auth.transport import RefreshTransport

logger = get_logger("resilient_access.auth.manager")

REFRESH_OPERATION = "token-refresh"

# Timers may fire up to one clock resolution early
_COOLDOWN_MARGIN = 0.05


@dataclass
class RefreshConfig:
    """Configuration for token refresh.

    Attributes:
        refresh_buffer: Seconds before expiry at which to refresh
        max_retries: Consecutive failed refresh slots before the manager stops
        initial_retry_delay: Backoff before re-trying a failed slot
        max_retry_delay: Upper bound for the slot backoff
        backoff_multiplier: Growth factor of the slot backoff
        breaker_threshold: Failures that open the refresh circuit
        breaker_reset: Seconds the refresh circuit stays open
        exchange_retry: Retry policy for the exchange inside one slot
        max_errors: Error messages kept in the status
        operation_name: Circuit / executor operation name
    """

    refresh_buffer: float = 1800.0
    max_retries: int = 5
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 60.0
    backoff_multiplier: float = 2.0
    breaker_threshold: int = 3
    breaker_reset: float = 60.0
    exchange_retry: RetryPolicy = field(default_factory=RetryPolicy.for_token_refresh)
    max_errors: int = 10
    operation_name: str = REFRESH_OPERATION

    @classmethod
    def from_env(cls) -> RefreshConfig:
        """Create configuration from environment variables."""
        return cls(
            refresh_buffer=float(os.getenv("RESILIENT_ACCESS_REFRESH_BUFFER", "1800")),
            max_retries=int(os.getenv("RESILIENT_ACCESS_REFRESH_MAX_RETRIES", "5")),
            initial_retry_delay=float(
                os.getenv("RESILIENT_ACCESS_REFRESH_INITIAL_DELAY", "1.0")
            ),
            max_retry_delay=float(os.getenv("RESILIENT_ACCESS_REFRESH_MAX_DELAY", "60.0")),
        )

    def slot_backoff(self, failures: int) -> float:
        """Delay before re-trying after ``failures`` consecutive failed slots."""
        delay = self.initial_retry_delay * (self.backoff_multiplier ** max(0, failures - 1))
        return min(delay, self.max_retry_delay)

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_threshold,
            open_duration=self.breaker_reset,
            half_open_max_requests=1,
        )


def _is_grant_failure(error: BaseException | None) -> bool:
    if error is None:
        return False
    if classify_error(error) == ErrorClass.AUTH_GRANT:
        return True
    return classify_error(error) == ErrorClass.OTHER and is_oauth_grant_failure(str(error))


class TokenLifecycleManager:
    """Keeps one credential's access token fresh.

    States: inactive -> active -> refreshing -> active | failed.

    Exactly one refresh timer is armed at a time, at
    ``expires_at - refresh_buffer``. Concurrent refresh requests share the
    single in-flight refresh task.

    Example:
        >>> manager = TokenLifecycleManager(
        ...     "seller@example.com", FileTokenStore(path), HttpRefreshTransport(), executor
        ... )
        >>> await manager.start(initial_token)
        >>> headers = {"Authorization": f"Bearer {await manager.get_valid_token()}"}
    """

    def __init__(
        self,
        principal: str,
        store: TokenStore,
        transport: RefreshTransport,
        executor: ResilientExecutor,
        *,
        clock: Clock | None = None,
        notifier: ChangeNotifier | None = None,
        config: RefreshConfig | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            principal: Credential owner
            store: Authoritative token storage
            transport: Refresh-token exchange
            executor: Resilient executor (its circuit registry guards refreshes)
            clock: Time source and scheduler
            notifier: Change notifier shared with other managers
            config: Refresh configuration
        """
        self._principal = principal
        self._store = store
        self._transport = transport
        self._executor = executor
        self._clock = clock or SystemClock()
        self._notifier = notifier
        self._config = config or RefreshConfig()
        self._id = uuid.uuid4().hex

        self._token: TokenData | None = None
        self._state = RefreshState.INACTIVE
        self._active = False
        self._timer: TimerHandle | None = None
        self._next_refresh: float | None = None
        self._last_refresh: float | None = None
        self._failures = 0
        self._errors: deque[str] = deque(maxlen=self._config.max_errors)
        self._in_flight: asyncio.Task[RefreshResult] | None = None
        self._generation = 0
        self._signed_out = False
        self._closed = False
        self._lock = threading.Lock()

        self._executor.breakers.configure(
            self._config.operation_name, self._config.breaker_config()
        )
        self._unsubscribe = notifier.subscribe(self._on_event) if notifier else None

    @property
    def principal(self) -> str:
        return self._principal

    @property
    def config(self) -> RefreshConfig:
        return self._config

    @property
    def in_flight(self) -> asyncio.Task[RefreshResult] | None:
        """The running refresh task, if any."""
        task = self._in_flight
        return task if task is not None and not task.done() else None

    @property
    def token(self) -> TokenData | None:
        return self._token

    # -- lifecycle ---------------------------------------------------------

    async def start(self, token: TokenData, *, persist: bool = True) -> None:
        """Start managing ``token``.

        Resets failure bookkeeping and arms the refresh timer. Also the only
        way to resume a manager stopped by a terminal failure.

        Args:
            token: Initial (or freshly re-authenticated) token
            persist: Save the token to the store first

        Raises:
            StorageError: If ``persist`` is set and the save failed
        """
        if persist:
            await self._save(token)

        with self._lock:
            self._generation += 1
            self._token = token
            self._active = True
            self._signed_out = False
            self._state = RefreshState.ACTIVE
            self._failures = 0
            self._errors.clear()

        logger.info(
            "Token refresh started",
            principal=self._principal,
            expires_in=round(token.expires_in(self._clock.time())),
        )
        self._schedule_from_expiry(token)
        self._publish(TokenEventType.STARTED, expires_at=token.expires_at)
        if persist:
            self._publish(TokenEventType.STORED, expires_at=token.expires_at)

    async def resume(self) -> bool:
        """Start from the token held in the store.

        Returns:
            True if a stored token was found and management started
        """
        token = await self._store.load(self._principal)
        if token is None:
            logger.info("No stored token, staying inactive", principal=self._principal)
            return False
        await self.start(token, persist=False)
        return True

    def stop(self) -> None:
        """Stop autonomous refreshing.

        Cancels the timer immediately. A refresh already in flight completes
        but nothing is rescheduled from it.
        """
        with self._lock:
            self._generation += 1
            was_active = self._active
            self._active = False
            if self._state != RefreshState.FAILED:
                self._state = RefreshState.INACTIVE
            self._cancel_timer()

        if was_active:
            logger.info("Token refresh stopped", principal=self._principal)
            self._publish(TokenEventType.STOPPED)

    async def sign_out(self) -> None:
        """Stop and forget the credential, in memory and in the store."""
        self.stop()
        with self._lock:
            self._signed_out = True
            self._token = None
            self._state = RefreshState.INACTIVE
        try:
            await self._store.delete(self._principal)
        finally:
            logger.info("Signed out", principal=self._principal)
            self._publish(TokenEventType.SIGNED_OUT)

    def close(self) -> None:
        """Stop and detach from the notifier."""
        self.stop()
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # -- refresh -----------------------------------------------------------

    async def force_refresh(self) -> RefreshResult:
        """Refresh now (or join the refresh already in flight)."""
        if self._token is None and not self._signed_out:
            stored = await self._store.load(self._principal)
            if stored is not None:
                with self._lock:
                    self._token = stored
        return await asyncio.shield(self._ensure_refresh())

    async def get_valid_token(self) -> str:
        """Get a usable access token.

        Waits for a refresh in flight, and refreshes first when the token is
        inside the refresh buffer and the manager is active.

        Returns:
            Access token string

        Raises:
            AuthGrantError: If no unexpired token is available
        """
        task = self.in_flight
        if task is not None:
            await asyncio.shield(task)

        token = self._token
        if token is None:
            raise AuthGrantError(
                "No access token available", principal=self._principal
            ).with_hint("Sign in again to obtain a new grant")

        if (
            self._active
            and token.refresh_token
            and token.needs_refresh(self._clock.time(), self._config.refresh_buffer)
        ):
            await asyncio.shield(self._ensure_refresh())
            token = self._token
            if token is None:
                raise AuthGrantError(
                    "Credential was revoked during refresh", principal=self._principal
                ).with_hint("Sign in again to obtain a new grant")

        if token.is_expired(self._clock.time()):
            raise AuthGrantError(
                "Access token expired and could not be refreshed",
                principal=self._principal,
            )
        return token.access_token

    def _ensure_refresh(self) -> asyncio.Task[RefreshResult]:
        task = self.in_flight
        if task is None:
            task = asyncio.get_running_loop().create_task(self._refresh_slot())
            self._in_flight = task
        return task

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
            if not self._active:
                return
        self._ensure_refresh()

    async def _refresh_slot(self) -> RefreshResult:
        token = self._token
        if token is None or not token.refresh_token:
            return RefreshResult(
                success=False,
                error=AuthGrantError("No refresh token available", principal=self._principal),
            )

        set_log_context(LogContext(operation=self._config.operation_name, principal=self._principal))
        with self._lock:
            generation = self._generation
            previous_state = self._state
            self._state = RefreshState.REFRESHING
        refresh_token = token.refresh_token

        outcome = await self._executor.execute(
            self._config.operation_name,
            lambda: self._transport.exchange(refresh_token),
            ExecuteOptions(retry=self._config.exchange_retry),
        )

        if outcome.success and outcome.value is not None:
            new_token: TokenData = outcome.value
            if self._signed_out:
                logger.info("Discarding refresh result after sign-out", principal=self._principal)
                return RefreshResult(success=False, attempts=outcome.attempts)
            try:
                await self._save(new_token)
            except StorageError as e:
                return await self._handle_failure(e, outcome.attempts, generation, previous_state)
            return self._handle_success(new_token, outcome.attempts, generation, previous_state)

        error = outcome.error or RuntimeError("Token refresh failed")
        return await self._handle_failure(error, outcome.attempts, generation, previous_state)

    def _handle_success(
        self,
        token: TokenData,
        attempts: int,
        generation: int,
        previous_state: RefreshState,
    ) -> RefreshResult:
        now = self._clock.time()
        with self._lock:
            self._token = token
            self._last_refresh = now
            self._failures = 0
            current = generation == self._generation and self._active
            self._settle_state(previous_state)

        logger.info(
            "Token refreshed",
            principal=self._principal,
            attempts=attempts,
            expires_in=round(token.expires_in(now)),
        )
        if current:
            self._schedule_from_expiry(token)
        self._publish(TokenEventType.REFRESHED, expires_at=token.expires_at)
        return RefreshResult(success=True, token=token, attempts=attempts)

    async def _handle_failure(
        self,
        error: BaseException,
        attempts: int,
        generation: int,
        previous_state: RefreshState,
    ) -> RefreshResult:
        message = str(error)
        circuit_tripped = isinstance(error, CircuitOpenError)

        with self._lock:
            self._errors.append(message)
            current = generation == self._generation and self._active

        if _is_grant_failure(error):
            logger.error(
                "Refresh grant rejected, credential stopped",
                principal=self._principal,
                error=message,
            )
            await self._terminate(error, clear=True)
            return RefreshResult(
                success=False, error=error, attempts=attempts, terminal=True
            )

        with self._lock:
            self._failures += 1
            failures = self._failures

        if not current:
            with self._lock:
                self._settle_state(previous_state)
            logger.warning(
                "Token refresh failed while inactive",
                principal=self._principal,
                error=message,
            )
            return RefreshResult(
                success=False,
                error=error,
                attempts=attempts,
                circuit_tripped=circuit_tripped,
            )

        if failures >= self._config.max_retries:
            logger.error(
                "Too many refresh failures, stopping auto refresh",
                principal=self._principal,
                consecutive_failures=failures,
                error=message,
            )
            await self._terminate(error, clear=False)
            return RefreshResult(
                success=False,
                error=error,
                attempts=attempts,
                terminal=True,
                circuit_tripped=circuit_tripped,
            )

        now = self._clock.time()
        backoff = self._config.slot_backoff(failures)
        token = self._token
        due = token.expires_at - self._config.refresh_buffer if token else now
        # Land past the half-open point so the slot reaches the network
        cooldown = self._executor.breakers.time_until_retry(self._config.operation_name)
        if cooldown is not None:
            cooldown += _COOLDOWN_MARGIN
        retry_at = max(due, now + backoff, now + (cooldown or 0.0))
        with self._lock:
            self._state = RefreshState.ACTIVE
        self._schedule_at(retry_at)

        logger.warning(
            "Token refresh failed, retry scheduled",
            principal=self._principal,
            consecutive_failures=failures,
            retry_in=round(retry_at - now, 3),
            error_class=classify_error(error).value,
            error=message,
        )
        self._publish(
            TokenEventType.REFRESH_FAILED,
            error=message,
            consecutive_failures=failures,
        )
        return RefreshResult(
            success=False,
            error=error,
            attempts=attempts,
            circuit_tripped=circuit_tripped,
            retry_after=retry_at - now,
        )

    async def _terminate(self, error: BaseException, *, clear: bool) -> None:
        with self._lock:
            self._generation += 1
            self._active = False
            self._state = RefreshState.FAILED
            self._cancel_timer()
            if clear:
                self._token = None
            failures = self._failures

        if clear:
            await self._delete_stored()

        self._publish(
            TokenEventType.TERMINAL_FAILURE,
            error=str(error),
            consecutive_failures=failures,
            details={"credential_cleared": clear},
        )

    async def _delete_stored(self) -> None:
        try:
            await self._store.delete(self._principal)
        except StorageError as e:
            logger.error("Failed to delete revoked token", principal=self._principal, error=str(e))

    def _settle_state(self, previous: RefreshState) -> None:
        # Caller holds the lock.
        if self._state != RefreshState.REFRESHING:
            return
        if self._active:
            self._state = RefreshState.ACTIVE
        elif previous == RefreshState.FAILED:
            self._state = RefreshState.FAILED
        else:
            self._state = RefreshState.INACTIVE

    # -- scheduling --------------------------------------------------------

    def _schedule_from_expiry(self, token: TokenData) -> None:
        if not token.refresh_token:
            logger.warning(
                "Token has no refresh token, not scheduling refresh",
                principal=self._principal,
            )
            with self._lock:
                self._cancel_timer()
            return
        self._schedule_at(token.expires_at - self._config.refresh_buffer)

    def _schedule_at(self, when: float) -> None:
        delay = max(0.0, when - self._clock.time())
        with self._lock:
            if not self._active:
                return
            self._cancel_timer()
            self._timer = self._clock.call_later(delay, self._on_timer)
            self._next_refresh = when
        logger.debug(
            "Next token refresh scheduled",
            principal=self._principal,
            delay=round(delay, 3),
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._next_refresh = None

    # -- storage and events ------------------------------------------------

    async def _save(self, token: TokenData) -> None:
        try:
            await self._store.save(self._principal, token)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("Token store save failed", principal=self._principal, cause=e) from e

    def _publish(self, event_type: TokenEventType, **kwargs: Any) -> None:
        if self._notifier is None:
            return
        self._notifier.publish(
            TokenEvent(
                type=event_type,
                principal=self._principal,
                timestamp=self._clock.time(),
                source=self._id,
                **kwargs,
            )
        )

    async def _on_event(self, event: TokenEvent) -> None:
        if self._closed or event.principal != self._principal or event.source == self._id:
            return

        if event.type in (TokenEventType.STORED, TokenEventType.REFRESHED):
            token = await self._store.load(self._principal)
            if token is None:
                return
            current = self._token
            if current is not None and current.expires_at >= token.expires_at and self._active:
                return
            logger.info(
                "Token stored by another manager, restarting refresh",
                principal=self._principal,
            )
            await self.start(token, persist=False)
        elif event.type == TokenEventType.SIGNED_OUT:
            self.stop()
            with self._lock:
                self._token = None
                self._signed_out = True

    # -- status ------------------------------------------------------------

    def get_status(self) -> RefreshStatus:
        """Get a snapshot of the refresh bookkeeping."""
        circuit = self._executor.breakers.snapshot(self._config.operation_name)
        with self._lock:
            token = self._token
            return RefreshStatus(
                principal=self._principal,
                state=self._state,
                active=self._active,
                has_token=token is not None,
                expires_at=token.expires_at if token else None,
                last_refresh=self._last_refresh,
                next_refresh=self._next_refresh,
                consecutive_failures=self._failures,
                errors=tuple(self._errors),
                circuit=circuit,
            )

    def status(self) -> RefreshStatus:
        """Alias of ``get_status``."""
        return self.get_status()

    def __repr__(self) -> str:
        return f"TokenLifecycleManager(principal={self._principal!r}, state={self._state.value})"
