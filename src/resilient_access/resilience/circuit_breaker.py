"""
Circuit breakers for fault isolation, keyed by operation name.

Implements the circuit breaker pattern with three states:
- Closed: Normal operation, failures accumulate
- Open: Circuit tripped, calls are rejected until the open duration passes
- Half-Open: A limited number of trial calls probe whether the upstream recovered
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, replace
from enum import Enum

from resilient_access.clock import Clock, SystemClock
from resilient_access.telemetry import get_logger

logger = get_logger("resilient_access.resilience.circuit_breaker")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for one circuit.

    Attributes:
        failure_threshold: Failures that trip the circuit
        open_duration: Seconds to stay open after the last failure
        half_open_max_requests: Trial calls allowed, and successes needed, in half-open
    """

    failure_threshold: int = 5
    open_duration: float = 60.0
    half_open_max_requests: int = 3

    @classmethod
    def from_env(cls) -> CircuitBreakerConfig:
        """Create configuration from environment variables."""
        return cls(
            failure_threshold=int(
                os.getenv("RESILIENT_ACCESS_BREAKER_FAILURE_THRESHOLD", "5")
            ),
            open_duration=float(
                os.getenv("RESILIENT_ACCESS_BREAKER_OPEN_SECS", "60")
            ),
            half_open_max_requests=int(
                os.getenv("RESILIENT_ACCESS_BREAKER_HALF_OPEN_MAX", "3")
            ),
        )


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only view of one circuit."""

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    trials_in_flight: int
    last_failure_time: float | None
    failure_threshold: int
    open_duration: float
    half_open_max_requests: int
    total_requests: int = 0
    rejected_requests: int = 0
    time_until_half_open: float | None = None

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time,
            "total_requests": self.total_requests,
            "rejected_requests": self.rejected_requests,
            "time_until_half_open": self.time_until_half_open,
        }


@dataclass
class _Circuit:
    name: str
    config: CircuitBreakerConfig
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    trials_in_flight: int = 0
    last_failure_time: float | None = None
    last_activity: float = 0.0
    total_requests: int = 0
    rejected_requests: int = 0


class CircuitBreakerRegistry:
    """Per-operation circuit breakers.

    Circuits are created lazily on first use of a name with the default
    configuration (or an override registered through ``configure``). All
    state sits behind one lock; callers only ever see ``CircuitSnapshot``
    copies.

    Example:
        >>> breakers = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=3))
        >>> if breakers.allow("ebay-inventory"):
        ...     try:
        ...         data = await fetch_inventory()
        ...         breakers.record_success("ebay-inventory")
        ...     except Exception:
        ...         breakers.record_failure("ebay-inventory")
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._default = default_config or CircuitBreakerConfig()
        self._overrides: dict[str, CircuitBreakerConfig] = {}
        self._clock = clock or SystemClock()
        self._circuits: dict[str, _Circuit] = {}
        self._lock = threading.Lock()

    def configure(self, name: str, config: CircuitBreakerConfig) -> None:
        """Set the configuration used for ``name``.

        An existing circuit keeps its state and picks up the new thresholds.
        """
        with self._lock:
            self._overrides[name] = config
            circuit = self._circuits.get(name)
            if circuit is not None:
                circuit.config = config

    def _get(self, name: str) -> _Circuit:
        circuit = self._circuits.get(name)
        if circuit is None:
            circuit = _Circuit(
                name=name,
                config=self._overrides.get(name, self._default),
                last_activity=self._clock.monotonic(),
            )
            self._circuits[name] = circuit
        return circuit

    def _transition(self, circuit: _Circuit, new_state: CircuitState) -> None:
        if new_state == circuit.state:
            return
        old_state = circuit.state
        circuit.state = new_state

        if new_state == CircuitState.HALF_OPEN:
            circuit.success_count = 0
            circuit.trials_in_flight = 0
        elif new_state == CircuitState.CLOSED:
            circuit.failure_count = 0
            circuit.success_count = 0
            circuit.trials_in_flight = 0
        elif new_state == CircuitState.OPEN:
            circuit.success_count = 0
            circuit.trials_in_flight = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit state changed",
            circuit=circuit.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failures=circuit.failure_count,
        )

    def _check_cooldown(self, circuit: _Circuit) -> None:
        if circuit.state != CircuitState.OPEN or circuit.last_failure_time is None:
            return
        elapsed = self._clock.monotonic() - circuit.last_failure_time
        if elapsed >= circuit.config.open_duration:
            self._transition(circuit, CircuitState.HALF_OPEN)

    def allow(self, name: str) -> bool:
        """Check whether a call for ``name`` may proceed.

        In half-open state a successful ``allow`` claims one trial slot; the
        slot is returned by ``record_success``, ``record_failure`` or
        ``release``.
        """
        with self._lock:
            circuit = self._get(name)
            circuit.last_activity = self._clock.monotonic()
            circuit.total_requests += 1
            self._check_cooldown(circuit)

            if circuit.state == CircuitState.CLOSED:
                return True

            if circuit.state == CircuitState.HALF_OPEN:
                used = circuit.trials_in_flight + circuit.success_count
                if used < circuit.config.half_open_max_requests:
                    circuit.trials_in_flight += 1
                    return True

            circuit.rejected_requests += 1
            return False

    def record_success(self, name: str) -> None:
        """Record a successful call."""
        with self._lock:
            circuit = self._get(name)
            circuit.last_activity = self._clock.monotonic()

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.trials_in_flight = max(0, circuit.trials_in_flight - 1)
                circuit.success_count += 1
                if circuit.success_count >= circuit.config.half_open_max_requests:
                    self._transition(circuit, CircuitState.CLOSED)

    def record_failure(self, name: str) -> None:
        """Record a failed call."""
        with self._lock:
            circuit = self._get(name)
            now = self._clock.monotonic()
            circuit.last_activity = now
            circuit.last_failure_time = now
            circuit.failure_count += 1

            if circuit.state == CircuitState.HALF_OPEN:
                # A single failure while probing re-opens the circuit
                self._transition(circuit, CircuitState.OPEN)
            elif (
                circuit.state == CircuitState.CLOSED
                and circuit.failure_count >= circuit.config.failure_threshold
            ):
                self._transition(circuit, CircuitState.OPEN)

    def release(self, name: str) -> None:
        """Return a half-open trial slot whose call never completed."""
        with self._lock:
            circuit = self._circuits.get(name)
            if circuit is not None and circuit.state == CircuitState.HALF_OPEN:
                circuit.trials_in_flight = max(0, circuit.trials_in_flight - 1)

    def get_state(self, name: str) -> CircuitState:
        """Get the current state for ``name`` (applying a due half-open transition)."""
        with self._lock:
            circuit = self._circuits.get(name)
            if circuit is None:
                return CircuitState.CLOSED
            self._check_cooldown(circuit)
            return circuit.state

    def time_until_retry(self, name: str) -> float | None:
        """Seconds until an open circuit admits trial calls, or None if not open."""
        with self._lock:
            circuit = self._circuits.get(name)
            if circuit is None:
                return None
            return self._time_until_half_open(circuit)

    def _time_until_half_open(self, circuit: _Circuit) -> float | None:
        if circuit.state != CircuitState.OPEN or circuit.last_failure_time is None:
            return None
        elapsed = self._clock.monotonic() - circuit.last_failure_time
        return max(0.0, circuit.config.open_duration - elapsed)

    def snapshot(self, name: str) -> CircuitSnapshot:
        """Get a read-only copy of the circuit for ``name``."""
        with self._lock:
            circuit = self._circuits.get(name)
            if circuit is None:
                config = self._overrides.get(name, self._default)
                return CircuitSnapshot(
                    name=name,
                    state=CircuitState.CLOSED,
                    failure_count=0,
                    success_count=0,
                    trials_in_flight=0,
                    last_failure_time=None,
                    failure_threshold=config.failure_threshold,
                    open_duration=config.open_duration,
                    half_open_max_requests=config.half_open_max_requests,
                )
            self._check_cooldown(circuit)
            return self._snapshot(circuit)

    def _snapshot(self, circuit: _Circuit) -> CircuitSnapshot:
        return CircuitSnapshot(
            name=circuit.name,
            state=circuit.state,
            failure_count=circuit.failure_count,
            success_count=circuit.success_count,
            trials_in_flight=circuit.trials_in_flight,
            last_failure_time=circuit.last_failure_time,
            failure_threshold=circuit.config.failure_threshold,
            open_duration=circuit.config.open_duration,
            half_open_max_requests=circuit.config.half_open_max_requests,
            total_requests=circuit.total_requests,
            rejected_requests=circuit.rejected_requests,
            time_until_half_open=self._time_until_half_open(circuit),
        )

    def snapshots(self) -> list[CircuitSnapshot]:
        """Get read-only copies of every known circuit."""
        with self._lock:
            result = []
            for circuit in self._circuits.values():
                self._check_cooldown(circuit)
                result.append(self._snapshot(circuit))
            return result

    def reset(self, name: str | None = None) -> None:
        """Force one circuit (or all of them) back to closed."""
        with self._lock:
            targets = (
                list(self._circuits.values())
                if name is None
                else [c for n, c in self._circuits.items() if n == name]
            )
            for circuit in targets:
                self._transition(circuit, CircuitState.CLOSED)
                circuit.last_failure_time = None

    def sweep_idle(self, max_idle: float) -> int:
        """Drop closed circuits untouched for ``max_idle`` seconds.

        Returns:
            Number of circuits removed
        """
        with self._lock:
            now = self._clock.monotonic()
            idle = [
                name
                for name, circuit in self._circuits.items()
                if circuit.state == CircuitState.CLOSED
                and now - circuit.last_activity >= max_idle
            ]
            for name in idle:
                del self._circuits[name]
            return len(idle)

    def default_config(self, name: str | None = None) -> CircuitBreakerConfig:
        """Configuration that applies to ``name`` (or the registry default)."""
        with self._lock:
            if name is None:
                return self._default
            return replace(self._overrides.get(name, self._default))

    def __len__(self) -> int:
        with self._lock:
            return len(self._circuits)

    def __repr__(self) -> str:
        return f"CircuitBreakerRegistry(circuits={len(self)})"
