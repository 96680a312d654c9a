"""
Retry policy with exponential backoff and jitter.

The policy is a pure value object: it decides whether an error is worth
retrying and how long to wait, while the executor owns the retry loop.
"""

from __future__ import annotations

import os
import random
from dataclasses import dataclass, field

from resilient_access.errors import ErrorClass, classify_error

_DEFAULT_RETRYABLE_CLASSES: frozenset[ErrorClass] = frozenset(
    {
        ErrorClass.NETWORK,
        ErrorClass.TIMEOUT,
        ErrorClass.SERVER_ERROR,
        ErrorClass.OVERLOADED,
        ErrorClass.RATE_LIMITED,
    }
)

_DEFAULT_RETRYABLE_STATUSES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

# Only consulted for errors that carry no classification.
_DEFAULT_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "timeout",
    "networkerror",
    "econnreset",
    "enotfound",
    "service_unavailable",
)

JITTER_RATIO = 0.25


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration.

    Attributes:
        max_retries: Retries after the first attempt (attempts = max_retries + 1)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for the exponential delay, in seconds
        multiplier: Growth factor between consecutive delays
        jitter: Spread each delay by +/-25%
        retryable_classes: Error classes worth retrying
        retryable_statuses: HTTP statuses worth retrying
        retryable_patterns: Lowercase substrings matched against the name and
            message of unclassified errors

    Example:
        >>> policy = RetryPolicy(max_retries=2, base_delay=0.5, jitter=False)
        >>> policy.delay_for(1), policy.delay_for(2)
        (0.5, 1.0)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: bool = True
    retryable_classes: frozenset[ErrorClass] = field(
        default_factory=lambda: _DEFAULT_RETRYABLE_CLASSES
    )
    retryable_statuses: frozenset[int] = field(
        default_factory=lambda: _DEFAULT_RETRYABLE_STATUSES
    )
    retryable_patterns: tuple[str, ...] = _DEFAULT_RETRYABLE_PATTERNS

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    @property
    def max_attempts(self) -> int:
        """Total attempts, including the first one."""
        return self.max_retries + 1

    @classmethod
    def default(cls) -> RetryPolicy:
        """Three retries, 1s base delay doubling up to 10s."""
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Create a policy that disables retries."""
        return cls(max_retries=0)

    @classmethod
    def for_token_refresh(cls) -> RetryPolicy:
        """Policy for OAuth refresh exchanges: five attempts, 1s doubling up to 60s."""
        return cls(max_retries=4, base_delay=1.0, max_delay=60.0)

    @classmethod
    def from_env(cls) -> RetryPolicy:
        """Create a policy from environment variables."""
        return cls(
            max_retries=int(os.getenv("RESILIENT_ACCESS_RETRY_MAX_RETRIES", "3")),
            base_delay=float(os.getenv("RESILIENT_ACCESS_RETRY_BASE_DELAY", "1.0")),
            max_delay=float(os.getenv("RESILIENT_ACCESS_RETRY_MAX_DELAY", "10.0")),
            multiplier=float(os.getenv("RESILIENT_ACCESS_RETRY_MULTIPLIER", "2.0")),
            jitter=os.getenv("RESILIENT_ACCESS_RETRY_JITTER", "true").lower()
            in ("1", "true", "yes"),
        )

    def is_retryable(self, error: BaseException) -> bool:
        """Check whether ``error`` should trigger another attempt.

        Args:
            error: The exception raised by the attempt

        Returns:
            True if the error is transient under this policy
        """
        error_class = classify_error(error)
        if error_class == ErrorClass.AUTH_GRANT:
            return False
        if error_class in self.retryable_classes:
            return True

        status_code = getattr(error, "status_code", None)
        if isinstance(status_code, int) and status_code in self.retryable_statuses:
            return True

        if error_class != ErrorClass.OTHER:
            return False

        haystack = f"{type(error).__name__} {error}".lower()
        return any(pattern in haystack for pattern in self.retryable_patterns)

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Calculate the sleep before the retry that follows ``attempt``.

        Args:
            attempt: The attempt that just failed (1-based)
            error: The failure, consulted for a server ``retry_after`` hint

        Returns:
            Delay in seconds
        """
        exponent = max(0, attempt - 1)
        delay = min(self.base_delay * (self.multiplier**exponent), self.max_delay)

        if self.jitter and delay > 0:
            delay *= 1 + random.uniform(-JITTER_RATIO, JITTER_RATIO)

        retry_after = getattr(error, "retry_after", None) if error else None
        if isinstance(retry_after, (int, float)) and retry_after > delay:
            return float(retry_after)

        return max(0.0, delay)
