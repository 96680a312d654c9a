"""
Error hierarchy for resilient-access.

Provides a layered set of typed errors:
- AccessError: Base class for all library errors
- TransientNetworkError: Timeouts, 5xx, connection resets (retryable)
- RateLimitError: 429 throttling, retryable with a longer delay
- AuthGrantError: Invalid/revoked credential, terminal for that credential
- CircuitOpenError: Breaker rejected the call
- CapacityError: Cache could not make room for a write
- ValidationError: Result failed a quality check
- FallbackError: The fallback failed after the primary operation failed
- StorageError: Credential persistence failed
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from typing import Any

from resilient_access.errors.classification import (
    ErrorClass,
    classify_http_status,
    extract_error_message,
    is_oauth_grant_failure,
)


@dataclass
class ErrorContext:
    """Structured error context for diagnostics."""

    details: dict[str, Any] = field(default_factory=dict)
    """Additional details about the error"""

    source: str | None = None
    """Error source (e.g., 'transport', 'circuit', 'cache', 'token')"""

    hint: str | None = None
    """Actionable hint for resolving the error"""

    def __str__(self) -> str:
        parts = []
        if self.source:
            parts.append(f"[{self.source}]")
        if self.hint:
            parts.append(f"(hint: {self.hint})")
        return " ".join(parts)


class AccessError(Exception):
    """Base class for all resilient-access errors.

    Attributes:
        message: Human-readable error message
        context: Structured error context
        error_class: Classification used for retry decisions
    """

    default_class: ErrorClass = ErrorClass.OTHER

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        *,
        error_class: ErrorClass | None = None,
    ) -> None:
        self.message = message
        self.context = context or ErrorContext()
        self.error_class = error_class or self.default_class
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        ctx_str = str(self.context)
        if ctx_str:
            return f"{self.message} {ctx_str}"
        return self.message

    def with_hint(self, hint: str) -> AccessError:
        """Add a hint to this error."""
        self.context.hint = hint
        return self


class TransientNetworkError(AccessError):
    """Timeout, 5xx or connection failure; safe to retry."""

    default_class = ErrorClass.NETWORK

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        *,
        status_code: int | None = None,
        url: str | None = None,
        cause: BaseException | None = None,
        error_class: ErrorClass | None = None,
    ) -> None:
        ctx = context or ErrorContext(source="transport")
        if status_code:
            ctx.details["status_code"] = status_code
        if url:
            ctx.details["url"] = url
        if error_class is None and status_code:
            error_class = classify_http_status(status_code)
        super().__init__(message, ctx, error_class=error_class)
        self.status_code = status_code
        self.url = url
        self.__cause__ = cause


class OperationTimeoutError(TransientNetworkError):
    """An attempt did not finish before its deadline."""

    default_class = ErrorClass.TIMEOUT

    def __init__(self, timeout: float, operation: str | None = None) -> None:
        label = f"'{operation}' " if operation else ""
        super().__init__(
            f"Operation {label}timed out after {timeout:g}s",
            ErrorContext(source="executor", details={"timeout": timeout}),
            error_class=ErrorClass.TIMEOUT,
        )
        self.timeout = timeout
        self.operation = operation


class RateLimitError(AccessError):
    """Upstream throttled the call (429, or 503 with Retry-After)."""

    default_class = ErrorClass.RATE_LIMITED

    def __init__(
        self,
        message: str = "Rate limited",
        context: ErrorContext | None = None,
        *,
        status_code: int = 429,
        retry_after: float | None = None,
    ) -> None:
        ctx = context or ErrorContext(source="transport")
        ctx.details["status_code"] = status_code
        if retry_after is not None:
            ctx.details["retry_after"] = retry_after
        super().__init__(message, ctx)
        self.status_code = status_code
        self.retry_after = retry_after


class AuthGrantError(AccessError):
    """Credential is invalid, expired or revoked.

    Terminal for the credential: no amount of retrying will fix it.
    """

    default_class = ErrorClass.AUTH_GRANT

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        *,
        oauth_error: str | None = None,
        principal: str | None = None,
        status_code: int | None = None,
    ) -> None:
        ctx = context or ErrorContext(source="token")
        if oauth_error:
            ctx.details["oauth_error"] = oauth_error
        if principal:
            ctx.details["principal"] = principal
        super().__init__(message, ctx)
        self.oauth_error = oauth_error
        self.principal = principal
        self.status_code = status_code


class CircuitOpenError(AccessError):
    """Raised when a circuit is open and the call is rejected."""

    default_class = ErrorClass.CIRCUIT_OPEN

    def __init__(
        self,
        name: str,
        time_until_retry: float | None = None,
    ) -> None:
        ctx = ErrorContext(source="circuit", details={"operation": name})
        if time_until_retry is not None:
            ctx.details["time_until_retry"] = time_until_retry
        super().__init__(f"Circuit breaker is open for '{name}'", ctx)
        self.name = name
        self.time_until_retry = time_until_retry


class CapacityError(AccessError):
    """Cache could not free enough space; the write was dropped."""

    default_class = ErrorClass.CAPACITY

    def __init__(
        self,
        key: str,
        required_bytes: int,
        available_bytes: int,
    ) -> None:
        super().__init__(
            f"No room for cache entry '{key}' ({required_bytes} bytes)",
            ErrorContext(
                source="cache",
                details={
                    "key": key,
                    "required_bytes": required_bytes,
                    "available_bytes": available_bytes,
                },
            ),
        )
        self.key = key
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes


class ValidationError(AccessError):
    """A result failed a quality or shape check."""

    default_class = ErrorClass.VALIDATION

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        *,
        field: str | None = None,
        score: float | None = None,
        threshold: float | None = None,
    ) -> None:
        ctx = context or ErrorContext(source="validation")
        if field:
            ctx.details["field"] = field
        if score is not None:
            ctx.details["score"] = score
        if threshold is not None:
            ctx.details["threshold"] = threshold
        super().__init__(message, ctx)
        self.field = field
        self.score = score
        self.threshold = threshold


class FallbackError(AccessError):
    """The fallback failed after the primary operation had already failed.

    ``primary_error`` is the primary operation's last error; the fallback's
    own exception is chained as ``__cause__``.
    """

    def __init__(
        self,
        name: str,
        primary_error: BaseException | None,
        fallback_error: BaseException,
    ) -> None:
        super().__init__(
            f"Fallback for '{name}' failed: {fallback_error}",
            ErrorContext(source="executor", details={"operation": name}),
        )
        self.name = name
        self.primary_error = primary_error
        self.fallback_error = fallback_error
        self.__cause__ = fallback_error


class StorageError(AccessError):
    """Credential persistence failed."""

    default_class = ErrorClass.STORAGE

    def __init__(
        self,
        message: str,
        *,
        principal: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        ctx = ErrorContext(source="store")
        if principal:
            ctx.details["principal"] = principal
        super().__init__(message, ctx)
        self.principal = principal
        self.__cause__ = cause


def error_from_response(
    status_code: int,
    body: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    *,
    url: str | None = None,
) -> AccessError:
    """Build a typed error from an HTTP error response.

    Intended for transport boundaries, so callers above them only ever see
    structured errors.

    Args:
        status_code: HTTP status code
        body: Response body (parsed JSON)
        headers: Response headers
        url: Request URL, for diagnostics

    Returns:
        The typed error for this response
    """
    message = extract_error_message(body) or f"HTTP {status_code}"

    oauth_error = body.get("error") if body else None
    if isinstance(oauth_error, str) and is_oauth_grant_failure(oauth_error):
        return AuthGrantError(message, oauth_error=oauth_error, status_code=status_code)

    retry_after = None
    if headers:
        lowered = {k.lower(): v for k, v in headers.items()}
        if "retry-after" in lowered:
            with contextlib.suppress(ValueError):
                retry_after = float(lowered["retry-after"])

    if status_code == 429 or (status_code == 503 and retry_after is not None):
        return RateLimitError(message, status_code=status_code, retry_after=retry_after)

    error_class = classify_http_status(status_code)
    if error_class in (
        ErrorClass.SERVER_ERROR,
        ErrorClass.OVERLOADED,
        ErrorClass.TIMEOUT,
    ):
        return TransientNetworkError(message, status_code=status_code, url=url)

    ctx = ErrorContext(source="remote", details={"status_code": status_code})
    if url:
        ctx.details["url"] = url
    error = AccessError(message, ctx, error_class=error_class)
    error.status_code = status_code  # type: ignore[attr-defined]
    return error
