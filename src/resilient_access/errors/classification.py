"""
Error classification for upstream failures.

Maps exceptions, HTTP statuses and OAuth error bodies onto a small set of
error classes so that retry and fallback decisions are pure functions over
structured data rather than ad-hoc message matching.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import httpx


class ErrorClass(str, Enum):
    """Standard error classification."""

    NETWORK = "network"
    """Connection reset, DNS failure or other transport-level fault."""

    TIMEOUT = "timeout"
    """Attempt exceeded its deadline."""

    SERVER_ERROR = "server_error"
    """Transient server-side failure (5xx)."""

    OVERLOADED = "overloaded"
    """Service unavailable or overloaded (503)."""

    RATE_LIMITED = "rate_limited"
    """Throttled by the upstream (429)."""

    AUTH_GRANT = "auth_grant"
    """Invalid, expired or revoked credential; retrying cannot help."""

    AUTHENTICATION = "authentication"
    """Missing or rejected access token (401/403)."""

    INVALID_REQUEST = "invalid_request"
    """Malformed request or unsupported operation (4xx)."""

    NOT_FOUND = "not_found"
    """Requested resource does not exist."""

    CIRCUIT_OPEN = "circuit_open"
    """Call rejected locally by an open circuit breaker."""

    CAPACITY = "capacity"
    """Cache could not make room for a write."""

    VALIDATION = "validation"
    """Result failed a quality or schema check."""

    STORAGE = "storage"
    """Credential persistence failed."""

    OTHER = "other"
    """Unknown classification."""


_RETRYABLE_CLASSES: frozenset[ErrorClass] = frozenset(
    {
        ErrorClass.NETWORK,
        ErrorClass.TIMEOUT,
        ErrorClass.SERVER_ERROR,
        ErrorClass.OVERLOADED,
        ErrorClass.RATE_LIMITED,
    }
)

# Circuit rejections are not retried inside one call, but callers treat them
# as transient (prefer cache or fallback, try again later).
_TRANSIENT_CLASSES: frozenset[ErrorClass] = _RETRYABLE_CLASSES | {
    ErrorClass.CIRCUIT_OPEN,
    ErrorClass.STORAGE,
}

_STATUS_MAPPING: dict[int, ErrorClass] = {
    400: ErrorClass.INVALID_REQUEST,
    401: ErrorClass.AUTHENTICATION,
    403: ErrorClass.AUTHENTICATION,
    404: ErrorClass.NOT_FOUND,
    408: ErrorClass.TIMEOUT,
    422: ErrorClass.INVALID_REQUEST,
    429: ErrorClass.RATE_LIMITED,
    500: ErrorClass.SERVER_ERROR,
    502: ErrorClass.SERVER_ERROR,
    503: ErrorClass.OVERLOADED,
    504: ErrorClass.TIMEOUT,
}

OAUTH_GRANT_FAILURES: tuple[str, ...] = (
    "invalid_grant",
    "invalid_client",
    "unauthorized_client",
    "unsupported_grant_type",
    "invalid_refresh_token",
)


def classify_http_status(status_code: int) -> ErrorClass:
    """Classify an HTTP status code.

    Args:
        status_code: HTTP status code

    Returns:
        ErrorClass for the status
    """
    if status_code in _STATUS_MAPPING:
        return _STATUS_MAPPING[status_code]
    if 400 <= status_code < 500:
        return ErrorClass.INVALID_REQUEST
    if 500 <= status_code < 600:
        return ErrorClass.SERVER_ERROR
    return ErrorClass.OTHER


def is_oauth_grant_failure(text: str | None) -> bool:
    """Check whether an OAuth error code or message names a dead grant."""
    if not text:
        return False
    lowered = text.lower()
    return any(code in lowered for code in OAUTH_GRANT_FAILURES)


def classify_error(error: BaseException) -> ErrorClass:
    """Classify an exception.

    Typed errors carry their class. Timeouts and connection errors from the
    standard library and httpx are recognised by type, and any exception
    carrying an integer ``status_code`` attribute is classified by status.

    Args:
        error: The exception to classify

    Returns:
        ErrorClass for the exception
    """
    error_class = getattr(error, "error_class", None)
    if isinstance(error_class, ErrorClass):
        return error_class

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorClass.TIMEOUT

    if isinstance(error, httpx.TimeoutException):
        return ErrorClass.TIMEOUT
    if isinstance(error, httpx.HTTPStatusError):
        return classify_http_status(error.response.status_code)
    if isinstance(error, httpx.TransportError):
        return ErrorClass.NETWORK

    if isinstance(error, ConnectionError):
        return ErrorClass.NETWORK

    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return classify_http_status(status_code)

    return ErrorClass.OTHER


def is_retryable(error_class: ErrorClass) -> bool:
    """Check if an error class is retryable by default."""
    return error_class in _RETRYABLE_CLASSES


def is_transient(error_class: ErrorClass) -> bool:
    """Check if an error class describes a condition that may clear by itself."""
    return error_class in _TRANSIENT_CLASSES


def extract_error_message(body: dict[str, Any] | None) -> str | None:
    """Extract an error message from a response body.

    Supports the OAuth envelope (``error`` + ``error_description``), the eBay
    REST envelope (``errors[0].message``) and plain ``message`` fields.

    Args:
        body: Response body (parsed JSON)

    Returns:
        Error message if found, None otherwise
    """
    if not body:
        return None

    description = body.get("error_description")
    if isinstance(description, str) and description:
        return description

    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict):
            msg = first.get("longMessage") or first.get("message")
            if isinstance(msg, str):
                return msg

    error = body.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        msg = error.get("message")
        if isinstance(msg, str):
            return msg

    msg = body.get("message")
    if isinstance(msg, str):
        return msg

    return None
