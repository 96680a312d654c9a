"""
Error hierarchy for resilient-access.

Provides typed errors and pure classification helpers used by the retry,
circuit breaker and token refresh logic.
"""

from resilient_access.errors.base import (
    AccessError,
    AuthGrantError,
    CapacityError,
    CircuitOpenError,
    ErrorContext,
    FallbackError,
    OperationTimeoutError,
    RateLimitError,
    StorageError,
    TransientNetworkError,
    ValidationError,
    error_from_response,
)
from resilient_access.errors.classification import (
    OAUTH_GRANT_FAILURES,
    ErrorClass,
    classify_error,
    classify_http_status,
    extract_error_message,
    is_oauth_grant_failure,
    is_retryable,
    is_transient,
)

__all__ = [
    # Base errors
    "AccessError",
    "AuthGrantError",
    "CapacityError",
    "CircuitOpenError",
    "ErrorContext",
    "FallbackError",
    "OperationTimeoutError",
    "RateLimitError",
    "StorageError",
    "TransientNetworkError",
    "ValidationError",
    "error_from_response",
    # Classification
    "OAUTH_GRANT_FAILURES",
    "ErrorClass",
    "classify_error",
    "classify_http_status",
    "extract_error_message",
    "is_oauth_grant_failure",
    "is_retryable",
    "is_transient",
]
