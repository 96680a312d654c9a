"""
Structured logging for resilient-access.

Package loggers are ``logging.LoggerAdapter``s that accept keyword fields:

    logger = get_logger("resilient_access.cache")
    logger.info("Entry evicted", key="pricing:nike", freed_bytes=2048)

Fields travel on the record as ``extra_fields`` and are rendered by
``JsonFormatter`` / ``TextFormatter`` together with the task-scoped
``LogContext``. Both formatters mask OAuth secrets. Without
``AccessLogger.configure`` records propagate to the application's handlers.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

PACKAGE_LOGGER = "resilient_access"

_REDACTED = "***REDACTED***"

# Keyword arguments that belong to ``Logger.log`` rather than to the record fields
_LOGGING_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})

_current_context: ContextVar[LogContext | None] = ContextVar(
    "resilient_access_log_context", default=None
)


class LogLevel(str, Enum):
    """Log levels accepted by ``AccessLogger.configure``."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def numeric(self) -> int:
        return logging.getLevelName(self.value)


@dataclass(frozen=True)
class LogContext:
    """Fields attached to every record logged from the current task.

    Attributes:
        operation: Resilient operation name (e.g. 'token-refresh')
        principal: Credential owner the work is done for
        extra: Additional context fields
    """

    operation: str | None = None
    principal: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        fields = {"operation": self.operation, "principal": self.principal}
        return {k: v for k, v in fields.items() if v} | self.extra


def get_log_context() -> LogContext:
    return _current_context.get() or LogContext()


def set_log_context(context: LogContext) -> None:
    """Bind ``context`` to the current task (tasks inherit it on creation)."""
    _current_context.set(context)


def clear_log_context() -> None:
    _current_context.set(None)


class SensitiveDataMasker:
    """Redacts OAuth secrets from log text and structured fields.

    Text is matched against ``rules`` (regex, replacement); structured
    fields are redacted by key name.
    """

    RULES: ClassVar[tuple[tuple[str, str], ...]] = (
        # eBay user tokens
        (r"v\^1\.1#[^\s\"',]+", _REDACTED),
        (r"(Bearer\s+)\S+", r"\1" + _REDACTED),
        (r"(Basic\s+)[A-Za-z0-9+/=]+", r"\1" + _REDACTED),
        (
            r"((?:access_token|refresh_token|client_secret)[\"']?\s*[:=]\s*[\"']?)[^\"'\s&,]+",
            r"\1" + _REDACTED,
        ),
        (r"(EBAY_CLIENT_SECRET=)\S+", r"\1" + _REDACTED),
    )

    SECRET_KEY_PARTS: ClassVar[tuple[str, ...]] = ("token", "secret", "password", "authorization")

    # token_type, failure_count, expires_at and the like carry no secret
    SAFE_KEY_SUFFIXES: ClassVar[tuple[str, ...]] = ("_type", "_count", "_at")

    def __init__(self, rules: list[tuple[str, str]] | None = None) -> None:
        self._rules = [
            (re.compile(pattern, re.IGNORECASE), replacement)
            for pattern, replacement in (rules or self.RULES)
        ]

    def mask(self, text: str) -> str:
        """Redact secrets in free text."""
        for pattern, replacement in self._rules:
            text = pattern.sub(replacement, text)
        return text

    def is_secret_key(self, key: str) -> bool:
        lowered = key.lower()
        if lowered.endswith(self.SAFE_KEY_SUFFIXES):
            return False
        return any(part in lowered for part in self.SECRET_KEY_PARTS)

    def mask_value(self, value: Any) -> Any:
        """Redact secrets in a (possibly nested) field value."""
        if isinstance(value, str):
            return self.mask(value)
        if isinstance(value, dict):
            return self.mask_dict(value)
        if isinstance(value, (list, tuple)):
            return [self.mask_value(v) for v in value]
        return value

    def mask_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """Redact secrets in a mapping of fields."""
        return {
            key: _REDACTED if self.is_secret_key(key) else self.mask_value(value)
            for key, value in data.items()
        }


def _record_fields(
    record: logging.LogRecord, masker: SensitiveDataMasker, include_context: bool
) -> tuple[dict[str, Any], dict[str, Any]]:
    context = get_log_context().to_dict() if include_context else {}
    fields = getattr(record, "extra_fields", None) or {}
    return context, masker.mask_dict(fields)


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Context fields are nested under ``context``; keyword fields are merged
    into the top level.
    """

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        include_timestamp: bool = True,
    ) -> None:
        super().__init__()
        self._masker = masker or SensitiveDataMasker()
        self._include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {}
        if self._include_timestamp:
            payload["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(timespec="milliseconds")
        payload["level"] = record.levelname
        payload["logger"] = record.name
        payload["message"] = self._masker.mask(record.getMessage())

        context, fields = _record_fields(record, self._masker, include_context=True)
        if context:
            payload["context"] = context
        payload.update(fields)

        if record.exc_info:
            payload["exception"] = self._masker.mask(self.formatException(record.exc_info))
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """``time level logger: message | key=value ...`` lines."""

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        include_context: bool = True,
    ) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        self._masker = masker or SensitiveDataMasker()
        self._include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        line = self._masker.mask(super().format(record))
        context, fields = _record_fields(record, self._masker, self._include_context)
        merged = {**context, **fields}
        if not merged:
            return line
        return line + " | " + " ".join(f"{key}={value}" for key, value in merged.items())


class AccessLogger(logging.LoggerAdapter):
    """Logger adapter taking structured fields as keyword arguments.

    Example:
        >>> logger = AccessLogger.get_logger("resilient_access.cache")
        >>> logger.warning("Cache write rejected, no room", key="item:1", size=4096)
    """

    _handler: ClassVar[logging.Handler | None] = None

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in _LOGGING_KWARGS}
        if fields:
            kwargs["extra"] = {**(kwargs.get("extra") or {}), "extra_fields": fields}
        return msg, kwargs

    @classmethod
    def get_logger(cls, name: str) -> AccessLogger:
        return cls(logging.getLogger(name), {})

    @classmethod
    def configure(
        cls,
        level: LogLevel = LogLevel.INFO,
        format: str = "text",
        stream: Any = None,
        masker: SensitiveDataMasker | None = None,
    ) -> None:
        """Route package records to a dedicated stream handler.

        Replaces the handler installed by a previous call. Package records
        stop propagating to the root logger.

        Args:
            level: Minimum level
            format: 'json' or 'text'
            stream: Output stream (default: stderr)
            masker: Secret masker for the formatter
        """
        formatter: logging.Formatter = (
            JsonFormatter(masker=masker) if format == "json" else TextFormatter(masker=masker)
        )
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(formatter)

        package_logger = logging.getLogger(PACKAGE_LOGGER)
        if cls._handler is not None:
            package_logger.removeHandler(cls._handler)
        package_logger.addHandler(handler)
        package_logger.setLevel(level.numeric)
        package_logger.propagate = False
        cls._handler = handler


def get_logger(name: str) -> AccessLogger:
    """Get the structured logger for ``name`` (use a ``resilient_access.*`` name)."""
    return AccessLogger.get_logger(name)
