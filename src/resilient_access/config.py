"""
Aggregate configuration.

``AccessConfig`` bundles the per-component configs and loads them from
environment variables, a mapping, or a YAML file:

    breaker:
      failure_threshold: 3
      open_duration: 60
    retry:
      max_retries: 2
      retryable_statuses: [429, 503]
    cache:
      max_bytes: 10485760
      category_ttls: {ebay-api: 600}
    refresh:
      refresh_buffer: 900
    quality_threshold: 0.7
    log_level: DEBUG
    log_format: json
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from resilient_access.auth.manager import RefreshConfig
from resilient_access.cache.manager import CacheConfig
from resilient_access.errors import ErrorClass, ValidationError
from resilient_access.resilience.circuit_breaker import CircuitBreakerConfig
from resilient_access.resilience.executor import DEFAULT_QUALITY_THRESHOLD
from resilient_access.resilience.retry import RetryPolicy
from resilient_access.telemetry import AccessLogger, LogLevel

_SECTIONS = ("breaker", "retry", "cache", "refresh")


@dataclass
class AccessConfig:
    """Configuration for an ``AccessRuntime``.

    Attributes:
        breaker: Default circuit configuration
        retry: Default retry policy
        cache: Cache configuration
        refresh: Token refresh configuration
        quality_threshold: Default minimum quality score for results
        cache_dir: Directory for persisted cache entries (None disables persistence)
        log_level: Log level for ``configure_logging``
        log_format: 'text' or 'json'
    """

    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    cache: CacheConfig = field(default_factory=CacheConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD
    cache_dir: str | None = None
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> AccessConfig:
        """Create configuration from ``RESILIENT_ACCESS_*`` environment variables."""
        return cls(
            breaker=CircuitBreakerConfig.from_env(),
            retry=RetryPolicy.from_env(),
            cache=CacheConfig.from_env(),
            refresh=RefreshConfig.from_env(),
            quality_threshold=float(
                os.getenv("RESILIENT_ACCESS_QUALITY_THRESHOLD", str(DEFAULT_QUALITY_THRESHOLD))
            ),
            cache_dir=os.getenv("RESILIENT_ACCESS_CACHE_DIR") or None,
            log_level=os.getenv("RESILIENT_ACCESS_LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("RESILIENT_ACCESS_LOG_FORMAT", "text").lower(),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccessConfig:
        """Create configuration from a mapping.

        Args:
            data: Top-level settings plus optional 'breaker', 'retry',
                'cache' and 'refresh' sections

        Returns:
            AccessConfig instance

        Raises:
            ValidationError: On unknown keys or invalid values
        """
        data = dict(data or {})
        sections = {name: data.pop(name, None) or {} for name in _SECTIONS}

        top_fields = {f.name for f in dataclasses.fields(cls)} - set(_SECTIONS)
        unknown = set(data) - top_fields
        if unknown:
            raise ValidationError(
                f"Unknown configuration keys: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )

        retry_section = dict(sections["retry"])
        if "retryable_statuses" in retry_section:
            retry_section["retryable_statuses"] = frozenset(
                int(s) for s in retry_section["retryable_statuses"]
            )
        if "retryable_classes" in retry_section:
            retry_section["retryable_classes"] = frozenset(
                ErrorClass(c) for c in retry_section["retryable_classes"]
            )
        if "retryable_patterns" in retry_section:
            retry_section["retryable_patterns"] = tuple(
                str(p).lower() for p in retry_section["retryable_patterns"]
            )

        refresh_section = dict(sections["refresh"])
        if "exchange_retry" in refresh_section:
            refresh_section["exchange_retry"] = _build(
                RetryPolicy, refresh_section["exchange_retry"], "refresh.exchange_retry"
            )

        config = cls(
            breaker=_build(CircuitBreakerConfig, sections["breaker"], "breaker"),
            retry=_build(RetryPolicy, retry_section, "retry"),
            cache=_build(CacheConfig, sections["cache"], "cache"),
            refresh=_build(RefreshConfig, refresh_section, "refresh"),
            **data,
        )
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: str | Path) -> AccessConfig:
        """Load configuration from a YAML file.

        Args:
            path: YAML file path

        Returns:
            AccessConfig instance
        """
        content = Path(path).expanduser().read_text(encoding="utf-8")
        data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            raise ValidationError("Configuration file must contain a mapping", field=str(path))
        return cls.from_dict(data)

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValidationError: If a value is out of range
        """
        if not 0.0 <= self.quality_threshold <= 1.0:
            raise ValidationError(
                "quality_threshold must be between 0 and 1", field="quality_threshold"
            )
        if self.log_format not in ("text", "json"):
            raise ValidationError("log_format must be 'text' or 'json'", field="log_format")
        if self.log_level.upper() not in LogLevel.__members__:
            raise ValidationError(f"Unknown log level: {self.log_level}", field="log_level")
        if self.breaker.failure_threshold < 1:
            raise ValidationError(
                "failure_threshold must be >= 1", field="breaker.failure_threshold"
            )
        if self.cache.max_bytes <= 0:
            raise ValidationError("max_bytes must be positive", field="cache.max_bytes")
        if self.refresh.refresh_buffer < 0:
            raise ValidationError(
                "refresh_buffer must be >= 0", field="refresh.refresh_buffer"
            )

    def configure_logging(self) -> None:
        """Apply ``log_level`` and ``log_format`` to the package loggers."""
        AccessLogger.configure(level=LogLevel(self.log_level.upper()), format=self.log_format)


def _build(config_cls: type[Any], values: dict[str, Any], section: str) -> Any:
    known = {f.name for f in dataclasses.fields(config_cls)}
    unknown = set(values) - known
    if unknown:
        raise ValidationError(
            f"Unknown keys in '{section}': {', '.join(sorted(unknown))}",
            field=section,
        )
    try:
        return config_cls(**values)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid '{section}' configuration: {e}", field=section) from e
