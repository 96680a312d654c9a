"""Tests for AccessConfig."""

from __future__ import annotations

from pathlib import Path

import pytest

from resilient_access import AccessConfig
from resilient_access.errors import ErrorClass, ValidationError


class TestAccessConfig:
    """Tests for AccessConfig loading and validation."""

    def test_defaults(self) -> None:
        """Test default component configs."""
        config = AccessConfig()
        assert config.breaker.failure_threshold == 5
        assert config.retry.max_attempts == 4
        assert config.cache.category_ttls["ebay-api"] == 900.0
        assert config.refresh.refresh_buffer == 1800.0
        assert config.quality_threshold == 0.6
        assert config.cache_dir is None

    def test_from_dict(self) -> None:
        """Test sections map onto component configs."""
        config = AccessConfig.from_dict(
            {
                "breaker": {"failure_threshold": 3, "open_duration": 30},
                "retry": {
                    "max_retries": 2,
                    "retryable_statuses": [429, "503"],
                    "retryable_classes": ["rate_limited", "timeout"],
                    "retryable_patterns": ["Connection Reset"],
                },
                "cache": {"max_bytes": 1024, "category_ttls": {"ebay-api": 600}},
                "refresh": {"refresh_buffer": 900, "exchange_retry": {"max_retries": 1}},
                "quality_threshold": 0.7,
                "log_format": "json",
            }
        )

        assert config.breaker.failure_threshold == 3
        assert config.breaker.open_duration == 30
        assert config.retry.max_retries == 2
        assert config.retry.retryable_statuses == frozenset({429, 503})
        assert config.retry.retryable_classes == frozenset(
            {ErrorClass.RATE_LIMITED, ErrorClass.TIMEOUT}
        )
        assert config.retry.retryable_patterns == ("connection reset",)
        assert config.cache.max_bytes == 1024
        assert config.cache.category_ttls == {"ebay-api": 600}
        assert config.refresh.refresh_buffer == 900
        assert config.refresh.exchange_retry.max_retries == 1
        assert config.quality_threshold == 0.7
        assert config.log_format == "json"

    def test_empty_dict(self) -> None:
        """Test an empty mapping gives the defaults."""
        assert AccessConfig.from_dict({}) == AccessConfig()

    @pytest.mark.parametrize(
        "data",
        [
            {"unknown": 1},
            {"breaker": {"threshold": 3}},
            {"retry": {"max_retries": -1}},
            {"quality_threshold": 1.5},
            {"log_format": "xml"},
            {"log_level": "LOUD"},
            {"breaker": {"failure_threshold": 0}},
            {"cache": {"max_bytes": 0}},
            {"refresh": {"refresh_buffer": -1}},
        ],
    )
    def test_invalid(self, data: dict[str, object]) -> None:
        """Test invalid settings raise ValidationError."""
        with pytest.raises(ValidationError):
            AccessConfig.from_dict(data)

    def test_from_yaml(self, tmp_path: Path) -> None:
        """Test loading a YAML file."""
        path = tmp_path / "access.yaml"
        path.write_text(
            "breaker:\n"
            "  failure_threshold: 3\n"
            "refresh:\n"
            "  refresh_buffer: 600\n"
            "cache_dir: /tmp/access-cache\n"
            "log_level: DEBUG\n",
            encoding="utf-8",
        )

        config = AccessConfig.from_yaml(path)

        assert config.breaker.failure_threshold == 3
        assert config.refresh.refresh_buffer == 600
        assert config.cache_dir == "/tmp/access-cache"
        assert config.log_level == "DEBUG"

    def test_from_yaml_not_mapping(self, tmp_path: Path) -> None:
        """Test a YAML list is rejected."""
        path = tmp_path / "access.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            AccessConfig.from_yaml(path)

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test RESILIENT_ACCESS_* environment variables."""
        monkeypatch.setenv("RESILIENT_ACCESS_BREAKER_FAILURE_THRESHOLD", "2")
        monkeypatch.setenv("RESILIENT_ACCESS_RETRY_MAX_RETRIES", "1")
        monkeypatch.setenv("RESILIENT_ACCESS_CACHE_MAX_BYTES", "2048")
        monkeypatch.setenv("RESILIENT_ACCESS_REFRESH_BUFFER", "300")
        monkeypatch.setenv("RESILIENT_ACCESS_QUALITY_THRESHOLD", "0.8")
        monkeypatch.setenv("RESILIENT_ACCESS_LOG_FORMAT", "JSON")

        config = AccessConfig.from_env()

        assert config.breaker.failure_threshold == 2
        assert config.retry.max_retries == 1
        assert config.cache.max_bytes == 2048
        assert config.refresh.refresh_buffer == 300
        assert config.quality_threshold == 0.8
        assert config.log_format == "json"
