"""
Tests for configuration.

Tests per-source option parsing with dotted keys, the sources file loader
and process-wide settings from the environment.
"""

import json
import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from http_poller.config import (
    ErrorBehavior,
    ODataTokenMode,
    PaginationStrategy,
    RateLimitAlgorithm,
    Settings,
    SourceConfig,
    parse_sources,
)
from http_poller.exceptions import ConfigurationError


class TestSourceConfig:
    """Test per-source options."""

    def test_defaults(self):
        source = SourceConfig.model_validate(
            {"source.key": "customers", "http.api.base.url": "https://api.example.com"}
        )

        assert source.path == "/"
        assert source.pagination_strategy == PaginationStrategy.OFFSET
        assert source.odata_token_mode == ODataTokenMode.FULL_URL
        assert source.odata_nextlink_field == "@odata.nextLink"
        assert source.odata_skiptoken_param == "$skiptoken"
        assert source.on_error == ErrorBehavior.FAIL
        assert source.rate_limit_algorithm == RateLimitAlgorithm.TOKEN_BUCKET
        assert source.cache_ttl_ms == 60000
        assert source.circuit_breaker_failure_threshold == 5
        assert source.burst_size == 10

    def test_dotted_keys(self):
        source = SourceConfig.model_validate(
            {
                "source.key": "customers",
                "http.api.base.url": "https://api.example.com/",
                "http.api.path": "v1/customers",
                "pagination.strategy": "odata",
                "odata.token.mode": "token_only",
                "behavior.on.error": "ignore",
                "rate.limit.algorithm": "leaky_bucket",
                "cache.ttl.ms": 1000,
                "unknown.option": "ignored",
            }
        )

        assert source.base_url == "https://api.example.com"
        assert source.path == "/v1/customers"
        assert source.pagination_strategy == PaginationStrategy.ODATA
        assert source.odata_token_mode == ODataTokenMode.TOKEN_ONLY
        assert source.on_error == ErrorBehavior.IGNORE
        assert source.rate_limit_algorithm == RateLimitAlgorithm.LEAKY_BUCKET
        assert source.cache_ttl_ms == 1000

    def test_field_names_accepted(self):
        source = SourceConfig(
            source_key="customers",
            base_url="https://api.example.com",
            page_size=25,
        )

        assert source.page_size == 25

    def test_target_key(self):
        source = SourceConfig(source_key="a", base_url="https://api.example.com:8443")
        shared = SourceConfig(
            source_key="b", base_url="https://api.example.com", target="crm"
        )

        assert source.target_key == "api.example.com:8443"
        assert shared.target_key == "crm"

    @pytest.mark.parametrize(
        "options",
        [
            {"http.api.base.url": "ftp://api.example.com"},
            {"http.api.base.url": "not a url"},
            {"pagination.strategy": "SCROLL"},
            {"pagination.page.size": 0},
            {"cache.ttl.ms": -1},
            {"circuit.breaker.failure.threshold": 0},
        ],
    )
    def test_invalid_options(self, options):
        raw = {"source.key": "customers", "http.api.base.url": "https://x.example.com"}
        raw.update(options)

        with pytest.raises(ValidationError):
            SourceConfig.model_validate(raw)

    def test_frozen(self):
        source = SourceConfig(source_key="a", base_url="https://api.example.com")

        with pytest.raises(ValidationError):
            source.page_size = 5


class TestParseSources:
    """Test validation of the sources list."""

    def test_parses_list(self):
        sources = parse_sources(
            [
                {"source.key": "a", "http.api.base.url": "https://a.example.com"},
                {"source.key": "b", "http.api.base.url": "https://b.example.com"},
            ]
        )

        assert [source.source_key for source in sources] == ["a", "b"]

    def test_rejects_non_list(self):
        with pytest.raises(ConfigurationError):
            parse_sources({"source.key": "a"})

    def test_reports_index_of_invalid_source(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_sources(
                [
                    {"source.key": "a", "http.api.base.url": "https://a.example.com"},
                    {"source.key": "b"},
                ]
            )

        assert exc_info.value.context == {"index": 1}
        assert exc_info.value.code == "CONFIGURATION_ERROR"

    def test_rejects_duplicate_keys(self):
        source = {"source.key": "a", "http.api.base.url": "https://a.example.com"}

        with pytest.raises(ConfigurationError, match="Duplicate source key: a"):
            parse_sources([source, source])


class TestSettings:
    """Test process-wide settings."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.port == 8000
        assert settings.health_port == 8001
        assert settings.log_level == "INFO"
        assert settings.offset_store_mode == "memory"
        assert settings.sources_file == "sources.json"

    def test_from_environment(self):
        with patch.dict(
            os.environ,
            {
                "LOG_LEVEL": "debug",
                "OFFSET_STORE_MODE": "FILE",
                "OFFSET_STORE_PATH": "/var/lib/poller/offsets.json",
                "SHUTDOWN_GRACE_SECONDS": "2.5",
            },
            clear=True,
        ):
            settings = Settings(_env_file=None)

        assert settings.log_level == "DEBUG"
        assert settings.offset_store_mode == "file"
        assert settings.offset_store_path == "/var/lib/poller/offsets.json"
        assert settings.shutdown_grace_seconds == 2.5

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="LOUD")

    def test_invalid_offset_store_mode(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, offset_store_mode="redis")

    def test_load_sources(self, test_settings):
        sources = test_settings.load_sources()

        assert len(sources) == 1
        assert sources[0].pagination_strategy == PaginationStrategy.ODATA

    def test_load_sources_missing_file(self, tmp_path):
        settings = Settings(_env_file=None, sources_file=str(tmp_path / "none.json"))

        with pytest.raises(ConfigurationError, match="not found"):
            settings.load_sources()

    def test_load_sources_invalid_json(self, tmp_path):
        path = tmp_path / "sources.json"
        path.write_text("[{")
        settings = Settings(_env_file=None, sources_file=str(path))

        with pytest.raises(ConfigurationError, match="not valid JSON"):
            settings.load_sources()

    def test_load_sources_invalid_source(self, tmp_path):
        path = tmp_path / "sources.json"
        path.write_text(json.dumps([{"source.key": "a"}]))
        settings = Settings(_env_file=None, sources_file=str(path))

        with pytest.raises(ConfigurationError):
            settings.load_sources()

    def test_get_settings_is_cached(self):
        import http_poller.config

        http_poller.config._settings_instance = None
        try:
            with patch.dict(os.environ, {"PORT": "9100"}, clear=True):
                settings = http_poller.config.get_settings()

            assert http_poller.config.get_settings() is settings
            assert http_poller.config.settings.port == 9100
        finally:
            http_poller.config._settings_instance = None
