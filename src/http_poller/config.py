"""
Configuration management for the HTTP poller.

This module handles environment variables, settings validation, and the
per-source option maps that drive each polling pipeline. Process-wide
settings come from Pydantic Settings; per-source options use the dotted
keys operators already know (``pagination.strategy``, ``cache.ttl.ms``...)
as field aliases.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class PaginationStrategy(str, Enum):
    """Supported pagination strategies."""

    OFFSET = "OFFSET"
    CURSOR = "CURSOR"
    LINK_HEADER = "LINK_HEADER"
    PAGE_NUMBER = "PAGE_NUMBER"
    TIME_BASED = "TIME_BASED"
    ODATA = "ODATA"


class ODataTokenMode(str, Enum):
    """How an OData continuation link is turned into the next request."""

    FULL_URL = "FULL_URL"
    TOKEN_ONLY = "TOKEN_ONLY"


class ErrorBehavior(str, Enum):
    """What a poll cycle does with upstream rejections and bad bodies."""

    FAIL = "FAIL"
    IGNORE = "IGNORE"


class RateLimitAlgorithm(str, Enum):
    """Supported admission algorithms."""

    TOKEN_BUCKET = "TOKEN_BUCKET"
    SLIDING_WINDOW = "SLIDING_WINDOW"
    FIXED_WINDOW = "FIXED_WINDOW"
    LEAKY_BUCKET = "LEAKY_BUCKET"


class OffsetStoreMode(str, Enum):
    """Offset persistence backends."""

    MEMORY = "memory"
    FILE = "file"


class SourceConfig(BaseModel):
    """Options for a single polled source."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    # Endpoint
    source_key: str = Field(..., alias="source.key", min_length=1)
    base_url: str = Field(..., alias="http.api.base.url")
    path: str = Field(default="/", alias="http.api.path")
    target: str | None = Field(
        default=None,
        alias="http.api.target",
        description="Key shared by sources that hit the same upstream "
        "(defaults to the base URL host)",
    )
    headers: dict[str, str] = Field(default_factory=dict, alias="http.request.headers")
    request_timeout_ms: int = Field(
        default=30000, alias="http.request.timeout.ms", gt=0
    )
    initial_offset: str | None = Field(default=None, alias="http.initial.offset")
    data_pointer: str | None = Field(default=None, alias="response.data.json.pointer")

    # Pagination
    pagination_strategy: PaginationStrategy = Field(
        default=PaginationStrategy.OFFSET, alias="pagination.strategy"
    )
    page_size: int = Field(default=100, alias="pagination.page.size", gt=0)
    offset_param: str = Field(default="offset", alias="pagination.offset.param")
    limit_param: str = Field(default="limit", alias="pagination.limit.param")
    page_param: str = Field(default="page", alias="pagination.page.param")
    size_param: str = Field(default="size", alias="pagination.size.param")
    cursor_param: str = Field(default="cursor", alias="pagination.cursor.param")
    since_param: str = Field(default="since", alias="pagination.since.param")
    cursor_field: str = Field(default="next_cursor", alias="pagination.cursor.field")
    cursor_header: str | None = Field(default=None, alias="pagination.cursor.header")
    timestamp_field: str = Field(
        default="updated_at", alias="pagination.timestamp.field"
    )
    max_pages: int | None = Field(default=None, alias="pagination.max.pages", gt=0)
    terminal_reset_ms: int | None = Field(
        default=None, alias="pagination.terminal.reset.ms", ge=0
    )

    # OData
    odata_token_mode: ODataTokenMode = Field(
        default=ODataTokenMode.FULL_URL, alias="odata.token.mode"
    )
    odata_nextlink_field: str = Field(
        default="@odata.nextLink", alias="odata.nextlink.field"
    )
    odata_deltalink_field: str = Field(
        default="@odata.deltaLink", alias="odata.deltalink.field"
    )
    odata_skiptoken_param: str = Field(
        default="$skiptoken", alias="odata.skiptoken.param"
    )
    odata_deltatoken_param: str = Field(
        default="$deltatoken", alias="odata.deltatoken.param"
    )
    odata_nextlink_poll_interval_ms: int | None = Field(
        default=None, alias="odata.nextlink.poll.interval.ms", ge=0
    )
    odata_deltalink_poll_interval_ms: int | None = Field(
        default=None, alias="odata.deltalink.poll.interval.ms", ge=0
    )

    # Response cache
    cache_enabled: bool = Field(default=True, alias="cache.enabled")
    cache_ttl_ms: int = Field(default=60000, alias="cache.ttl.ms", gt=0)
    max_cache_size: int = Field(default=1000, alias="max.cache.size", gt=0)

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, alias="rate.limit.enabled")
    rate_limit_requests_per_second: float = Field(
        default=10.0, alias="rate.limit.requests.per.second", gt=0
    )
    rate_limit_algorithm: RateLimitAlgorithm = Field(
        default=RateLimitAlgorithm.TOKEN_BUCKET, alias="rate.limit.algorithm"
    )
    rate_limit_burst_size: int | None = Field(
        default=None, alias="rate.limit.burst.size", gt=0
    )
    rate_limit_window_ms: int = Field(default=1000, alias="rate.limit.window.ms", gt=0)
    rate_limit_admit_timeout_ms: int = Field(
        default=0, alias="rate.limit.admit.timeout.ms", ge=0
    )

    # Circuit breaker
    circuit_breaker_failure_threshold: int = Field(
        default=5, alias="circuit.breaker.failure.threshold", gt=0
    )
    circuit_breaker_timeout_ms: int = Field(
        default=60000, alias="circuit.breaker.timeout.ms", ge=0
    )
    circuit_breaker_recovery_time_ms: int = Field(
        default=30000, alias="circuit.breaker.recovery.time.ms", gt=0
    )

    # Error handling and cadence
    on_error: ErrorBehavior = Field(
        default=ErrorBehavior.FAIL, alias="behavior.on.error"
    )
    poll_interval_ms: int = Field(default=60000, alias="poll.interval.ms", gt=0)
    poll_max_interval_ms: int = Field(
        default=600000, alias="poll.max.interval.ms", gt=0
    )

    @field_validator(
        "pagination_strategy",
        "odata_token_mode",
        "on_error",
        "rate_limit_algorithm",
        mode="before",
    )
    @classmethod
    def normalize_enum_name(cls, v: Any) -> Any:
        """Accept enum names in any case."""
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate the base URL is absolute."""
        parts = urlsplit(v)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise ValueError(f"Invalid base URL: {v}")
        return v.rstrip("/")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the configured path is rooted."""
        return v if v.startswith("/") else f"/{v}"

    @property
    def target_key(self) -> str:
        """Key used to share rate limiters and circuit breakers."""
        return self.target or urlsplit(self.base_url).netloc

    @property
    def burst_size(self) -> int:
        """Bucket capacity, defaulting to one second of requests."""
        if self.rate_limit_burst_size is not None:
            return self.rate_limit_burst_size
        return max(1, int(self.rate_limit_requests_per_second))


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    health_port: int = Field(
        default=8001, description="Health check port in standalone mode"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format")

    # Sources
    sources_file: str = Field(
        default="sources.json",
        description="JSON file holding a list of per-source option maps",
    )

    # Offset persistence
    offset_store_mode: str = Field(
        default="memory", description="Offset store backend: memory, file"
    )
    offset_store_path: str = Field(
        default="./offsets.json", description="Offset file for the file backend"
    )

    # Cache configuration
    cache_maintenance_interval_ms: int = Field(
        default=300000, description="Cache expiry sweep interval in milliseconds"
    )
    cache_response_capacity: int | None = Field(
        default=None,
        description="RESPONSE namespace capacity (defaults to the largest "
        "max.cache.size among sources)",
    )
    cache_schema_capacity: int = Field(default=100, description="SCHEMA capacity")
    cache_schema_ttl_ms: int = Field(default=3600000, description="SCHEMA TTL")
    cache_auth_capacity: int = Field(default=50, description="AUTH capacity")
    cache_auth_ttl_ms: int = Field(default=300000, description="AUTH TTL")
    cache_metadata_capacity: int = Field(default=500, description="METADATA capacity")
    cache_metadata_ttl_ms: int = Field(default=600000, description="METADATA TTL")

    # Worker lifecycle
    shutdown_grace_seconds: float = Field(
        default=10.0, description="Grace period for in-flight polls on shutdown"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("offset_store_mode")
    @classmethod
    def validate_offset_store_mode(cls, v: str) -> str:
        """Validate offset store mode."""
        allowed_modes = {mode.value for mode in OffsetStoreMode}
        if v.lower() not in allowed_modes:
            raise ValueError(f"Invalid offset store mode: {v}")
        return v.lower()

    def load_sources(self) -> list[SourceConfig]:
        """
        Load per-source configurations from ``sources_file``.

        Returns:
            Parsed source configurations

        Raises:
            ConfigurationError: If the file is missing, malformed or invalid
        """
        path = Path(self.sources_file)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Sources file not found: {path}", {"path": str(path)}
            ) from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Sources file is not valid JSON: {e}", {"path": str(path)}
            ) from e

        return parse_sources(raw)


def parse_sources(raw: Any) -> list[SourceConfig]:
    """
    Validate a list of per-source option maps.

    Args:
        raw: List of dicts keyed by dotted option names

    Returns:
        Parsed source configurations

    Raises:
        ConfigurationError: If the options are invalid or keys repeat
    """
    if not isinstance(raw, list):
        raise ConfigurationError("Sources must be a list of option maps")

    sources: list[SourceConfig] = []
    seen: set[str] = set()
    for index, options in enumerate(raw):
        try:
            source = SourceConfig.model_validate(options)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid source configuration at index {index}: {e}",
                {"index": index},
            ) from e

        if source.source_key in seen:
            raise ConfigurationError(
                f"Duplicate source key: {source.source_key}",
                {"source_key": source.source_key},
            )
        seen.add(source.source_key)
        sources.append(source)

    return sources


# Global settings instance - initialized lazily to avoid import-time errors
_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def __getattr__(name: str) -> Any:
    """Allow module-level access to settings attributes."""
    if name == "settings":
        return get_settings()
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
