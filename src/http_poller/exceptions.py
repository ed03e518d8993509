"""
Custom exceptions for the HTTP poller.

This module defines the error taxonomy shared by the polling pipeline.
Only ``UpstreamRejection`` and ``ResponseDecodeError`` ever leave a poll
cycle, and only when a source is configured to fail on errors.
"""

from typing import Any


class PollerError(Exception):
    """Base exception for HTTP poller errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code or "POLLER_ERROR"
        self.context = context or {}


class TransientNetworkError(PollerError):
    """Exception for timeouts, resets and other transport failures."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "TRANSIENT_NETWORK_ERROR", context)


class MalformedContinuationError(PollerError):
    """Exception for a continuation link that cannot be parsed."""

    def __init__(
        self,
        message: str,
        continuation: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "MALFORMED_CONTINUATION", context)
        self.continuation = continuation


class UpstreamRejection(PollerError):
    """Exception for 4xx/5xx responses from the upstream API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "UPSTREAM_REJECTION", context)
        self.status_code = status_code


class ResponseDecodeError(PollerError):
    """Exception for response bodies that cannot be parsed."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "RESPONSE_DECODE_ERROR", context)


class CacheCorruptionError(PollerError):
    """Exception for cached values that fail validation."""

    def __init__(
        self,
        message: str,
        namespace: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "CACHE_CORRUPTION", context)
        self.namespace = namespace


class ConfigurationError(PollerError):
    """Exception for configuration related errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "CONFIGURATION_ERROR", context)
