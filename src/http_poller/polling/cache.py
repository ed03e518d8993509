"""
Caching layer for the polling system.

This module provides a namespaced in-memory cache. Each namespace is an
isolated LRU partition with its own capacity and default TTL, so page
responses can never evict auth material or schema lookups.
"""

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class CacheNamespace(str, Enum):
    """Isolated cache partitions."""

    RESPONSE = "RESPONSE"
    SCHEMA = "SCHEMA"
    AUTH = "AUTH"
    METADATA = "METADATA"


class _Miss:
    """Sentinel returned by ``CacheStore.get`` when nothing usable is cached."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS: Any = _Miss()


@dataclass(frozen=True)
class NamespacePolicy:
    """Capacity and default TTL of one namespace."""

    capacity: int = 1000
    ttl_seconds: float = 300.0


class CacheEntry:
    """Represents a single cache entry with expiration."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float) -> None:
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        """Check if this cache entry has expired."""
        return now >= self.expires_at


@dataclass
class NamespaceStats:
    """Counters for one namespace."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0


class CacheStore:
    """
    In-memory, namespaced cache for polling operations.

    Reads expire entries lazily; a background task sweeps every namespace
    at a fixed interval. All mutations run under one lock so concurrent
    workers never observe a half-applied eviction.
    """

    def __init__(
        self,
        policies: dict[CacheNamespace, NamespacePolicy] | None = None,
        maintenance_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policies = {namespace: NamespacePolicy() for namespace in CacheNamespace}
        if policies:
            self._policies.update(policies)

        self._entries: dict[CacheNamespace, OrderedDict[str, CacheEntry]] = {
            namespace: OrderedDict() for namespace in CacheNamespace
        }
        self._stats = {namespace: NamespaceStats() for namespace in CacheNamespace}
        self._lock = asyncio.Lock()
        self._clock = clock
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self._cleanup_task: asyncio.Task[None] | None = None

    def policy(self, namespace: CacheNamespace) -> NamespacePolicy:
        """Get the policy of a namespace."""
        return self._policies[namespace]

    async def get(self, namespace: CacheNamespace, key: str) -> Any:
        """
        Get a value from the cache.

        Args:
            namespace: Cache partition
            key: Cache key

        Returns:
            Cached value, or ``MISS`` if not found or expired
        """
        async with self._lock:
            entries = self._entries[namespace]
            stats = self._stats[namespace]

            entry = entries.get(key)
            if entry is None:
                stats.misses += 1
                return MISS

            if entry.is_expired(self._clock()):
                del entries[key]
                stats.expirations += 1
                stats.misses += 1
                return MISS

            entries.move_to_end(key)
            stats.hits += 1
            return entry.value

    async def put(
        self,
        namespace: CacheNamespace,
        key: str,
        value: Any,
        ttl_seconds: float | None = None,
    ) -> None:
        """
        Set a value in the cache.

        Args:
            namespace: Cache partition
            key: Cache key
            value: Value to cache
            ttl_seconds: Time to live; defaults to the namespace TTL. A
                non-positive TTL drops any entry stored under the key
        """
        policy = self._policies[namespace]
        ttl = policy.ttl_seconds if ttl_seconds is None else ttl_seconds

        async with self._lock:
            entries = self._entries[namespace]
            if ttl <= 0:
                entries.pop(key, None)
                return

            entries[key] = CacheEntry(value, self._clock() + ttl)
            entries.move_to_end(key)

            while len(entries) > policy.capacity:
                evicted_key, _ = entries.popitem(last=False)
                self._stats[namespace].evictions += 1
                logger.debug(
                    "Cache entry evicted",
                    namespace=namespace.value,
                    key=evicted_key,
                )

    async def delete(self, namespace: CacheNamespace, key: str) -> bool:
        """
        Delete a value from the cache.

        Returns:
            True if key was deleted, False if not found
        """
        async with self._lock:
            return self._entries[namespace].pop(key, None) is not None

    async def clear(self, namespace: CacheNamespace | None = None) -> None:
        """Clear one namespace, or every namespace when none is given."""
        async with self._lock:
            targets = [namespace] if namespace else list(CacheNamespace)
            for target in targets:
                self._entries[target].clear()

        logger.info(
            "Cache cleared",
            namespace=namespace.value if namespace else "all",
        )

    async def cleanup_expired(self) -> int:
        """
        Remove expired entries from every namespace.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            now = self._clock()
            removed = 0
            for namespace, entries in self._entries.items():
                expired_keys = [
                    key for key, entry in entries.items() if entry.is_expired(now)
                ]
                for key in expired_keys:
                    del entries[key]
                self._stats[namespace].expirations += len(expired_keys)
                removed += len(expired_keys)
            return removed

    def statistics(self) -> dict[str, Any]:
        """Get cache statistics, totalled and per namespace."""
        namespaces: dict[str, dict[str, int]] = {}
        totals = {"hits": 0, "misses": 0, "size": 0, "evictions": 0, "expirations": 0}

        for namespace in CacheNamespace:
            stats = self._stats[namespace]
            item = {
                "hits": stats.hits,
                "misses": stats.misses,
                "size": len(self._entries[namespace]),
                "evictions": stats.evictions,
                "expirations": stats.expirations,
            }
            namespaces[namespace.value] = item
            for name, count in item.items():
                totals[name] += count

        lookups = totals["hits"] + totals["misses"]
        return {
            **totals,
            "hit_rate_percent": (
                round(totals["hits"] / lookups * 100, 2) if lookups else 0.0
            ),
            "namespaces": namespaces,
            "maintenance_running": self.is_running(),
        }

    def is_running(self) -> bool:
        """Check whether the background sweep is active."""
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def start(self) -> None:
        """Start the background expiry sweep."""
        if self.is_running():
            return
        logger.info(
            "Starting cache maintenance",
            interval_seconds=self.maintenance_interval_seconds,
        )
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Stop the background expiry sweep."""
        if self._cleanup_task:
            logger.info("Stopping cache maintenance")
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        """Background task to clean up expired cache entries."""
        while True:
            try:
                await asyncio.sleep(self.maintenance_interval_seconds)
                expired_count = await self.cleanup_expired()
                if expired_count > 0:
                    logger.debug(
                        "Cache cleanup completed", expired_entries=expired_count
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Cache cleanup failed", error=str(e))
