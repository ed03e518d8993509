"""
Offset persistence for the HTTP poller.

Provides pluggable offset backends:
- Memory: offsets live for the lifetime of the process
- File: offsets are written to a JSON document and survive restarts
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OffsetRecord:
    """Committed position of one source."""

    source_key: str
    offset_value: str | int
    last_updated: datetime = field(default_factory=lambda: datetime.now(UTC))
    continuation_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "source_key": self.source_key,
            "offset": self.offset_value,
            "last_updated": self.last_updated.isoformat(),
            "continuation_kind": self.continuation_kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OffsetRecord":
        """Build a record from ``to_dict`` output."""
        return cls(
            source_key=data["source_key"],
            offset_value=data["offset"],
            last_updated=datetime.fromisoformat(data["last_updated"]),
            continuation_kind=data.get("continuation_kind"),
        )


class OffsetStore(ABC):
    """Abstract base class for offset persistence."""

    @abstractmethod
    async def load_offset(self, source_key: str) -> OffsetRecord | None:
        """
        Load the committed offset of a source.

        Args:
            source_key: Source identifier

        Returns:
            The committed record or None if nothing was saved
        """
        pass

    @abstractmethod
    async def save_offset(self, source_key: str, record: OffsetRecord) -> None:
        """
        Commit an offset for a source.

        Args:
            source_key: Source identifier
            record: Offset to commit
        """
        pass

    @abstractmethod
    async def delete_offset(self, source_key: str) -> bool:
        """
        Forget the committed offset of a source.

        Returns:
            True if an offset was removed
        """
        pass

    @abstractmethod
    async def get_all_sources(self) -> list[str]:
        """Get the keys of every source with a committed offset."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the offset backend is healthy.

        Returns:
            True if healthy, False otherwise
        """
        pass

    def get_stats(self) -> dict[str, Any]:
        """Get backend statistics."""
        return {"offsets_count": 0, "backend": type(self).__name__}


class InMemoryOffsetStore(OffsetStore):
    """In-memory offset storage."""

    def __init__(self) -> None:
        """Initialize in-memory offset store."""
        self.offsets: dict[str, OffsetRecord] = {}

    async def load_offset(self, source_key: str) -> OffsetRecord | None:
        """Load an offset from memory."""
        return self.offsets.get(source_key)

    async def save_offset(self, source_key: str, record: OffsetRecord) -> None:
        """Save an offset in memory."""
        self.offsets[source_key] = record
        logger.debug(f"Saved offset for {source_key}: {record.offset_value}")

    async def delete_offset(self, source_key: str) -> bool:
        """Delete an offset from memory."""
        removed = self.offsets.pop(source_key, None) is not None
        if removed:
            logger.info(f"Cleared offset for source {source_key}")
        return removed

    async def get_all_sources(self) -> list[str]:
        """Get list of all sources with offsets."""
        return sorted(self.offsets)

    async def health_check(self) -> bool:
        """Check if in-memory state is healthy (always true for memory)."""
        return True

    def get_stats(self) -> dict[str, Any]:
        """Get memory usage statistics."""
        return {"offsets_count": len(self.offsets), "backend": "memory"}


class FileOffsetStore(OffsetStore):
    """
    JSON-file offset storage.

    The whole document is rewritten on every save through a temporary file
    and ``os.replace``, so a crash mid-write leaves the previous offsets
    intact.
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize the file offset store, loading any existing offsets."""
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self.offsets: dict[str, OffsetRecord] = self._read()

    def _read(self) -> dict[str, OffsetRecord]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            offsets = {key: OffsetRecord.from_dict(item) for key, item in raw.items()}
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to read offsets from {self.path}: {e}")
            raise
        logger.info(f"Loaded {len(offsets)} offsets from {self.path}")
        return offsets

    def _write(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    async def _flush(self) -> None:
        document = {key: record.to_dict() for key, record in self.offsets.items()}
        await asyncio.to_thread(self._write, document)

    async def load_offset(self, source_key: str) -> OffsetRecord | None:
        """Load an offset from the file-backed cache."""
        return self.offsets.get(source_key)

    async def save_offset(self, source_key: str, record: OffsetRecord) -> None:
        """Save an offset and rewrite the offsets file."""
        async with self._lock:
            self.offsets[source_key] = record
            await self._flush()
        logger.debug(f"Persisted offset for {source_key}: {record.offset_value}")

    async def delete_offset(self, source_key: str) -> bool:
        """Delete an offset and rewrite the offsets file."""
        async with self._lock:
            if source_key not in self.offsets:
                return False
            del self.offsets[source_key]
            await self._flush()
        logger.info(f"Cleared persisted offset for source {source_key}")
        return True

    async def get_all_sources(self) -> list[str]:
        """Get list of all sources with offsets."""
        return sorted(self.offsets)

    async def health_check(self) -> bool:
        """Check the offsets directory is writable."""
        directory = self.path.parent
        return directory.exists() and os.access(directory, os.W_OK)

    def get_stats(self) -> dict[str, Any]:
        """Get file backend statistics."""
        return {
            "offsets_count": len(self.offsets),
            "backend": "file",
            "path": str(self.path),
        }


class OffsetStoreFactory:
    """Factory for creating the configured offset backend."""

    @staticmethod
    def create_offset_store(mode: str, **kwargs: Any) -> OffsetStore:
        """
        Create an offset store.

        Args:
            mode: Backend name ('memory' or 'file')
            **kwargs: Backend options (``path`` for the file backend)

        Returns:
            OffsetStore instance

        Raises:
            ValueError: If mode is not supported
        """
        mode = mode.lower()

        if mode == "memory":
            logger.info("Creating in-memory offset store")
            return InMemoryOffsetStore()
        elif mode == "file":
            path = kwargs.get("path") or "./offsets.json"
            logger.info(f"Creating file offset store at {path}")
            return FileOffsetStore(path)
        else:
            raise ValueError(
                f"Unknown offset store mode: {mode}. Supported modes: 'memory', 'file'"
            )

    @staticmethod
    def get_supported_modes() -> list[str]:
        """Get list of supported offset store modes."""
        return ["memory", "file"]
