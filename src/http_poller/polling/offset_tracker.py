"""
Offset tracker for the polling system.

This module is the only writer of a source's committed offset. It reads
the last commit on startup and refuses writes that would move a monotonic
offset backwards.
"""

import structlog

from ..config import PaginationStrategy, SourceConfig
from ..state.manager import OffsetRecord, OffsetStore
from ..utils.offsets import compare_offsets
from .pagination import PageState

logger = structlog.get_logger(__name__)

MONOTONIC_STRATEGIES = frozenset(
    {
        PaginationStrategy.OFFSET,
        PaginationStrategy.PAGE_NUMBER,
        PaginationStrategy.TIME_BASED,
    }
)


class OffsetTracker:
    """
    Reads and writes the committed offset of one source.

    Owned by a single worker; not locked.
    """

    def __init__(self, config: SourceConfig, store: OffsetStore) -> None:
        """
        Initialize the offset tracker.

        Args:
            config: Source configuration
            store: Offset persistence backend
        """
        self.config = config
        self.store = store
        self._last_written: OffsetRecord | None = None

    @property
    def source_key(self) -> str:
        return self.config.source_key

    @property
    def is_monotonic(self) -> bool:
        """Whether offsets of this source must never decrease."""
        return self.config.pagination_strategy in MONOTONIC_STRATEGIES

    async def read(self) -> OffsetRecord | None:
        """
        Read the committed offset.

        Safe before any write: falls back to the configured initial offset,
        or None when there is none.

        Returns:
            The committed or initial offset record
        """
        record = await self.store.load_offset(self.source_key)
        if record is not None:
            self._last_written = record
            logger.info(
                "Loaded committed offset",
                source=self.source_key,
                offset=record.offset_value,
                continuation_kind=record.continuation_kind,
            )
            return record

        if self.config.initial_offset is not None:
            return OffsetRecord(
                source_key=self.source_key, offset_value=self.config.initial_offset
            )
        return None

    async def write(self, record: OffsetRecord) -> bool:
        """
        Commit an offset.

        Args:
            record: Offset to commit

        Returns:
            True if the store was updated, False if the write was skipped
        """
        if record.source_key != self.source_key:
            raise ValueError(
                f"Offset for {record.source_key} written to tracker of "
                f"{self.source_key}"
            )

        previous = self._last_written
        if previous is None:
            previous = await self.store.load_offset(self.source_key)
        if previous is not None:
            if (
                previous.offset_value == record.offset_value
                and previous.continuation_kind == record.continuation_kind
            ):
                return False

            if (
                self.is_monotonic
                and compare_offsets(record.offset_value, previous.offset_value) < 0
            ):
                logger.warning(
                    "Refusing to move offset backwards",
                    source=self.source_key,
                    current=previous.offset_value,
                    attempted=record.offset_value,
                )
                return False

        await self.store.save_offset(self.source_key, record)
        self._last_written = record
        logger.debug(
            "Offset committed", source=self.source_key, offset=record.offset_value
        )
        return True

    async def commit_state(self, state: PageState) -> bool:
        """Commit the continuation of a page state, if it carries one."""
        if state.continuation_value is None:
            return False
        return await self.write(
            OffsetRecord(
                source_key=self.source_key,
                offset_value=state.continuation_value,
                continuation_kind=state.link_kind.value if state.link_kind else None,
            )
        )

    async def reset(self) -> None:
        """Forget the committed offset."""
        await self.store.delete_offset(self.source_key)
        self._last_written = None
        logger.info("Offset reset", source=self.source_key)
