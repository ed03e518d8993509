"""
Offset persistence for the HTTP poller.

This package provides an abstract offset store with pluggable backends
(in-memory and JSON file).
"""

from .manager import (
    FileOffsetStore,
    InMemoryOffsetStore,
    OffsetRecord,
    OffsetStore,
    OffsetStoreFactory,
)

__all__ = [
    "OffsetRecord",
    "OffsetStore",
    "OffsetStoreFactory",
    "InMemoryOffsetStore",
    "FileOffsetStore",
]
