"""
Utility helpers for the HTTP poller.
"""

from .json_path import MISSING, resolve_path
from .offsets import compare_offsets, max_offset

__all__ = ["MISSING", "compare_offsets", "max_offset", "resolve_path"]
