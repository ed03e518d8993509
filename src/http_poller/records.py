"""
Record decoding for the HTTP poller.

Turns a raw response body into the parsed document and the list of raw
records found at the configured data location.
"""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .exceptions import ResponseDecodeError
from .utils.json_path import MISSING, resolve_path


@dataclass(frozen=True)
class SourceRecord:
    """A record emitted by a poll cycle."""

    source_key: str
    value: Any
    offset: str | None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_key": self.source_key,
            "value": self.value,
            "offset": self.offset,
            "timestamp": self.timestamp.isoformat(),
        }


def parse_document(body: bytes) -> Any:
    """
    Parse a JSON response body.

    Raises:
        ResponseDecodeError: If the body is not valid JSON
    """
    if not body.strip():
        return {}
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ResponseDecodeError(
            f"Response body is not valid JSON: {e}",
            {"body": body[:200].decode("utf-8", "replace")},
        ) from e


def decode(document: Any, data_path: str | None) -> list[Any]:
    """
    Locate the records of a parsed document.

    Args:
        document: Parsed response document
        data_path: JSON Pointer or dotted path of the records; None selects
            the whole document

    Returns:
        The records; a single object is wrapped in a list, a missing or
        null location yields no records

    Raises:
        ResponseDecodeError: If the location holds a scalar
    """
    data = resolve_path(document, data_path)
    if data is MISSING or data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return [data]
    raise ResponseDecodeError(
        f"Data at {data_path or 'document root'} is not an object or array",
        {"data_path": data_path, "type": type(data).__name__},
    )
