"""
Ordering of offset values.

Offsets arrive as strings from config and storage but may hold integers,
epoch seconds or ISO-8601 timestamps. Values are compared numerically when
both parse as numbers, chronologically when both parse as timestamps, and
lexically otherwise.
"""

from datetime import UTC, datetime
from typing import Any


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def compare_offsets(left: Any, right: Any) -> int:
    """
    Compare two offset values.

    Returns:
        Negative if ``left`` sorts first, zero if equal, positive otherwise
    """
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        return (left_number > right_number) - (left_number < right_number)

    left_time, right_time = _as_datetime(left), _as_datetime(right)
    if left_time is not None and right_time is not None:
        return (left_time > right_time) - (left_time < right_time)

    left_text, right_text = str(left), str(right)
    return (left_text > right_text) - (left_text < right_text)


def max_offset(values: list[Any]) -> Any:
    """Get the greatest offset of a non-empty list."""
    best = values[0]
    for value in values[1:]:
        if compare_offsets(value, best) > 0:
            best = value
    return best
