"""
Path resolution inside tree-structured response documents.

Two notations are accepted:

* JSON Pointer (RFC 6901), e.g. ``/value/0/id``. Segments are unescaped
  (``~1`` to ``/``, ``~0`` to ``~``) and matched literally.
* Dotted paths, e.g. ``data.items`` or ``@odata.nextLink``. Because keys may
  themselves contain dots, segments are matched against the longest key
  present at each level, backtracking to shorter prefixes when a deeper
  lookup fails.
"""

from typing import Any


class _Missing:
    """Sentinel for a path that does not resolve."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def resolve_path(document: Any, path: str | None) -> Any:
    """
    Resolve a JSON Pointer or dotted path inside a document.

    Args:
        document: Parsed JSON document (dicts, lists and scalars)
        path: JSON Pointer or dotted path; empty or None selects the root

    Returns:
        The value found at the path, or ``MISSING`` when it does not resolve
    """
    if not path or path == "/":
        return document

    if path.startswith("/"):
        return _resolve_pointer(document, path)

    return _resolve_dotted(document, path.split("."))


def _resolve_pointer(document: Any, pointer: str) -> Any:
    node = document
    for raw in pointer[1:].split("/"):
        segment = raw.replace("~1", "/").replace("~0", "~")
        node = _step(node, segment)
        if node is MISSING:
            return MISSING
    return node


def _resolve_dotted(node: Any, segments: list[str]) -> Any:
    if not segments:
        return node

    if isinstance(node, dict):
        for end in range(len(segments), 0, -1):
            key = ".".join(segments[:end])
            if key in node:
                found = _resolve_dotted(node[key], segments[end:])
                if found is not MISSING:
                    return found
        return MISSING

    child = _step(node, segments[0])
    if child is MISSING:
        return MISSING
    return _resolve_dotted(child, segments[1:])


def _step(node: Any, segment: str) -> Any:
    if isinstance(node, dict):
        return node.get(segment, MISSING)
    if isinstance(node, list):
        if not segment.isdigit():
            return MISSING
        index = int(segment)
        return node[index] if index < len(node) else MISSING
    return MISSING
