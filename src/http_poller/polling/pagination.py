"""
Pagination engine for the polling system.

This module turns the previous page's state plus the page just fetched into
the next page state, and turns a page state into the next request. Each
strategy is a pair of plain functions registered in a dispatch table;
states are immutable and replaced on every advance.
"""

import hashlib
import json
import re
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any
from urllib.parse import parse_qsl, unquote, urlencode, urljoin, urlsplit

import structlog

from ..config import ODataTokenMode, PaginationStrategy, SourceConfig
from ..exceptions import MalformedContinuationError
from ..utils.json_path import MISSING, resolve_path
from ..utils.offsets import max_offset

logger = structlog.get_logger(__name__)

LINK_HEADER_PATTERN = re.compile(r"<([^>]+)>\s*;\s*rel\s*=\s*[\"']?([^\"';]+)[\"']?")

QueryParams = tuple[tuple[str, str], ...]


class LinkKind(str, Enum):
    """Which OData link produced the current continuation."""

    NEXT = "NEXTLINK"
    DELTA = "DELTALINK"


@dataclass(frozen=True)
class PageState:
    """Where a source is in its pagination sequence."""

    strategy: PaginationStrategy
    continuation_value: str | None = None
    terminal: bool = False
    link_kind: LinkKind | None = None
    page_count: int = 0

    @property
    def is_terminal(self) -> bool:
        """Check whether the data window is exhausted."""
        return self.terminal

    def to_dict(self) -> dict[str, Any]:
        """Serialize for status reporting."""
        return {
            "strategy": self.strategy.value,
            "continuation_value": self.continuation_value,
            "terminal": self.terminal,
            "link_kind": self.link_kind.value if self.link_kind else None,
            "page_count": self.page_count,
        }


@dataclass(frozen=True)
class PageRequest:
    """A single page request, built fresh every cycle."""

    base_url: str
    path: str
    query_params: QueryParams = ()
    strategy: PaginationStrategy = PaginationStrategy.OFFSET
    continuation_token: str | None = None

    @property
    def url(self) -> str:
        """Full request URL."""
        if not self.query_params:
            return f"{self.base_url}{self.path}"
        return f"{self.base_url}{self.path}?{urlencode(self.query_params, safe='$')}"

    def signature(self) -> str:
        """Stable key for the request, independent of parameter order."""
        payload = json.dumps(
            ["GET", self.base_url, self.path, sorted(self.query_params)],
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Page:
    """A fetched page: parsed document, response headers and decoded records."""

    document: Any
    records: list[Any]
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AdvanceResult:
    """Outcome of advancing past one page."""

    next_state: PageState
    is_terminal: bool


def initial_state(
    config: SourceConfig,
    offset_value: Any = None,
    continuation_kind: str | None = None,
) -> PageState:
    """
    Build the first page state for a source.

    Args:
        config: Source configuration
        offset_value: Committed offset, if one was saved
        continuation_kind: Committed OData link kind, if any

    Returns:
        Starting page state
    """
    value = offset_value if offset_value is not None else config.initial_offset
    link_kind = None
    if continuation_kind in {kind.value for kind in LinkKind}:
        link_kind = LinkKind(continuation_kind)

    return PageState(
        strategy=config.pagination_strategy,
        continuation_value=None if value is None else str(value),
        link_kind=link_kind,
    )


def build_request(state: PageState, config: SourceConfig) -> PageRequest:
    """
    Build the request for the page a state points at.

    Args:
        state: Current page state
        config: Source configuration

    Returns:
        Request for the next page
    """
    builder = _REQUEST_BUILDERS[config.pagination_strategy]
    return builder(state, config)


def advance(prior: PageState, page: Page, config: SourceConfig) -> AdvanceResult:
    """
    Advance pagination past a fetched page.

    A malformed continuation link never raises: the page's records stay
    valid and the state is forced terminal.

    Args:
        prior: State the page was requested with
        page: The fetched page
        config: Source configuration

    Returns:
        The next state and whether it is terminal
    """
    step = _ADVANCERS[config.pagination_strategy]
    try:
        next_state = step(prior, page, config)
    except MalformedContinuationError as e:
        logger.warning(
            "Malformed continuation link, ending pagination",
            source=config.source_key,
            continuation=e.continuation,
            error=str(e),
        )
        next_state = replace(prior, terminal=True)

    next_state = replace(next_state, page_count=prior.page_count + 1)
    next_state = _apply_guards(prior, next_state, config)
    return AdvanceResult(next_state=next_state, is_terminal=next_state.terminal)


def reopen(state: PageState, config: SourceConfig) -> PageState:
    """
    Start a new data window after a terminal state.

    Monotonic strategies resume from their continuation; token-based ones
    restart from the configured request.
    """
    if config.pagination_strategy in {
        PaginationStrategy.OFFSET,
        PaginationStrategy.PAGE_NUMBER,
        PaginationStrategy.TIME_BASED,
    }:
        return PageState(
            strategy=state.strategy, continuation_value=state.continuation_value
        )
    return initial_state(config)


def _apply_guards(
    prior: PageState, next_state: PageState, config: SourceConfig
) -> PageState:
    if next_state.terminal:
        return next_state

    if (
        config.pagination_strategy
        in {
            PaginationStrategy.CURSOR,
            PaginationStrategy.LINK_HEADER,
            PaginationStrategy.ODATA,
        }
        and next_state.link_kind != LinkKind.DELTA
        and prior.continuation_value is not None
        and next_state.continuation_value == prior.continuation_value
    ):
        logger.warning(
            "Continuation repeated, ending pagination",
            source=config.source_key,
            continuation=next_state.continuation_value,
        )
        return replace(next_state, terminal=True)

    if config.max_pages is not None and next_state.page_count >= config.max_pages:
        logger.info(
            "Page limit reached, ending pagination",
            source=config.source_key,
            max_pages=config.max_pages,
        )
        return replace(next_state, terminal=True)

    return next_state


# Request helpers


def _split_path(path_and_query: str) -> tuple[str, list[tuple[str, str]]]:
    parts = urlsplit(path_and_query)
    return parts.path or "/", parse_qsl(parts.query, keep_blank_values=True)


def _with_params(
    pairs: list[tuple[str, str]],
    updates: Mapping[str, str | None],
    drop: tuple[str, ...] = (),
) -> QueryParams:
    removed = set(updates) | set(drop)
    kept = [(name, value) for name, value in pairs if name not in removed]
    kept.extend((name, value) for name, value in updates.items() if value is not None)
    return tuple(kept)


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        try:
            return int(float(value))
        except ValueError:
            logger.warning("Non-numeric offset, using default", value=value)
            return default


def _configured_request(
    config: SourceConfig, updates: Mapping[str, str | None], token: str | None
) -> PageRequest:
    path, pairs = _split_path(config.path)
    return PageRequest(
        base_url=config.base_url,
        path=path,
        query_params=_with_params(pairs, updates),
        strategy=config.pagination_strategy,
        continuation_token=token,
    )


def _absolute_link(config: SourceConfig, link: Any) -> str:
    """Resolve a continuation link against the source, or raise if malformed."""
    if not isinstance(link, str) or not link.strip():
        raise MalformedContinuationError(
            "Continuation link is not a string", continuation=repr(link)
        )
    if any(char.isspace() for char in link):
        raise MalformedContinuationError(
            "Continuation link contains whitespace", continuation=link
        )
    try:
        absolute = urljoin(f"{config.base_url}{config.path}", link)
        parts = urlsplit(absolute)
        if parts.port is not None and parts.port <= 0:
            raise ValueError(f"invalid port {parts.port}")
    except ValueError as e:
        raise MalformedContinuationError(
            f"Continuation link cannot be parsed: {e}", continuation=link
        ) from e
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise MalformedContinuationError(
            "Continuation link is not an HTTP URL", continuation=link
        )
    return absolute


# OFFSET


def _offset_request(state: PageState, config: SourceConfig) -> PageRequest:
    offset = _as_int(state.continuation_value, 0)
    return _configured_request(
        config,
        {config.offset_param: str(offset), config.limit_param: str(config.page_size)},
        str(offset),
    )


def _offset_advance(prior: PageState, page: Page, config: SourceConfig) -> PageState:
    offset = _as_int(prior.continuation_value, 0)
    count = len(page.records)
    if count < config.page_size:
        return replace(prior, continuation_value=str(offset + count), terminal=True)
    return replace(prior, continuation_value=str(offset + config.page_size))


# PAGE_NUMBER


def _page_number_request(state: PageState, config: SourceConfig) -> PageRequest:
    page_number = _as_int(state.continuation_value, 1)
    return _configured_request(
        config,
        {config.page_param: str(page_number), config.size_param: str(config.page_size)},
        str(page_number),
    )


def _page_number_advance(
    prior: PageState, page: Page, config: SourceConfig
) -> PageState:
    page_number = _as_int(prior.continuation_value, 1)
    if len(page.records) < config.page_size:
        # A short page is re-read on reopen so late arrivals are not skipped
        return replace(prior, continuation_value=str(page_number), terminal=True)
    return replace(prior, continuation_value=str(page_number + 1))


# CURSOR


def _cursor_request(state: PageState, config: SourceConfig) -> PageRequest:
    cursor = state.continuation_value
    return _configured_request(config, {config.cursor_param: cursor}, cursor)


def _header_value(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _cursor_advance(prior: PageState, page: Page, config: SourceConfig) -> PageState:
    if config.cursor_header:
        cursor: Any = _header_value(page.headers, config.cursor_header)
    else:
        cursor = resolve_path(page.document, config.cursor_field)

    if cursor is MISSING or cursor is None or cursor == "":
        return replace(prior, terminal=True)
    return replace(prior, continuation_value=str(cursor))


# LINK_HEADER


def parse_link_header(value: str | None) -> dict[str, str]:
    """
    Parse an RFC 8288 ``Link`` header into a relation-to-URL map.

    Args:
        value: Raw header value

    Returns:
        Mapping of each ``rel`` token to its target URL
    """
    links: dict[str, str] = {}
    if not value:
        return links
    for url, rels in LINK_HEADER_PATTERN.findall(value):
        for rel in rels.split():
            links.setdefault(rel.lower(), url.strip())
    return links


def _link_header_request(state: PageState, config: SourceConfig) -> PageRequest:
    if state.continuation_value is None:
        return _configured_request(config, {}, None)

    parts = urlsplit(state.continuation_value)
    return PageRequest(
        base_url=f"{parts.scheme}://{parts.netloc}",
        path=parts.path or "/",
        query_params=tuple(parse_qsl(parts.query, keep_blank_values=True)),
        strategy=config.pagination_strategy,
        continuation_token=state.continuation_value,
    )


def _link_header_advance(
    prior: PageState, page: Page, config: SourceConfig
) -> PageState:
    links = parse_link_header(_header_value(page.headers, "Link"))
    next_link = links.get("next")
    if next_link is None:
        return replace(prior, terminal=True)
    return replace(prior, continuation_value=_absolute_link(config, next_link))


# TIME_BASED


def _time_based_request(state: PageState, config: SourceConfig) -> PageRequest:
    return _configured_request(
        config, {config.since_param: state.continuation_value}, state.continuation_value
    )


def _time_based_advance(
    prior: PageState, page: Page, config: SourceConfig
) -> PageState:
    seen = [
        value
        for value in (
            resolve_path(record, config.timestamp_field) for record in page.records
        )
        if value is not MISSING and value is not None and value != ""
    ]
    if prior.continuation_value is not None:
        seen.append(prior.continuation_value)
    if not seen:
        return prior
    return replace(prior, continuation_value=str(max_offset(seen)))


# ODATA


def _token_pattern(param: str) -> re.Pattern[str]:
    return re.compile(r"(?:^|[?&])" + re.escape(param) + r"=([^&#]+)")


def _odata_request(state: PageState, config: SourceConfig) -> PageRequest:
    token = state.continuation_value
    if token is None:
        return _configured_request(config, {}, None)

    if config.odata_token_mode == ODataTokenMode.FULL_URL:
        # A relative value such as http.initial.offset resolves against the source
        parts = urlsplit(urljoin(f"{config.base_url}{config.path}", token))
        return PageRequest(
            base_url=f"{parts.scheme}://{parts.netloc}",
            path=parts.path or "/",
            query_params=tuple(parse_qsl(parts.query, keep_blank_values=True)),
            strategy=config.pagination_strategy,
            continuation_token=token,
        )

    if state.link_kind == LinkKind.DELTA:
        param, other = config.odata_deltatoken_param, config.odata_skiptoken_param
    else:
        param, other = config.odata_skiptoken_param, config.odata_deltatoken_param

    path, pairs = _split_path(config.path)
    return PageRequest(
        base_url=config.base_url,
        path=path,
        query_params=_with_params(pairs, {param: token}, drop=(other,)),
        strategy=config.pagination_strategy,
        continuation_token=token,
    )


def _extract_token(link: str, config: SourceConfig) -> tuple[str, LinkKind | None]:
    """Pull the continuation token out of an OData link for TOKEN_ONLY mode."""
    if not any(char in link for char in "/?"):
        return unquote(link), None

    for param, kind in (
        (config.odata_skiptoken_param, LinkKind.NEXT),
        (config.odata_deltatoken_param, LinkKind.DELTA),
    ):
        match = _token_pattern(param).search(link)
        if match:
            return unquote(match.group(1)), kind

    raise MalformedContinuationError(
        "No continuation token found in link", continuation=link
    )


def _odata_advance(prior: PageState, page: Page, config: SourceConfig) -> PageState:
    next_link = resolve_path(page.document, config.odata_nextlink_field)
    delta_link = resolve_path(page.document, config.odata_deltalink_field)

    if next_link not in (MISSING, None, ""):
        link, kind = next_link, LinkKind.NEXT
    elif delta_link not in (MISSING, None, ""):
        link, kind = delta_link, LinkKind.DELTA
    else:
        return replace(prior, terminal=True)

    absolute = _absolute_link(config, link)

    if config.odata_token_mode == ODataTokenMode.FULL_URL:
        return replace(prior, continuation_value=absolute, link_kind=kind)

    token, found_kind = _extract_token(link, config)
    return replace(prior, continuation_value=token, link_kind=found_kind or kind)


_REQUEST_BUILDERS: dict[
    PaginationStrategy, Callable[[PageState, SourceConfig], PageRequest]
] = {
    PaginationStrategy.OFFSET: _offset_request,
    PaginationStrategy.PAGE_NUMBER: _page_number_request,
    PaginationStrategy.CURSOR: _cursor_request,
    PaginationStrategy.LINK_HEADER: _link_header_request,
    PaginationStrategy.TIME_BASED: _time_based_request,
    PaginationStrategy.ODATA: _odata_request,
}

_ADVANCERS: dict[
    PaginationStrategy, Callable[[PageState, Page, SourceConfig], PageState]
] = {
    PaginationStrategy.OFFSET: _offset_advance,
    PaginationStrategy.PAGE_NUMBER: _page_number_advance,
    PaginationStrategy.CURSOR: _cursor_advance,
    PaginationStrategy.LINK_HEADER: _link_header_advance,
    PaginationStrategy.TIME_BASED: _time_based_advance,
    PaginationStrategy.ODATA: _odata_advance,
}


class PaginationEngine:
    """
    Holds the current page state of one source.

    The engine is owned by a single worker and is not locked. A bounded
    history of replaced states is kept for status reporting.
    """

    def __init__(
        self,
        config: SourceConfig,
        state: PageState | None = None,
        history_size: int = 20,
    ) -> None:
        self.config = config
        self.state = state or initial_state(config)
        self.history: deque[PageState] = deque(maxlen=history_size)

    def restore(self, offset_value: Any, continuation_kind: str | None) -> None:
        """Resume from a committed offset."""
        self._replace(initial_state(self.config, offset_value, continuation_kind))

    def build_request(self) -> PageRequest:
        """Build the request for the current state."""
        return build_request(self.state, self.config)

    def advance(self, page: Page) -> AdvanceResult:
        """Advance past a fetched page and adopt the next state."""
        result = advance(self.state, page, self.config)
        self.adopt(result)
        return result

    def adopt(self, result: AdvanceResult) -> None:
        """Adopt the state computed by ``advance``."""
        self._replace(result.next_state)
        if result.is_terminal:
            logger.info(
                "Pagination reached terminal state",
                source=self.config.source_key,
                pages=result.next_state.page_count,
                continuation=result.next_state.continuation_value,
            )

    def reopen(self) -> None:
        """Start a new data window."""
        self._replace(reopen(self.state, self.config))
        logger.info(
            "Pagination reopened",
            source=self.config.source_key,
            continuation=self.state.continuation_value,
        )

    def reset(self) -> None:
        """Return to the configured starting point."""
        self._replace(initial_state(self.config))

    def _replace(self, state: PageState) -> None:
        self.history.append(self.state)
        self.state = state
