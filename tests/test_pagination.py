"""
Tests for the pagination engine.
"""

import pytest

from http_poller.config import PaginationStrategy
from http_poller.polling.pagination import (
    LinkKind,
    Page,
    PageRequest,
    PageState,
    PaginationEngine,
    advance,
    build_request,
    initial_state,
    parse_link_header,
    reopen,
)

from conftest import make_source


def _page(document=None, records=None, headers=None) -> Page:
    return Page(document=document or {}, records=records or [], headers=headers or {})


class TestPageRequest:
    """Test request URLs and signatures."""

    def test_url_keeps_dollar_parameters_readable(self):
        request = PageRequest(
            base_url="https://api.example.com",
            path="/v1/customers",
            query_params=(("$skiptoken", "a b"), ("$top", "10")),
        )

        assert request.url == (
            "https://api.example.com/v1/customers?$skiptoken=a+b&$top=10"
        )

    def test_url_without_parameters(self):
        request = PageRequest(base_url="https://api.example.com", path="/v1")

        assert request.url == "https://api.example.com/v1"

    def test_signature_ignores_parameter_order(self):
        first = PageRequest(
            "https://api.example.com", "/v1", (("offset", "0"), ("limit", "10"))
        )
        second = PageRequest(
            "https://api.example.com", "/v1", (("limit", "10"), ("offset", "0"))
        )
        other = PageRequest(
            "https://api.example.com", "/v2", (("limit", "10"), ("offset", "0"))
        )

        assert first.signature() == second.signature()
        assert first.signature() != other.signature()


class TestInitialState:
    """Test starting states."""

    def test_uses_configured_initial_offset(self):
        config = make_source(http__initial__offset="40")

        state = initial_state(config)

        assert state.continuation_value == "40"
        assert state.terminal is False

    def test_committed_offset_wins(self):
        config = make_source(http__initial__offset="40")

        state = initial_state(config, offset_value=120)

        assert state.continuation_value == "120"

    def test_restores_link_kind(self):
        config = make_source(pagination__strategy="ODATA")

        state = initial_state(config, "/v1/customers?$deltatoken=d1", "DELTALINK")

        assert state.link_kind == LinkKind.DELTA

    def test_ignores_unknown_link_kind(self):
        config = make_source(pagination__strategy="ODATA")

        assert initial_state(config, "x", "SOMETHING").link_kind is None


class TestOffsetPagination:
    """Test OFFSET pagination."""

    def setup_method(self):
        self.config = make_source(pagination__page__size=2)

    def test_first_request(self):
        request = build_request(initial_state(self.config), self.config)

        assert request.path == "/v1/customers"
        assert dict(request.query_params) == {"offset": "0", "limit": "2"}

    def test_full_page_advances_by_page_size(self):
        result = advance(
            initial_state(self.config), _page(records=[1, 2]), self.config
        )

        assert result.next_state.continuation_value == "2"
        assert result.is_terminal is False
        assert result.next_state.page_count == 1

    def test_short_page_is_terminal(self):
        state = PageState(PaginationStrategy.OFFSET, continuation_value="4")

        result = advance(state, _page(records=[5]), self.config)

        assert result.is_terminal is True
        assert result.next_state.continuation_value == "5"

    def test_configured_query_is_kept(self):
        config = make_source(http__api__path="/v1/customers?status=active")

        request = build_request(initial_state(config), config)

        assert request.path == "/v1/customers"
        assert ("status", "active") in request.query_params

    def test_reopen_resumes_from_continuation(self):
        state = PageState(
            PaginationStrategy.OFFSET, continuation_value="5", terminal=True
        )

        reopened = reopen(state, self.config)

        assert reopened.continuation_value == "5"
        assert reopened.terminal is False


class TestPageNumberPagination:
    """Test PAGE_NUMBER pagination."""

    def setup_method(self):
        self.config = make_source(
            pagination__strategy="PAGE_NUMBER", pagination__page__size=2
        )

    def test_starts_at_page_one(self):
        request = build_request(initial_state(self.config), self.config)

        assert dict(request.query_params) == {"page": "1", "size": "2"}

    def test_full_page_moves_to_next(self):
        result = advance(
            initial_state(self.config), _page(records=[1, 2]), self.config
        )

        assert result.next_state.continuation_value == "2"

    def test_short_page_keeps_page_number(self):
        state = PageState(PaginationStrategy.PAGE_NUMBER, continuation_value="3")

        result = advance(state, _page(records=[1]), self.config)

        assert result.is_terminal is True
        assert result.next_state.continuation_value == "3"


class TestCursorPagination:
    """Test CURSOR pagination."""

    def test_cursor_from_body(self):
        config = make_source(
            pagination__strategy="CURSOR", pagination__cursor__field="meta.next"
        )

        result = advance(
            initial_state(config),
            _page(document={"meta": {"next": "c2"}}, records=[1]),
            config,
        )
        request = build_request(result.next_state, config)

        assert result.next_state.continuation_value == "c2"
        assert dict(request.query_params) == {"cursor": "c2"}

    def test_first_request_has_no_cursor(self):
        config = make_source(pagination__strategy="CURSOR")

        request = build_request(initial_state(config), config)

        assert request.query_params == ()

    def test_cursor_from_header(self):
        config = make_source(
            pagination__strategy="CURSOR", pagination__cursor__header="X-Next-Cursor"
        )

        result = advance(
            initial_state(config), _page(headers={"x-next-cursor": "h1"}), config
        )

        assert result.next_state.continuation_value == "h1"

    def test_missing_cursor_is_terminal(self):
        config = make_source(pagination__strategy="CURSOR")
        state = PageState(PaginationStrategy.CURSOR, continuation_value="c1")

        result = advance(state, _page(document={"next_cursor": None}), config)

        assert result.is_terminal is True
        assert result.next_state.continuation_value == "c1"

    def test_repeated_cursor_is_terminal(self):
        config = make_source(pagination__strategy="CURSOR")
        state = PageState(PaginationStrategy.CURSOR, continuation_value="c1")

        result = advance(state, _page(document={"next_cursor": "c1"}), config)

        assert result.is_terminal is True

    def test_reopen_restarts(self):
        config = make_source(pagination__strategy="CURSOR")
        state = PageState(
            PaginationStrategy.CURSOR, continuation_value="c9", terminal=True
        )

        assert reopen(state, config).continuation_value is None


class TestLinkHeaderPagination:
    """Test LINK_HEADER pagination."""

    def setup_method(self):
        self.config = make_source(pagination__strategy="LINK_HEADER")

    def test_parse_link_header(self):
        links = parse_link_header(
            '<https://api.example.com/v1/customers?page=2>; rel="next", '
            '<https://api.example.com/v1/customers?page=9>; rel="last"'
        )

        assert links == {
            "next": "https://api.example.com/v1/customers?page=2",
            "last": "https://api.example.com/v1/customers?page=9",
        }
        assert parse_link_header(None) == {}

    def test_follows_next_link(self):
        headers = {"Link": '<https://api.example.com/v1/customers?page=2>; rel="next"'}

        start = initial_state(self.config)
        result = advance(start, _page(headers=headers), self.config)
        request = build_request(result.next_state, self.config)

        assert request.base_url == "https://api.example.com"
        assert request.path == "/v1/customers"
        assert request.query_params == (("page", "2"),)

    def test_relative_link_is_resolved(self):
        headers = {"link": "</v1/customers?page=3>; rel=next"}

        start = initial_state(self.config)
        result = advance(start, _page(headers=headers), self.config)

        assert result.next_state.continuation_value == (
            "https://api.example.com/v1/customers?page=3"
        )

    def test_no_next_link_is_terminal(self):
        headers = {"Link": '<https://api.example.com/v1/customers?page=1>; rel="prev"'}

        start = initial_state(self.config)
        result = advance(start, _page(headers=headers), self.config)

        assert result.is_terminal is True


class TestTimeBasedPagination:
    """Test TIME_BASED pagination."""

    def setup_method(self):
        self.config = make_source(pagination__strategy="TIME_BASED")

    def test_advances_to_latest_timestamp(self):
        records = [
            {"updated_at": "2024-01-03T00:00:00Z"},
            {"updated_at": "2024-01-01T00:00:00Z"},
            {"name": "no timestamp"},
        ]

        start = initial_state(self.config)
        result = advance(start, _page(records=records), self.config)
        request = build_request(result.next_state, self.config)

        assert result.next_state.continuation_value == "2024-01-03T00:00:00Z"
        assert result.is_terminal is False
        assert dict(request.query_params) == {"since": "2024-01-03T00:00:00Z"}

    def test_never_moves_backwards(self):
        state = PageState(
            PaginationStrategy.TIME_BASED, continuation_value="2024-06-01T00:00:00Z"
        )

        result = advance(
            state, _page(records=[{"updated_at": "2024-01-01T00:00:00Z"}]), self.config
        )

        assert result.next_state.continuation_value == "2024-06-01T00:00:00Z"

    def test_empty_page_keeps_state(self):
        state = PageState(PaginationStrategy.TIME_BASED, continuation_value="100")

        result = advance(state, _page(), self.config)

        assert result.next_state.continuation_value == "100"
        assert result.is_terminal is False


class TestODataFullUrl:
    """Test ODATA pagination with full continuation URLs."""

    def setup_method(self):
        self.config = make_source(pagination__strategy="ODATA")

    def test_first_request_is_configured_path(self):
        request = build_request(initial_state(self.config), self.config)

        assert request.url == "https://api.example.com/v1/customers"

    def test_follows_next_link(self):
        document = {
            "value": [{"id": 1}],
            "@odata.nextLink": "https://api.example.com/v1/customers?$skiptoken=abc",
        }

        result = advance(initial_state(self.config), _page(document), self.config)
        request = build_request(result.next_state, self.config)

        assert result.next_state.link_kind == LinkKind.NEXT
        assert result.next_state.continuation_value == (
            "https://api.example.com/v1/customers?$skiptoken=abc"
        )
        assert request.url == "https://api.example.com/v1/customers?$skiptoken=abc"

    def test_delta_link_after_last_page(self):
        document = {"@odata.deltaLink": "/v1/customers?$deltatoken=d1"}

        result = advance(initial_state(self.config), _page(document), self.config)

        assert result.is_terminal is False
        assert result.next_state.link_kind == LinkKind.DELTA
        assert result.next_state.continuation_value == (
            "https://api.example.com/v1/customers?$deltatoken=d1"
        )

    def test_repeated_delta_link_is_not_terminal(self):
        state = PageState(
            PaginationStrategy.ODATA,
            continuation_value="/v1/customers?$deltatoken=d1",
            link_kind=LinkKind.DELTA,
        )
        document = {"@odata.deltaLink": "/v1/customers?$deltatoken=d1"}

        result = advance(state, _page(document), self.config)

        assert result.is_terminal is False

    def test_repeated_next_link_is_terminal(self):
        state = PageState(
            PaginationStrategy.ODATA,
            continuation_value="https://api.example.com/v1/customers?$skiptoken=abc",
            link_kind=LinkKind.NEXT,
        )
        document = {"@odata.nextLink": "/v1/customers?$skiptoken=abc"}

        result = advance(state, _page(document), self.config)

        assert result.is_terminal is True

    def test_base_url_path_prefix_is_not_repeated(self):
        config = make_source(
            pagination__strategy="ODATA",
            http__api__base__url="https://org.example.com/api/data/v9.0",
            http__api__path="/accounts",
        )
        document = {
            "@odata.nextLink": (
                "https://org.example.com/api/data/v9.0/accounts?$skiptoken=A"
            )
        }

        result = advance(initial_state(config), _page(document), config)
        request = build_request(result.next_state, config)

        assert request.url == (
            "https://org.example.com/api/data/v9.0/accounts?$skiptoken=A"
        )

    def test_link_to_another_host_is_followed(self):
        document = {
            "@odata.nextLink": "https://other.example.net/v1/customers?$skiptoken=A"
        }

        result = advance(initial_state(self.config), _page(document), self.config)
        request = build_request(result.next_state, self.config)

        assert request.base_url == "https://other.example.net"
        assert request.url == "https://other.example.net/v1/customers?$skiptoken=A"

    def test_relative_continuation_resolves_against_source(self):
        state = initial_state(self.config, "/v1/customers?$skiptoken=abc", "NEXTLINK")

        request = build_request(state, self.config)

        assert request.url == "https://api.example.com/v1/customers?$skiptoken=abc"

    def test_no_links_is_terminal(self):
        result = advance(
            initial_state(self.config), _page({"value": []}), self.config
        )

        assert result.is_terminal is True

    @pytest.mark.parametrize(
        "link",
        ["ht tp://bad link", "http://[::1", "ftp://api.example.com/x", 42],
    )
    def test_malformed_link_is_terminal(self, link):
        document = {"value": [{"id": 1}], "@odata.nextLink": link}

        result = advance(initial_state(self.config), _page(document), self.config)

        assert result.is_terminal is True
        assert result.next_state.page_count == 1

    def test_reopen_restarts_from_configured_request(self):
        state = PageState(
            PaginationStrategy.ODATA,
            continuation_value="/v1/customers?$skiptoken=abc",
            terminal=True,
            link_kind=LinkKind.NEXT,
        )

        reopened = reopen(state, self.config)

        assert reopened.continuation_value is None
        assert reopened.terminal is False


class TestODataTokenOnly:
    """Test ODATA pagination that carries bare tokens."""

    def setup_method(self):
        self.config = make_source(
            pagination__strategy="ODATA",
            odata__token__mode="token_only",
            http__api__path="/v1/customers?$top=2",
        )

    def test_extracts_skiptoken(self):
        document = {
            "@odata.nextLink": (
                "https://api.example.com/v1/customers?$top=2&$skiptoken=X%3D1"
            )
        }

        result = advance(initial_state(self.config), _page(document), self.config)
        request = build_request(result.next_state, self.config)

        assert result.next_state.continuation_value == "X=1"
        assert request.query_params == (("$top", "2"), ("$skiptoken", "X=1"))
        assert request.url.count("$skiptoken=") == 1

    def test_token_parameter_appears_once(self):
        config = make_source(
            pagination__strategy="ODATA",
            odata__token__mode="TOKEN_ONLY",
            http__api__path="/v1/customers?$skiptoken=stale&$deltatoken=old",
        )
        state = PageState(
            PaginationStrategy.ODATA,
            continuation_value="fresh",
            link_kind=LinkKind.NEXT,
        )

        request = build_request(state, config)

        assert request.query_params == (("$skiptoken", "fresh"),)

    def test_delta_token_switches_parameter(self):
        document = {
            "@odata.deltaLink": "https://api.example.com/v1/customers?$deltatoken=d7"
        }

        result = advance(initial_state(self.config), _page(document), self.config)
        request = build_request(result.next_state, self.config)

        assert result.next_state.link_kind == LinkKind.DELTA
        assert request.query_params == (("$top", "2"), ("$deltatoken", "d7"))

    def test_bare_token(self):
        document = {"@odata.nextLink": "opaque-token"}

        result = advance(initial_state(self.config), _page(document), self.config)

        assert result.next_state.continuation_value == "opaque-token"
        assert result.next_state.link_kind == LinkKind.NEXT

    def test_bare_token_with_base64_padding(self):
        document = {"@odata.nextLink": "YWJjZA=="}

        result = advance(initial_state(self.config), _page(document), self.config)
        request = build_request(result.next_state, self.config)

        assert result.is_terminal is False
        assert result.next_state.continuation_value == "YWJjZA=="
        assert ("$skiptoken", "YWJjZA==") in request.query_params

    def test_link_without_token_is_terminal(self):
        document = {"@odata.nextLink": "https://api.example.com/v1/customers?page=2"}

        result = advance(initial_state(self.config), _page(document), self.config)

        assert result.is_terminal is True


class TestGuards:
    """Test guards that end runaway pagination."""

    def test_max_pages(self):
        config = make_source(pagination__page__size=1, pagination__max__pages=2)
        engine = PaginationEngine(config)

        first = engine.advance(_page(records=[1]))
        second = engine.advance(_page(records=[2]))

        assert first.is_terminal is False
        assert second.is_terminal is True
        assert engine.state.page_count == 2


class TestPaginationEngine:
    """Test the stateful engine wrapper."""

    def setup_method(self):
        self.config = make_source(pagination__page__size=2)
        self.engine = PaginationEngine(self.config, history_size=2)

    def test_advance_replaces_state(self):
        self.engine.advance(_page(records=[1, 2]))

        assert self.engine.state.continuation_value == "2"
        assert self.engine.build_request().query_params == (
            ("offset", "2"),
            ("limit", "2"),
        )
        assert len(self.engine.history) == 1

    def test_history_is_bounded(self):
        for _ in range(5):
            self.engine.advance(_page(records=[1, 2]))

        assert len(self.engine.history) == 2

    def test_restore_and_reset(self):
        self.engine.restore("10", None)
        assert self.engine.state.continuation_value == "10"

        self.engine.reset()
        assert self.engine.state.continuation_value is None

    def test_reopen(self):
        self.engine.advance(_page(records=[1]))
        assert self.engine.state.terminal is True

        self.engine.reopen()

        assert self.engine.state.terminal is False
        assert self.engine.state.continuation_value == "1"
