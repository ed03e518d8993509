"""
HTTP fetch client for the HTTP poller.

This module issues page requests over httpx and normalizes transport
failures into ``TransientNetworkError``. Status codes are returned as-is;
the poll scheduler decides what a rejection means.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog

from .exceptions import TransientNetworkError, UpstreamRejection

if TYPE_CHECKING:
    from .polling.pagination import PageRequest

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FetchResponse:
    """Raw page response."""

    status_code: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def raise_for_status(self, url: str | None = None) -> None:
        """Raise ``UpstreamRejection`` for 4xx/5xx responses."""
        if self.status_code >= 400:
            excerpt = self.body[:200].decode("utf-8", "replace")
            raise UpstreamRejection(
                f"Upstream rejected request with status {self.status_code}",
                status_code=self.status_code,
                context={"url": url, "body": excerpt},
            )


class Fetcher(Protocol):
    """Anything that can fetch a page request."""

    async def fetch(self, request: "PageRequest") -> FetchResponse: ...


class HttpFetcher:
    """
    Fetches page requests with a shared httpx client.

    Static headers (including whatever credentials the source needs) are
    sent with every request.
    """

    def __init__(
        self,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the fetcher.

        Args:
            headers: Headers sent with every request
            timeout_seconds: Per-request timeout
            transport: Optional httpx transport, e.g. a mock in tests
        """
        self.headers = {"Accept": "application/json", **(headers or {})}
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=httpx.Timeout(self.timeout_seconds),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def fetch(self, request: "PageRequest") -> FetchResponse:
        """
        Fetch one page.

        Args:
            request: Page request

        Returns:
            The response, whatever its status code

        Raises:
            TransientNetworkError: On timeouts and transport failures
        """
        url = request.url
        try:
            response = await self._get_client().get(url)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(
                f"Request timed out: {e}", {"url": url}
            ) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"Transport failure: {e}", {"url": url}
            ) from e

        logger.debug(
            "Fetched page",
            url=url,
            status_code=response.status_code,
            bytes=len(response.content),
        )
        return FetchResponse(
            status_code=response.status_code,
            body=response.content,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        """Close the underlying client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
