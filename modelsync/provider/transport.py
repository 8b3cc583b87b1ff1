"""
Network capability used by a Provider.

The Provider only needs "request in, response out"; any object with an
async `fetch(url, options)` returning an `httpx.Response` will do.
"""

import logging
from typing import Optional, Protocol

import httpx

from modelsync.models.provider import RequestOptions

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    """IO boundary for a Provider's requests."""

    async def fetch(self, url: str, options: RequestOptions) -> httpx.Response:
        ...


class HTTPXFetcher:
    """
    Fetcher backed by an httpx.AsyncClient.

    A client passed in is borrowed and left open by aclose(); a client
    created here is owned and closed by aclose().
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        follow_redirects: bool = True,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=follow_redirects)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def fetch(self, url: str, options: RequestOptions) -> httpx.Response:
        """Send one request. Transport failures raise httpx.HTTPError."""
        kwargs = {}
        if options.headers:
            kwargs["headers"] = options.headers
        if options.params:
            kwargs["params"] = options.params
        if options.json_body is not None:
            kwargs["json"] = options.json_body
        if options.timeout_s is not None:
            kwargs["timeout"] = options.timeout_s

        response = await self._client.request(options.method, url, **kwargs)
        logger.debug("%s %s -> %s", options.method, url, response.status_code)
        return response

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
