"""
Static HTML crawler using httpx.

Used for sources that render their search results server-side. Pages are
fetched with a pooled AsyncClient and parsed with BeautifulSoup.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Dict
from bs4 import BeautifulSoup
import httpx
import logging

from ..base import BlockedError, ScrapeError
from ..utils.extractors import detect_block

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)

# Status codes anti-bot layers answer with
BLOCK_STATUSES = (403, 429, 503)


class StaticCrawler:
    """
    Wrapper for fetching static HTML pages.

    Provides connection pooling, retries with exponential backoff, and
    detection of bot-challenge responses.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        headers: Optional[Dict[str, str]] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        backoff_base: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the static crawler.

        Args:
            timeout: Request timeout in seconds
            max_retries: Number of attempts per URL
            headers: Custom HTTP headers
            user_agent: User-Agent sent when no custom headers are given
            backoff_base: Base of the exponential retry delay in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.transport = transport
        self.headers = headers or {
            'User-Agent': user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9',
            'Accept-Encoding': 'gzip, deflate',
        }
        # Reusable HTTP client with connection pooling
        self._client: Optional[httpx.AsyncClient] = None

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.timeout,
            headers=self.headers,
            transport=self.transport,
            limits=httpx.Limits(
                max_keepalive_connections=5,
                max_connections=10,
                keepalive_expiry=30.0
            )
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = self._build_client()
        return self._client

    @asynccontextmanager
    async def session(self) -> AsyncIterator[httpx.AsyncClient]:
        """
        Client owned by a single run.

        Runs of the same source may overlap, so each gets its own pooled
        client and closes it on exit without touching the shared one.
        """
        client = self._build_client()
        try:
            yield client
        finally:
            await client.aclose()

    async def close(self):
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str, client: Optional[httpx.AsyncClient] = None) -> str:
        """
        Fetch a URL and return HTML content.

        Args:
            url: URL to fetch
            client: Client to send with; defaults to the shared one

        Returns:
            HTML content as string

        Raises:
            BlockedError: If the response is a bot challenge or access denial
            ScrapeError: On request failure after retries
        """
        logger.debug(f"StaticCrawler fetching: {url}")

        last_error = None
        client = client or await self._get_client()

        for attempt in range(self.max_retries):
            if client.is_closed:
                # Closed under us; carry on with a fresh shared client
                client = await self._get_client()
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                last_error = e
                logger.warning(f"Attempt {attempt + 1}/{self.max_retries} failed for {url}: {e}")
            else:
                if response.status_code in BLOCK_STATUSES:
                    marker = detect_block(response.text)
                    if marker:
                        raise BlockedError(
                            f"access blocked at {url} (HTTP {response.status_code}, '{marker}')",
                            url=url,
                        )

                if response.status_code < 400:
                    return response.text

                last_error = f"HTTP {response.status_code}"
                logger.warning(f"Attempt {attempt + 1}/{self.max_retries} for {url} returned {response.status_code}")
                # Client errors other than throttling will not change on retry
                if response.status_code < 500 and response.status_code != 429:
                    break

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff_base * 2 ** attempt)

        raise ScrapeError(f"failed to fetch {url}: {last_error}", url=url)

    async def fetch_soup(self, url: str, client: Optional[httpx.AsyncClient] = None) -> BeautifulSoup:
        """
        Fetch a URL and return parsed BeautifulSoup.

        Args:
            url: URL to fetch
            client: Client to send with; defaults to the shared one

        Returns:
            BeautifulSoup object
        """
        html = await self.fetch(url, client)
        return BeautifulSoup(html, 'html.parser')
