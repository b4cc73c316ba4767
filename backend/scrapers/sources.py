"""
Source scrapers: one per brokerage site.

StaticScraper fetches result pages over plain HTTP; BrowserScraper renders
them in a pooled headless browser. Both parse with the shared extractors,
walk pages with the shared pagination driver, and satisfy the same
``Scraper`` contract, so the manager treats them alike.
"""

import logging
from functools import partial
from typing import Callable, List, Optional

from bs4 import BeautifulSoup
import httpx
from playwright.async_api import Error as PlaywrightError, Page

from .base import BlockedError, ScrapeError, ScrapeOptions, ScrapedListing, SiteConfig
from .crawlers.browser import BrowserPool, is_blocked, navigate_with_retry, scroll_to_bottom
from .crawlers.static import StaticCrawler
from .pagination import paginate
from .streams import CancelToken, ScrapeStreams, Stream, spawn_producer
from .utils.extractors import ListingPage, detect_block, page_text, parse_listing_page

# Called with (soup, config, page_url) when no card selector matched
PageFallback = Callable[[BeautifulSoup, SiteConfig, str], List[ScrapedListing]]


class StaticScraper:
    """Scraper for sites whose results are plain server-rendered HTML."""

    method = 'static'

    def __init__(self, config: SiteConfig, crawler: Optional[StaticCrawler] = None):
        self.config = config
        self.crawler = crawler or StaticCrawler()
        self.logger = logging.getLogger(f"scraper.{config.slug}")

    def name(self) -> str:
        return self.config.slug

    def scrape(self, token: CancelToken, options: ScrapeOptions) -> ScrapeStreams:
        return spawn_producer(token, partial(self._produce, token, options), self.config.slug)

    async def _produce(self, token: CancelToken, options: ScrapeOptions, listings: Stream, errors: Stream):
        self.logger.info(f"Starting scrape from {self.config.start_url}")
        async with self.crawler.session() as client:
            count = await paginate(
                token, options, self.config, partial(self._fetch_page, token, client),
                listings, errors, self.logger,
            )
        self.logger.info(f"Emitted {count} listings")

    async def _fetch_page(self, token: CancelToken, client: httpx.AsyncClient, url: str, page_num: int) -> ListingPage:
        soup = await token.run(self.crawler.fetch_soup(url, client))
        page = parse_listing_page(soup, self.config, url, page_num, self.method)
        if not page.listings:
            marker = detect_block(page_text(soup))
            if marker:
                raise BlockedError(f"access blocked on page {page_num} ('{marker}')", url=url)
        return page


class BrowserScraper:
    """Scraper for JavaScript-rendered or bot-defended sites."""

    method = 'browser'

    def __init__(
        self,
        config: SiteConfig,
        pool: BrowserPool,
        fallback: Optional[PageFallback] = None,
        max_retries: int = 3,
    ):
        self.config = config
        self.pool = pool
        self.fallback = fallback
        self.max_retries = max_retries
        self.logger = logging.getLogger(f"scraper.{config.slug}")

    def name(self) -> str:
        return self.config.slug

    def scrape(self, token: CancelToken, options: ScrapeOptions) -> ScrapeStreams:
        return spawn_producer(token, partial(self._produce, token, options), self.config.slug)

    async def _produce(self, token: CancelToken, options: ScrapeOptions, listings: Stream, errors: Stream):
        self.logger.info(f"Starting browser scrape from {self.config.start_url}")
        async with self.pool.page() as page:
            count = await paginate(
                token, options, self.config, partial(self._fetch_page, token, page),
                listings, errors, self.logger,
            )
        self.logger.info(f"Emitted {count} listings")

    async def _render(self, page: Page, url: str) -> str:
        await navigate_with_retry(page, url, max_retries=self.max_retries)
        await scroll_to_bottom(page)
        return await page.content()

    async def _fetch_page(self, token: CancelToken, page: Page, url: str, page_num: int) -> ListingPage:
        try:
            html = await token.run(self._render(page, url))
        except PlaywrightError as e:
            raise ScrapeError(f"failed to render page {page_num}: {e}", url=url) from e

        marker = is_blocked(html)
        if marker:
            raise BlockedError(f"access blocked on page {page_num} ('{marker}')", url=url)

        soup = BeautifulSoup(html, 'html.parser')
        result = parse_listing_page(soup, self.config, url, page_num, self.method)
        if not result.listings and self.fallback is not None:
            result.listings = self.fallback(soup, self.config, url)
            if result.listings:
                self.logger.debug(f"Page {page_num}: {len(result.listings)} listings from fallback extraction")
        return result
