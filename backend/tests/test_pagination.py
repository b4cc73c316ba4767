"""
Tests for the shared page traversal driver.
"""

import asyncio
import logging

import pytest

from scrapers.base import FatalScrapeError, ScrapeCancelledException, ScrapeError, ScrapeOptions
from scrapers.pagination import paginate
from scrapers.streams import CancelToken, Stream
from scrapers.utils.extractors import ListingPage

log = logging.getLogger("scraper.test")


class PageServer:
    """Serves ListingPages by page number and records what was fetched."""

    def __init__(self, listing_factory, pages, next_pages=True):
        self.listing_factory = listing_factory
        self.pages = pages
        self.next_pages = next_pages
        self.fetched = []

    async def __call__(self, url, page_num):
        self.fetched.append(url)
        content = self.pages(page_num) if callable(self.pages) else self.pages.get(page_num, [])
        if isinstance(content, Exception):
            raise content
        listings = [self.listing_factory(str(i)) for i in content]
        next_url = f"https://brokers.example.com/page/{page_num + 1}" if self.next_pages else None
        return ListingPage(listings=listings, next_url=next_url)


def numbered(page_num, per_page=20):
    start = (page_num - 1) * per_page
    return range(start, start + per_page)


async def run(site_config, server, options=None, token=None):
    token = token or CancelToken()
    listings, errors = Stream(1000), Stream(1000)
    emitted = await paginate(token, options or ScrapeOptions(rate_limit=0), site_config, server,
                             listings, errors, log)
    listings.close()
    errors.close()
    return emitted, [l async for l in listings], [e async for e in errors]


class TestTermination:
    """Test the stopping conditions."""

    @pytest.mark.asyncio
    async def test_stops_after_empty_page(self, site_config, listing_factory):
        server = PageServer(listing_factory, {1: numbered(1), 2: []})

        emitted, items, _ = await run(site_config, server)

        assert emitted == 20
        assert len(server.fetched) == 2

    @pytest.mark.asyncio
    async def test_shrinking_pages_run_until_the_empty_one(self, site_config, listing_factory):
        server = PageServer(listing_factory, {
            1: range(0, 20),
            2: range(100, 112),
            3: range(200, 205),
            4: [],
            5: range(400, 420),
        })
        options = ScrapeOptions(rate_limit=0, max_pages_ceiling=10)

        emitted, items, errors = await run(site_config, server, options)

        assert options.max_pages(site_config.page_size) == 10
        assert emitted == 37
        assert len(server.fetched) == 4
        assert server.fetched[-1] == "https://brokers.example.com/page/4"
        assert [l.external_id for l in items][-5:] == ["200", "201", "202", "203", "204"]
        assert errors == []

    @pytest.mark.asyncio
    async def test_stops_when_page_repeats(self, site_config, listing_factory):
        server = PageServer(listing_factory, lambda n: numbered(1))

        emitted, items, _ = await run(site_config, server)

        assert emitted == 20
        assert len(server.fetched) == 2

    @pytest.mark.asyncio
    async def test_stops_without_next_url(self, site_config, listing_factory):
        server = PageServer(listing_factory, {1: numbered(1)}, next_pages=False)

        emitted, _, _ = await run(site_config, server)

        assert emitted == 20
        assert len(server.fetched) == 1

    @pytest.mark.asyncio
    async def test_page_ceiling_when_uncapped(self, site_config, listing_factory):
        server = PageServer(listing_factory, numbered)

        emitted, _, _ = await run(site_config, server, ScrapeOptions(rate_limit=0, max_pages_ceiling=3))

        assert emitted == 60
        assert len(server.fetched) == 3

    @pytest.mark.asyncio
    async def test_listing_cap_is_exact(self, site_config, listing_factory):
        """A cap of 25 against 500 available listings emits exactly 25."""
        server = PageServer(listing_factory, lambda n: numbered(n) if n <= 25 else [])

        emitted, items, _ = await run(site_config, server, ScrapeOptions(rate_limit=0, max_listings=25))

        assert emitted == 25
        assert [l.external_id for l in items] == [str(i) for i in range(25)]
        assert len(server.fetched) == 2


class TestPageErrors:
    """Test how fetch failures are classified."""

    @pytest.mark.asyncio
    async def test_entry_page_failure_is_fatal(self, site_config, listing_factory):
        server = PageServer(listing_factory, {1: ScrapeError("HTTP 500")})

        with pytest.raises(FatalScrapeError, match="entry page unreachable"):
            await run(site_config, server)

    @pytest.mark.asyncio
    async def test_later_page_failure_is_reported(self, site_config, listing_factory):
        server = PageServer(listing_factory, {1: numbered(1), 2: ScrapeError("HTTP 500")})

        emitted, items, errors = await run(site_config, server)

        assert emitted == 20
        assert len(errors) == 1
        assert not errors[0].fatal

    @pytest.mark.asyncio
    async def test_fatal_fetch_error_propagates(self, site_config, listing_factory):
        server = PageServer(listing_factory, {1: numbered(1), 2: FatalScrapeError("blocked")})

        with pytest.raises(FatalScrapeError, match="blocked"):
            await run(site_config, server)

    @pytest.mark.asyncio
    async def test_page_errors_are_forwarded(self, site_config, listing_factory):
        async def fetch(url, page_num):
            if page_num > 1:
                return ListingPage()
            return ListingPage(listings=[listing_factory("1")], next_url="https://x/2",
                               errors=[ScrapeError("unparseable card")])

        _, items, errors = await run(site_config, fetch)

        assert len(items) == 1
        assert [str(e) for e in errors] == ["unparseable card"]


class TestCancellation:
    """Test that a cancelled token stops traversal."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, site_config, listing_factory):
        token = CancelToken()
        token.cancel()
        server = PageServer(listing_factory, numbered)

        with pytest.raises(ScrapeCancelledException):
            await run(site_config, server, token=token)
        assert server.fetched == []

    @pytest.mark.asyncio
    async def test_cancelled_during_politeness_delay(self, site_config, listing_factory):
        token = CancelToken()
        server = PageServer(listing_factory, numbered)
        asyncio.get_running_loop().call_later(0.05, token.cancel, "stop")

        emitted, _, _ = await asyncio.wait_for(
            run(site_config, server, ScrapeOptions(rate_limit=30), token=token), timeout=5)

        assert emitted == 20
        assert len(server.fetched) == 1
