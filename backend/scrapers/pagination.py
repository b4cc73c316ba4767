"""
Page traversal shared by every source scraper.

The driver walks a source's result pages in order and pushes the listings
it finds onto the run's listing stream. It stops when a page yields no new
listings, when the page budget is spent, when the listing cap is reached,
or when the run is cancelled.
"""

import logging
from typing import Awaitable, Callable, Set

from .base import FatalScrapeError, ScrapeError, ScrapeOptions, SiteConfig
from .streams import CancelToken, Stream
from .utils.extractors import ListingPage

PageFetcher = Callable[[str, int], Awaitable[ListingPage]]


async def paginate(
    token: CancelToken,
    options: ScrapeOptions,
    config: SiteConfig,
    fetch_page: PageFetcher,
    listings: Stream,
    errors: Stream,
    log: logging.Logger,
) -> int:
    """
    Drive page traversal for one run.

    Args:
        token: Run cancel token
        options: Run options (listing cap, delay, page ceiling)
        config: Site configuration (start URL, page size)
        fetch_page: Coroutine ``(url, page_num) -> ListingPage``
        listings: Listing stream to emit into
        errors: Error stream for non-fatal page errors
        log: Per-source logger

    Returns:
        Number of listings emitted

    Raises:
        FatalScrapeError: If the first page cannot be fetched, or a fetch
            reports a fatal condition such as a bot block
    """
    max_pages = options.max_pages(config.page_size)
    url = config.start_url
    page_num = 1
    emitted = 0
    seen: Set[str] = set()

    while url and page_num <= max_pages:
        token.raise_if_cancelled()
        log.debug(f"Fetching page {page_num}/{max_pages}: {url}")

        try:
            page = await fetch_page(url, page_num)
        except FatalScrapeError:
            raise
        except ScrapeError as e:
            if page_num == 1:
                raise FatalScrapeError(f"entry page unreachable: {e}", url=url) from e
            log.warning(f"Page {page_num} failed, stopping traversal: {e}")
            await errors.send(e, token)
            break

        for error in page.errors:
            if not await errors.send(error, token):
                return emitted

        fresh = [listing for listing in page.listings if listing.external_id not in seen]
        if not fresh:
            log.info(f"No new listings on page {page_num}, stopping")
            break

        for listing in fresh:
            seen.add(listing.external_id)
            if not await listings.send(listing, token):
                return emitted
            emitted += 1
            if options.cap_reached(emitted):
                log.info(f"Reached listing cap of {options.max_listings}")
                return emitted

        page_num += 1
        url = page.next_url
        if url and page_num <= max_pages:
            if not await token.sleep(options.rate_limit):
                return emitted

    return emitted
