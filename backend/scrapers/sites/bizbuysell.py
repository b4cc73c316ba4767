"""
BizBuySell page fallbacks.

BizBuySell changes its card markup often. When no card selector matches,
the results are still present as JSON-LD ``ItemList`` data, and failing
that as bare links to ``/Business-Opportunity/`` pages.
"""

from typing import List

from bs4 import BeautifulSoup

from ..base import ScrapedListing, SiteConfig
from ..utils.extractors import extract_json_ld_listings, extract_link_listings

LISTING_PATH = '/Business-Opportunity/'


def parse_page_data(soup: BeautifulSoup, config: SiteConfig, page_url: str) -> List[ScrapedListing]:
    """Listings from structured data, or from listing links if there is none."""
    listings = extract_json_ld_listings(soup, config, page_url)
    if listings:
        return listings
    return extract_link_listings(soup, config, page_url, LISTING_PATH)
