"""
Data extraction utilities for scrapers.

Pure functions that turn parsed HTML into candidate listings. Each field is
found through an ordered table of locators; the first locator yielding a
non-empty value wins.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from bs4 import BeautifulSoup, Tag

from ..base import Locator, ScrapeError, ScrapedListing, SiteConfig, MONEY_FIELDS
from .normalizers import (
    absolute_url,
    clean_text,
    parse_coordinate,
    parse_int,
    parse_location,
    parse_money,
)

logger = logging.getLogger(__name__)

# Visible-text markers of anti-bot challenges and access denials
BLOCK_MARKERS = (
    'access denied',
    'captcha',
    'just a moment',
    'attention required',
    'verify you are human',
    'are you a robot',
    'request blocked',
    'pardon our interruption',
)

TEXT_FIELDS = (
    'description', 'industry', 'industry_category', 'business_type',
    'franchise_name', 'reason_for_sale',
)

FRANCHISE_PATTERN = re.compile(r'\bfranchis')
NEGATED_FRANCHISE_PATTERN = re.compile(r'\b(?:not\s+(?:an?\s+)?|non[\s-]?|no\s+)franchis\w*')


@dataclass
class ListingPage:
    """Listings parsed from one results page."""
    listings: List[ScrapedListing] = field(default_factory=list)
    next_url: Optional[str] = None
    skipped: int = 0
    errors: List[ScrapeError] = field(default_factory=list)


def detect_block(text: Optional[str]) -> Optional[str]:
    """
    Check page text for a bot-challenge marker.

    Args:
        text: Visible page text or raw HTML

    Returns:
        The matched marker, or None if the page looks normal
    """
    if not text:
        return None
    lowered = text.lower()
    for marker in BLOCK_MARKERS:
        if marker in lowered:
            return marker
    return None


def page_text(soup: BeautifulSoup) -> str:
    """Title plus visible body text, without scripts and styles."""
    title = soup.title.get_text(' ', strip=True) if soup.title else ''
    body = soup.body or soup
    parts = [title]
    for node in body.find_all(string=True):
        if node.parent is not None and node.parent.name in ('script', 'style', 'noscript'):
            continue
        parts.append(node)
    return ' '.join(p.strip() for p in parts if p and p.strip())


def select_value(card: Tag, locators: Sequence[Locator]) -> Optional[str]:
    """First non-empty value from an ordered locator table."""
    for locator in locators:
        element = card if not locator.selector else card.select_one(locator.selector)
        if element is None:
            continue
        if locator.attr:
            value = element.get(locator.attr)
            if isinstance(value, list):
                value = ' '.join(value)
        else:
            value = element.get_text(' ', strip=True)
        value = clean_text(value)
        if value:
            return value
    return None


def extract_external_id(url: Optional[str], patterns: Iterable[str]) -> Optional[str]:
    """
    Pull the source's listing id out of a listing URL.

    Args:
        url: Listing URL
        patterns: Regexes with the id in group 1, tried in order

    Returns:
        The id, or None if no pattern matches
    """
    if not url:
        return None
    for pattern in patterns:
        match = re.search(pattern, url)
        if match:
            return match.group(1)
    return None


def find_cards(soup: BeautifulSoup, selectors: Sequence[str]) -> List[Tag]:
    """Cards for the first selector that matches anything."""
    for selector in selectors:
        cards = soup.select(selector)
        if cards:
            return cards
    return []


def mentions_franchise(text: str) -> bool:
    """
    Whether card text advertises a franchise.

    Examples:
        "Franchise resale, turnkey" -> True
        "Not a franchise" -> False
        "Independent, non-franchise cafe" -> False
    """
    return bool(FRANCHISE_PATTERN.search(NEGATED_FRANCHISE_PATTERN.sub(' ', text.lower())))


def provenance(page_url: str, method: str) -> Dict[str, str]:
    return {
        'source_url': page_url,
        'scraped_at': datetime.now(timezone.utc).isoformat(),
        'method': method,
    }


def extract_listing(card: Tag, config: SiteConfig, page_url: str, method: str = 'static') -> Optional[ScrapedListing]:
    """
    Build one candidate listing from a results-page card.

    Args:
        card: The card element
        config: Site configuration with the locator tables
        page_url: URL of the page the card came from
        method: 'static' or 'browser', recorded in raw_data

    Returns:
        ScrapedListing, or None when the card lacks an external id or a title
    """
    rules = config.field_rules

    url = absolute_url(config.base_url, select_value(card, rules.get('url', ())))
    external_id = select_value(card, rules.get('external_id', ())) or extract_external_id(url, config.id_patterns)
    title = select_value(card, rules.get('title', ()))

    if not external_id or not title:
        return None

    values = {}
    for name in TEXT_FIELDS:
        values[name] = select_value(card, rules.get(name, ()))
    for name in MONEY_FIELDS:
        values[name] = parse_money(select_value(card, rules.get(name, ())))

    city, state, zip_code = parse_location(select_value(card, rules.get('location', ())))
    city = select_value(card, rules.get('city', ())) or city
    state = select_value(card, rules.get('state', ())) or state
    zip_code = select_value(card, rules.get('zip_code', ())) or zip_code

    lat = parse_coordinate(select_value(card, rules.get('lat', ())))
    lng = parse_coordinate(select_value(card, rules.get('lng', ())))
    if lat is None or lng is None:
        lat = lng = None

    text = card.get_text(' ', strip=True).lower()

    return ScrapedListing(
        external_id=external_id,
        title=title,
        url=url,
        city=city,
        state=state,
        zip_code=zip_code,
        country=config.country,
        lat=lat,
        lng=lng,
        is_franchise=mentions_franchise(text),
        real_estate_included='real estate included' in text or 'includes real estate' in text,
        year_established=parse_int(select_value(card, rules.get('year_established', ()))),
        employees=parse_int(select_value(card, rules.get('employees', ()))),
        raw_data=provenance(page_url, method),
        **values,
    )


def extract_next_url(soup: BeautifulSoup, config: SiteConfig, page_url: str, page_num: int) -> Optional[str]:
    """URL of the page after ``page_num``, from the template or a next link."""
    templated = config.page_url(page_num + 1)
    if templated:
        return templated
    for selector in config.next_page_selectors:
        link = soup.select_one(selector)
        if link is not None and link.get('href'):
            return absolute_url(page_url, link['href'])
    return None


def parse_listing_page(soup: BeautifulSoup, config: SiteConfig, page_url: str,
                       page_num: int, method: str = 'static') -> ListingPage:
    """
    Extract every candidate listing from a results page.

    Listings keep their in-page order. Cards that cannot be turned into a
    listing are counted in ``skipped``.
    """
    page = ListingPage(next_url=extract_next_url(soup, config, page_url, page_num))
    for card in find_cards(soup, config.card_selectors):
        try:
            listing = extract_listing(card, config, page_url, method)
        except ValueError as e:
            page.errors.append(ScrapeError(f"unparseable card on page {page_num}: {e}", url=page_url))
            continue
        if listing is None:
            page.skipped += 1
            continue
        page.listings.append(listing)

    if page.skipped:
        logger.debug(f"[{config.slug}] skipped {page.skipped} cards without id or title on page {page_num}")
    return page


def extract_json_ld_listings(soup: BeautifulSoup, config: SiteConfig, page_url: str,
                             method: str = 'browser') -> List[ScrapedListing]:
    """
    Listings from structured data (``ItemList`` in ``application/ld+json``).

    Entries without a URL-derived id or a name are skipped.
    """
    listings = []
    seen = set()
    for script in soup.select("script[type='application/ld+json']"):
        try:
            data = json.loads(script.string or '')
        except json.JSONDecodeError:
            continue

        blocks = data if isinstance(data, list) else [data]
        for block in blocks:
            if not isinstance(block, dict):
                continue
            for element in block.get('itemListElement') or []:
                if not isinstance(element, dict):
                    continue
                item = element.get('item') if isinstance(element.get('item'), dict) else element
                url = absolute_url(config.base_url, item.get('url'))
                external_id = extract_external_id(url, config.id_patterns)
                title = clean_text(item.get('name'))
                if not external_id or not title or external_id in seen:
                    continue
                seen.add(external_id)
                description = clean_text(item.get('description'))
                text = f"{title} {description or ''}".lower()
                listings.append(ScrapedListing(
                    external_id=external_id,
                    title=title,
                    url=url,
                    description=description,
                    country=config.country,
                    is_franchise=mentions_franchise(text),
                    raw_data=provenance(page_url, method),
                ))
    return listings


def extract_link_listings(soup: BeautifulSoup, config: SiteConfig, page_url: str,
                          href_contains: str, method: str = 'browser',
                          min_title_length: int = 5) -> List[ScrapedListing]:
    """Bare listings from links whose href contains ``href_contains``."""
    listings = []
    seen = set()
    for link in soup.select(f"a[href*='{href_contains}']"):
        url = absolute_url(config.base_url, link.get('href'))
        external_id = extract_external_id(url, config.id_patterns)
        title = clean_text(link.get_text(' ', strip=True))
        if not external_id or external_id in seen:
            continue
        if not title or len(title) < min_title_length:
            continue
        seen.add(external_id)
        listings.append(ScrapedListing(
            external_id=external_id,
            title=title,
            url=url,
            country=config.country,
            raw_data=provenance(page_url, method),
        ))
    return listings
