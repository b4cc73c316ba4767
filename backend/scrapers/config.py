"""
Site configurations for the business-for-sale sources.

Each site has a SiteConfig that defines:
- Start URL and how to reach the next results page
- Scraper type (static or browser)
- Locator tables for listing cards and their fields
- Regexes that pull the source's listing id out of a listing URL
"""

from typing import Dict, Tuple

from .base import Locator, SiteConfig, ScraperType


def text(*selectors: str) -> Tuple[Locator, ...]:
    """Locators reading element text, in priority order."""
    return tuple(Locator(selector) for selector in selectors)


def attr(name: str, *selectors: str) -> Tuple[Locator, ...]:
    """Locators reading attribute ``name``; '' selects the card itself."""
    return tuple(Locator(selector, name) for selector in selectors)


# ============================================================
# FIELD LOCATORS
# Brokerage sites share most of their markup conventions
# ============================================================
COMMON_RULES: Dict[str, Tuple[Locator, ...]] = {
    'external_id': attr('data-listing-id', '') + attr('data-id', ''),
    'url': attr('href', 'a.title', 'a.listing-title', 'h2 a', 'h3 a', 'a'),
    'title': text('.title', '.listing-title', 'h2', 'h3', 'h4'),
    'description': text('.description', '.listing-description', '.summary', '.teaser'),
    'asking_price': text('.asking-price', '.price', '.listing-price'),
    'cash_flow': text('.cash-flow', '.cashflow', '.sde'),
    'revenue': text('.revenue', '.gross-revenue', '.gross-sales'),
    'ebitda': text('.ebitda'),
    'inventory_value': text('.inventory', '.inventory-value'),
    'location': text('.location', '.city-state', '.listing-location'),
    'industry': text('.category', '.industry', '.business-type'),
    'reason_for_sale': text('.reason-for-sale'),
    'year_established': text('.established', '.year-established'),
    'employees': text('.employees'),
    'lat': attr('data-lat', '') + attr('data-lat', '[data-lat]'),
    'lng': attr('data-lng', '') + attr('data-lng', '[data-lng]'),
}


def rules(**overrides: Tuple[Locator, ...]) -> Dict[str, Tuple[Locator, ...]]:
    """Common rules with site-specific tables swapped in."""
    merged = dict(COMMON_RULES)
    merged.update(overrides)
    return merged


# Listing ids embedded in franchise-broker URLs
BROKER_ID_PATTERNS = (
    r'/listing/(\d+)',
    r'/business/(\d+)',
    r'listing-(\d+)',
    r'id=(\d+)',
    r'/(\d+)/?$',
)

BROKER_CARD_SELECTORS = (
    '.listing-card',
    '.business-listing',
    '.listing-item',
    'article.listing',
    '.property-listing',
)


# ============================================================
# SITE CONFIGURATIONS
# ============================================================

SITES = {
    # ========== BROWSER ==========
    # Renders results client-side and runs bot protection

    'bizbuysell': SiteConfig(
        name='BizBuySell',
        slug='bizbuysell',
        base_url='https://www.bizbuysell.com',
        start_url='https://www.bizbuysell.com/businesses-for-sale/',
        page_url_template='https://www.bizbuysell.com/businesses-for-sale/{page}/',
        scraper_type=ScraperType.BROWSER,
        card_selectors=(
            'div.listing',
            'div.listing-card',
            'article.listing',
            'div[data-listing-id]',
        ),
        field_rules=rules(
            url=attr('href', 'a.title', 'a.listing-title', 'h3 a', "a[href*='/Business-Opportunity/']"),
            title=text('a.title', 'a.listing-title', 'h3', '.title'),
        ),
        id_patterns=(
            r'listing-(\d+)',
            r'-(\d+)\.aspx',
            r'/(\d+)/?$',
        ),
        rate_limit_seconds=3.0,
    ),

    # ========== STATIC ==========
    # Server-rendered results, httpx + BeautifulSoup

    'bizquest': SiteConfig(
        name='BizQuest',
        slug='bizquest',
        base_url='https://www.bizquest.com',
        start_url='https://www.bizquest.com/businesses-for-sale/',
        scraper_type=ScraperType.STATIC,
        card_selectors=(
            'div.listing-item',
            'article.listing',
            'div.search-result-item',
        ),
        field_rules=rules(),
        id_patterns=(
            r'/detail/(\d+)',
            r'/listing/(\d+)',
            r'-(\d+)/?$',
        ),
    ),

    'businessbroker': SiteConfig(
        name='BusinessBroker.net',
        slug='businessbroker',
        base_url='https://www.businessbroker.net',
        start_url='https://www.businessbroker.net/businesses-for-sale',
        scraper_type=ScraperType.STATIC,
        card_selectors=(
            'div.listing',
            'article.listing-card',
            '.search-result',
        ),
        field_rules=rules(),
        id_patterns=(
            r'/listing/(\d+)',
            r'/businesses/(\d+)',
            r'-(\d+)$',
        ),
    ),

    'sunbelt': SiteConfig(
        name='Sunbelt Network',
        slug='sunbelt',
        base_url='https://www.sunbeltnetwork.com',
        start_url='https://www.sunbeltnetwork.com/businesses-for-sale/',
        scraper_type=ScraperType.STATIC,
        card_selectors=BROKER_CARD_SELECTORS,
        field_rules=rules(),
        id_patterns=BROKER_ID_PATTERNS,
    ),

    'transworld': SiteConfig(
        name='Transworld Business Advisors',
        slug='transworld',
        base_url='https://www.tworld.com',
        start_url='https://www.tworld.com/businesses-for-sale/',
        scraper_type=ScraperType.STATIC,
        card_selectors=BROKER_CARD_SELECTORS,
        field_rules=rules(),
        id_patterns=BROKER_ID_PATTERNS,
    ),

    'firstchoice': SiteConfig(
        name='FirstChoice Business Brokers',
        slug='firstchoice',
        base_url='https://www.fcbb.com',
        start_url='https://www.fcbb.com/businesses-for-sale/',
        scraper_type=ScraperType.STATIC,
        card_selectors=BROKER_CARD_SELECTORS,
        field_rules=rules(),
        id_patterns=BROKER_ID_PATTERNS,
    ),
}


def get_site_config(slug: str) -> SiteConfig:
    """
    Get configuration for a specific site.

    Args:
        slug: Site identifier (e.g., 'bizbuysell', 'bizquest')

    Returns:
        SiteConfig for the site

    Raises:
        ValueError: If slug is not found
    """
    if slug not in SITES:
        valid_keys = ', '.join(sorted(SITES.keys()))
        raise ValueError(f"Unknown site: '{slug}'. Valid sites: {valid_keys}")
    return SITES[slug]


def get_enabled_sites() -> dict:
    """Get all enabled sites."""
    return {k: v for k, v in SITES.items() if v.enabled}


def list_sites() -> list:
    """List all site slugs."""
    return list(SITES.keys())


def get_site_summary() -> list:
    """Get a summary of all sites for display."""
    summary = []
    for slug, config in SITES.items():
        summary.append({
            'slug': slug,
            'name': config.name,
            'type': config.scraper_type.value,
            'enabled': config.enabled,
            'url': config.start_url,
        })
    return summary
