"""Per-site scraper construction."""

from typing import Dict, Optional

from ..base import Scraper, ScraperType, SiteConfig
from ..config import get_enabled_sites
from ..crawlers.browser import BrowserPool
from ..crawlers.static import StaticCrawler
from ..sources import BrowserScraper, PageFallback, StaticScraper
from . import bizbuysell

# Extra extraction for sites whose cards are unreliable
PAGE_FALLBACKS: Dict[str, PageFallback] = {
    'bizbuysell': bizbuysell.parse_page_data,
}


def build_scraper(
    config: SiteConfig,
    pool: Optional[BrowserPool] = None,
    timeout: float = 30.0,
    max_retries: int = 3,
    user_agent: Optional[str] = None,
) -> Scraper:
    """
    Create the scraper variant a site needs.

    Args:
        config: Site configuration
        pool: Shared browser pool, required for browser sites
        timeout: HTTP timeout for static sites
        max_retries: Attempts per page request
        user_agent: Override for the static crawler's User-Agent

    Raises:
        ValueError: If a browser site is requested without a pool
    """
    if config.scraper_type == ScraperType.BROWSER:
        if pool is None:
            raise ValueError(f"{config.slug} needs a browser pool")
        return BrowserScraper(config, pool, fallback=PAGE_FALLBACKS.get(config.slug), max_retries=max_retries)

    crawler_options = {'timeout': timeout, 'max_retries': max_retries}
    if user_agent:
        crawler_options['user_agent'] = user_agent
    return StaticScraper(config, StaticCrawler(**crawler_options))


def build_registry(pool: Optional[BrowserPool] = None, **options) -> Dict[str, Scraper]:
    """Scrapers for every enabled site, keyed by slug.

    Browser sites are left out when no pool is given.
    """
    registry = {}
    for slug, config in get_enabled_sites().items():
        if config.scraper_type == ScraperType.BROWSER and pool is None:
            continue
        registry[slug] = build_scraper(config, pool, **options)
    return registry


__all__ = ['build_scraper', 'build_registry', 'PAGE_FALLBACKS']
