"""
Listing scraper system.

This module provides a unified scraping framework supporting:
- Static HTML sites (httpx + BeautifulSoup)
- JavaScript-rendered, bot-defended sites (Playwright browser pool)
"""

from .base import Scraper, ScraperType, SiteConfig, ScrapedListing, ScrapeOptions, ScrapeResult
from .config import SITES, get_site_config, get_enabled_sites
from .manager import ScraperManager
from .streams import CancelToken

__all__ = [
    'Scraper',
    'ScraperType',
    'SiteConfig',
    'ScrapedListing',
    'ScrapeOptions',
    'ScrapeResult',
    'SITES',
    'get_site_config',
    'get_enabled_sites',
    'ScraperManager',
    'CancelToken',
]
