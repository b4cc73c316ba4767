"""Crawler implementations for different site types."""

from .static import StaticCrawler
from .browser import BrowserPool, navigate_with_retry, scroll_to_bottom, is_blocked

__all__ = ['StaticCrawler', 'BrowserPool', 'navigate_with_retry', 'scroll_to_bottom', 'is_blocked']
