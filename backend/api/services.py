"""
Wiring of the long-lived scraping services.

Shared by the API lifespan and the CLI worker so both run the same browser
pool, scraper registry, job scheduler and refresh trigger.
"""

from dataclasses import dataclass
from typing import Dict
import logging

from api.config import settings
from api.database import SessionLocal
from api.repository import SourceRepository
from scrapers.base import Scraper
from scrapers.config import SITES
from scrapers.crawlers.browser import BrowserPool
from scrapers.jobs import JobScheduler, JobWorker, session_manager_factory
from scrapers.sites import build_registry
from scrapers.sources import StaticScraper
from scrapers.triggers import RefreshTrigger, SlidingWindowLimiter

logger = logging.getLogger(__name__)


def manager_options() -> dict:
    """ScraperManager keyword arguments taken from settings."""
    return {
        'rate_limit': settings.scraper_rate_limit,
        'max_pages': settings.scraper_max_pages,
        'run_timeout': settings.scraper_run_timeout,
        'stale_after_days': settings.stale_after_days,
    }


def build_browser_pool() -> BrowserPool:
    return BrowserPool(
        headless=settings.browser_headless,
        executable_path=settings.browser_executable_path,
        timeout=settings.browser_timeout,
        user_agent=settings.scraper_user_agent,
    )


def build_scrapers(pool: BrowserPool) -> Dict[str, Scraper]:
    return build_registry(
        pool,
        timeout=settings.scraper_timeout,
        max_retries=settings.scraper_max_retries,
        user_agent=settings.scraper_user_agent,
    )


def seed_sources(session_factory=SessionLocal) -> int:
    """Create missing Source rows for every configured site."""
    db = session_factory()
    try:
        return len(SourceRepository(db).ensure_sources(SITES.values()))
    finally:
        db.close()


def source_exists(slug: str, session_factory=SessionLocal) -> bool:
    db = session_factory()
    try:
        return SourceRepository(db).get_by_slug(slug) is not None
    finally:
        db.close()


@dataclass
class Services:
    pool: BrowserPool
    scrapers: Dict[str, Scraper]
    worker: JobWorker
    scheduler: JobScheduler
    trigger: RefreshTrigger

    async def aclose(self):
        self.scheduler.shutdown()
        for scraper in self.scrapers.values():
            if isinstance(scraper, StaticScraper):
                await scraper.crawler.close()
        await self.pool.close()


def build_services(session_factory=SessionLocal) -> Services:
    """Create the services. Nothing is started; call ``scheduler.start()``."""
    pool = build_browser_pool()
    scrapers = build_scrapers(pool)
    worker = JobWorker(session_manager_factory(session_factory, scrapers, **manager_options()))
    scheduler = JobScheduler(
        worker,
        max_attempts=settings.job_max_attempts,
        retry_delay_seconds=settings.job_retry_delay_seconds,
    )
    trigger = RefreshTrigger(
        scheduler,
        SlidingWindowLimiter(limit=1, window=settings.refresh_window_seconds),
        source_exists=lambda slug: source_exists(slug, session_factory),
    )
    logger.info(f"Scrapers registered: {', '.join(sorted(scrapers))}")
    return Services(pool=pool, scrapers=scrapers, worker=worker, scheduler=scheduler, trigger=trigger)
