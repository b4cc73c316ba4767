"""
Scraper Manager - orchestrates all site scrapers.

Registers scrapers by source slug, drives one source or every active
source, records a ScrapeJob per run, and merges each scraped listing into
the store as it arrives.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol
import logging

from api.database import as_utc, utc_now
from .base import (
    Colors,
    FatalScrapeError,
    JobStatus,
    ScrapeOptions,
    ScrapeResult,
    ScrapedListing,
    Scraper,
    ScraperNotRegistered,
    SourceNotFound,
)
from .config import SITES
from .streams import CancelToken, ScrapeStreams

logger = logging.getLogger(__name__)


class SourceStore(Protocol):
    """What the manager needs from source and job persistence."""

    def get_by_slug(self, slug: str): ...
    def list_active(self) -> list: ...
    def create_scrape_job(self, source_id: int, full_scrape: bool = True, started_at: Optional[datetime] = None): ...
    def finalize_scrape_job(self, job_id: int, result: ScrapeResult) -> bool: ...
    def latest_finished_job(self, source_id: int): ...
    def rollback(self): ...


class ListingStore(Protocol):
    """What the manager needs from listing persistence."""

    def find_id(self, source_id: int, external_id: str) -> Optional[int]: ...
    def upsert(self, listing: ScrapedListing, seen_at: Optional[datetime] = None): ...
    def mark_stale(self, source_id: int, cutoff: datetime) -> int: ...


class ScraperManager:
    """
    Manages and orchestrates all site scrapers.

    Usage:
        manager = ScraperManager(SourceRepository(db), ListingRepository(db))
        manager.register_scraper('bizquest', scraper)

        # Run single source
        result = await manager.run_source(token, 'bizquest')

        # Run all active sources
        results = await manager.run_all(token)
    """

    def __init__(
        self,
        sources: SourceStore,
        listings: ListingStore,
        scrapers: Optional[Dict[str, Scraper]] = None,
        rate_limit: float = 2.0,
        max_pages: int = 50,
        run_timeout: Optional[float] = None,
        stale_after_days: int = 7,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the scraper manager.

        Args:
            sources: Source and scrape-job store
            listings: Listing store
            scrapers: Initial registry, slug -> scraper
            rate_limit: Delay between page requests for every run
            max_pages: Page ceiling for uncapped runs
            run_timeout: Deadline per source run in seconds, None for no limit
            stale_after_days: Staleness window for the sweep
            clock: Time source, replaceable in tests
        """
        self.sources = sources
        self.listings = listings
        self.rate_limit = rate_limit
        self.max_pages = max_pages
        self.run_timeout = run_timeout
        self.stale_after = timedelta(days=stale_after_days)
        self.clock = clock
        self.results: Dict[str, ScrapeResult] = {}
        self._scrapers: Dict[str, Scraper] = {}
        for slug, scraper in (scrapers or {}).items():
            self.register_scraper(slug, scraper)

    @classmethod
    def from_session(cls, db, scrapers: Optional[Dict[str, Scraper]] = None, **options) -> 'ScraperManager':
        """Manager backed by the SQLAlchemy repositories."""
        # Import here to avoid circular imports
        from api.repository import ListingRepository, SourceRepository
        return cls(SourceRepository(db), ListingRepository(db), scrapers, **options)

    def register_scraper(self, slug: str, scraper: Scraper):
        """Register (or replace) the scraper for a source slug."""
        self._scrapers[slug] = scraper
        logger.debug(f"Registered scraper for {slug}")

    def get_scraper(self, slug: str) -> Scraper:
        try:
            return self._scrapers[slug]
        except KeyError:
            raise ScraperNotRegistered(f"no scraper registered for: {slug}") from None

    # ========== RUNS ==========

    async def run_source(self, token: CancelToken, slug: str, max_listings: int = 0,
                         full_scrape: bool = True) -> ScrapeResult:
        """
        Scrape one source and merge its listings.

        Args:
            token: Caller's cancel token; the run derives its own from it
            slug: Source slug
            max_listings: Stop after this many listings, 0 for no cap
            full_scrape: Whether the run walks the whole result set

        Returns:
            ScrapeResult; ``status`` is completed or failed

        Raises:
            SourceNotFound: If no source has this slug
            ScraperNotRegistered: If no scraper is registered for the slug
            Exception: Store failures are re-raised after the job is marked failed
        """
        source = self.sources.get_by_slug(slug)
        if source is None:
            raise SourceNotFound(f"source not found: {slug}")
        scraper = self.get_scraper(slug)

        started_at = self.clock()
        job = self.sources.create_scrape_job(source.id, full_scrape=full_scrape, started_at=started_at)
        result = ScrapeResult(source=slug, job_id=job.id, started_at=started_at)
        options = ScrapeOptions(
            full_scrape=full_scrape,
            max_listings=max_listings,
            rate_limit=self.rate_limit,
            max_pages_ceiling=self.max_pages,
        )

        logger.info(Colors.bold(f"Starting scrape for {slug}") + Colors.gray(f" (job {job.id}, full={full_scrape})"))
        run_token = token.child(timeout=self.run_timeout)
        try:
            try:
                streams = scraper.scrape(run_token, options)
            except Exception as e:
                self._fail(result, f"failed to start scrape: {e}")
                raise FatalScrapeError(f"failed to start scrape for {slug}: {e}") from e

            try:
                await self._drain(run_token, source.id, streams, result)
            except asyncio.CancelledError:
                # Caller cancelled; stop the producer and still record the run
                run_token.cancel("interrupted")
                try:
                    await asyncio.shield(streams.wait_closed())
                finally:
                    self._fail(result, "run cancelled: interrupted")
                raise
            except Exception as e:
                run_token.cancel("store failure")
                await streams.wait_closed()
                self._fail(result, f"run aborted: {e}")
                raise

            if result.error_message is None and run_token.cancelled:
                result.error_message = f"run cancelled: {run_token.reason}"
            result.status = JobStatus.FAILED if result.error_message else JobStatus.COMPLETED
            self._finalize(result)
        finally:
            run_token.close()

        self.results[slug] = result
        self._log_result(result)
        return result

    async def run_all(self, token: CancelToken) -> Dict[str, ScrapeResult]:
        """
        Run every active source in turn.

        A failing source is logged and skipped. Only a failure to list the
        active sources is raised.
        """
        sources = self.sources.list_active()
        logger.info(f"Starting scrape for {len(sources)} active sources")

        results = {}
        for source in sources:
            if token.cancelled:
                logger.info(f"Stopping run_all: {token.reason}")
                break
            try:
                results[source.slug] = await self.run_source(token, source.slug)
            except Exception as e:
                logger.error(Colors.red(f"Scrape failed for {source.slug}: {e}"))
                self.sources.rollback()
                failed = ScrapeResult(
                    source=source.slug,
                    started_at=self.clock(),
                    completed_at=self.clock(),
                    status=JobStatus.FAILED,
                    error_message=str(e),
                )
                results[source.slug] = failed
                self.results[source.slug] = failed
        return results

    async def _drain(self, token: CancelToken, source_id: int, streams: ScrapeStreams, result: ScrapeResult):
        """Consume both streams concurrently until the producer closes them."""
        listings, errors = streams

        async def merge_listings():
            async for listing in listings:
                if token.cancelled:
                    # Keep draining so the producer is never stuck, but persist nothing
                    continue
                self._merge(source_id, listing, result)

        async def collect_errors():
            async for error in errors:
                result.record_error(error)
                if getattr(error, 'fatal', False):
                    logger.error(Colors.red(f"[{result.source}] fatal: {error}"))
                    if result.error_message is None:
                        result.error_message = str(error)
                else:
                    logger.warning(f"[{result.source}] {error}")

        tasks = [
            asyncio.ensure_future(merge_listings()),
            asyncio.ensure_future(collect_errors()),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            failed = [task for task in done if task.exception() is not None]
            if failed:
                token.cancel("store failure")
            await asyncio.gather(*tasks, return_exceptions=True)
            if failed:
                raise failed[0].exception()
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        await streams.wait_closed()

    def _merge(self, source_id: int, listing: ScrapedListing, result: ScrapeResult):
        result.found += 1
        listing.source_id = source_id
        existing_id = self.listings.find_id(source_id, listing.external_id)
        self.listings.upsert(listing, seen_at=self.clock())
        if existing_id is None:
            result.new += 1
        else:
            result.updated += 1

    def _finalize(self, result: ScrapeResult):
        result.completed_at = self.clock()
        self.sources.finalize_scrape_job(result.job_id, result)

    def _fail(self, result: ScrapeResult, message: str):
        """Record a failed run without letting a second store error hide the first."""
        result.status = JobStatus.FAILED
        result.error_message = result.error_message or message
        try:
            # The failure may have left the shared session mid-transaction
            self.sources.rollback()
            self._finalize(result)
        except Exception:
            logger.exception(f"Could not record failure of job {result.job_id}")
        self.results[result.source] = result

    def _log_result(self, result: ScrapeResult):
        summary = f"found={result.found} new={result.new} updated={result.updated} errors={result.errors}"
        if result.success:
            logger.info(Colors.green(f"✓ {result.source}: ") + summary + Colors.gray(f" ({result.duration_seconds:.1f}s)"))
        else:
            logger.warning(Colors.red(f"✗ {result.source}: {result.error_message}") + f" ({summary})")

    # ========== STALENESS ==========

    def sweep_stale(self, slug: Optional[str] = None) -> Dict[str, int]:
        """
        Deactivate listings not re-observed recently.

        Only sources whose latest finished run is a completed full scrape are
        swept, since only such a run proves a listing is gone. The cutoff is
        the earlier of that run's start and now minus the staleness window.

        Returns:
            Listings deactivated per swept source slug
        """
        if slug is not None:
            source = self.sources.get_by_slug(slug)
            if source is None:
                raise SourceNotFound(f"source not found: {slug}")
            sources = [source]
        else:
            sources = self.sources.list_active()

        now = self.clock()
        swept = {}
        for source in sources:
            job = self.sources.latest_finished_job(source.id)
            if job is None or job.status != JobStatus.COMPLETED.value or not job.full_scrape:
                logger.info(f"Skipping stale sweep for {source.slug}: no completed full run")
                continue
            cutoff = min(as_utc(job.started_at), now - self.stale_after)
            count = self.listings.mark_stale(source.id, cutoff)
            swept[source.slug] = count
            logger.info(f"Deactivated {count} stale listings for {source.slug} (cutoff {cutoff.isoformat()})")
        return swept

    # ========== REPORTING ==========

    def list_scrapers(self) -> List[Dict]:
        """
        List all configured sites and whether a scraper is registered.

        Returns:
            List of site info dictionaries
        """
        scrapers = []
        for slug, config in SITES.items():
            scrapers.append({
                'slug': slug,
                'name': config.name,
                'type': config.scraper_type.value,
                'enabled': config.enabled,
                'registered': slug in self._scrapers,
                'url': config.start_url,
            })
        return scrapers

    def get_results_summary(self) -> Dict:
        """
        Get summary of the runs this manager performed.

        Returns:
            Summary dictionary with totals
        """
        if not self.results:
            return {
                'total_sites': 0,
                'successful': 0,
                'failed': 0,
                'total_listings': 0,
                'new_listings': 0,
                'updated_listings': 0,
            }

        successful = sum(1 for r in self.results.values() if r.success)

        return {
            'total_sites': len(self.results),
            'successful': successful,
            'failed': len(self.results) - successful,
            'total_listings': sum(r.found for r in self.results.values()),
            'new_listings': sum(r.new for r in self.results.values()),
            'updated_listings': sum(r.updated for r in self.results.values()),
            'sites': {k: v.to_dict() for k, v in self.results.items()},
        }
