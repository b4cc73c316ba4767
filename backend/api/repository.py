"""
Persistence for sources, listings and scrape jobs.

Listing merges are a single ``INSERT ... ON CONFLICT (source_id,
external_id) DO UPDATE`` statement, so concurrent runs converge on one row
per source listing without read-modify-write races.
"""

from datetime import datetime
from typing import Iterable, List, Optional
import logging

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from api.database import Listing, ScrapeJob, Source, utc_now
from scrapers.base import JobStatus, ScrapedListing, ScrapeResult, SiteConfig, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

# Columns rewritten on every observation of an existing listing
LISTING_MUTABLE_COLUMNS = (
    'url', 'title', 'description', 'reason_for_sale',
    'asking_price', 'revenue', 'cash_flow', 'ebitda',
    'inventory_value', 'real_estate_value', 'monthly_rent',
    'city', 'state', 'zip_code', 'country', 'lat', 'lng',
    'industry', 'industry_category', 'business_type',
    'is_franchise', 'franchise_name', 'real_estate_included',
    'year_established', 'employees', 'lease_expiration', 'raw_data',
)

_INSERTS = {
    'postgresql': pg_insert,
    'sqlite': sqlite_insert,
}


class ListingRepository:
    """Upsert-by-key and read-by-key access to listings."""

    def __init__(self, db: Session):
        self.db = db

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _INSERTS[dialect]
        except KeyError:
            raise NotImplementedError(f"listing upsert is not supported on {dialect}") from None

    def find_id(self, source_id: int, external_id: str) -> Optional[int]:
        """Synthetic id of a stored listing, or None if never persisted."""
        return self.db.execute(
            select(Listing.id).where(
                Listing.source_id == source_id,
                Listing.external_id == external_id,
            )
        ).scalar_one_or_none()

    def get(self, source_id: int, external_id: str) -> Optional[Listing]:
        return self.db.execute(
            select(Listing).where(
                Listing.source_id == source_id,
                Listing.external_id == external_id,
            )
        ).scalar_one_or_none()

    def upsert(self, listing: ScrapedListing, seen_at: Optional[datetime] = None):
        """
        Insert a listing or overwrite the stored one for the same key.

        On insert ``first_seen_at`` is set to ``seen_at``. On conflict every
        descriptive field is replaced, ``last_seen_at`` advances and the row
        is reactivated; ``id`` and ``first_seen_at`` are left alone.
        """
        if listing.source_id is None:
            raise ValueError("listing.source_id must be set before upsert")

        seen_at = seen_at or utc_now()
        values = listing.to_record()
        values.update(
            first_seen_at=seen_at,
            last_seen_at=seen_at,
            is_active=True,
            created_at=seen_at,
            updated_at=seen_at,
        )

        stmt = self._insert()(Listing).values(**values)
        changes = {column: stmt.excluded[column] for column in LISTING_MUTABLE_COLUMNS}
        changes.update(
            last_seen_at=stmt.excluded.last_seen_at,
            updated_at=stmt.excluded.updated_at,
            is_active=True,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['source_id', 'external_id'],
            set_=changes,
        )
        try:
            self.db.execute(stmt)
            self.db.commit()
        except Exception:
            # A failed statement aborts the transaction on PostgreSQL
            self.db.rollback()
            raise

    def mark_stale(self, source_id: int, cutoff: datetime) -> int:
        """Deactivate a source's active listings last seen before ``cutoff``."""
        try:
            result = self.db.execute(
                update(Listing)
                .where(
                    Listing.source_id == source_id,
                    Listing.is_active.is_(True),
                    Listing.last_seen_at < cutoff,
                )
                .values(is_active=False, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result.rowcount

    def count(self, source_id: Optional[int] = None, active_only: bool = False) -> int:
        query = select(func.count(Listing.id))
        if source_id is not None:
            query = query.where(Listing.source_id == source_id)
        if active_only:
            query = query.where(Listing.is_active.is_(True))
        return self.db.execute(query).scalar_one()


class SourceRepository:
    """Sources and their scrape job records."""

    def __init__(self, db: Session):
        self.db = db

    def rollback(self):
        """Discard whatever a failed statement left in the session."""
        self.db.rollback()

    def get_by_slug(self, slug: str) -> Optional[Source]:
        return self.db.execute(select(Source).where(Source.slug == slug)).scalar_one_or_none()

    def list_all(self) -> List[Source]:
        return list(self.db.execute(select(Source).order_by(Source.name)).scalars())

    def list_active(self) -> List[Source]:
        return list(self.db.execute(
            select(Source).where(Source.active.is_(True)).order_by(Source.name)
        ).scalars())

    def ensure_sources(self, configs: Iterable[SiteConfig]) -> List[Source]:
        """Create a Source for every config whose slug is not stored yet."""
        created = []
        for config in configs:
            if self.get_by_slug(config.slug) is not None:
                continue
            source = Source(
                name=config.name,
                slug=config.slug,
                base_url=config.base_url,
                scraper_type=config.scraper_type.value,
                active=config.enabled,
                config={'start_url': config.start_url},
            )
            self.db.add(source)
            created.append(source)
        self.db.commit()
        for source in created:
            logger.info(f"Seeded source {source.slug}")
        return created

    def set_active(self, slug: str, active: bool) -> Optional[Source]:
        source = self.get_by_slug(slug)
        if source is None:
            return None
        source.active = active
        self.db.commit()
        return source

    # ========== SCRAPE JOBS ==========

    def create_scrape_job(self, source_id: int, full_scrape: bool = True,
                          started_at: Optional[datetime] = None) -> ScrapeJob:
        """Record the start of a run."""
        started_at = started_at or utc_now()
        job = ScrapeJob(
            source_id=source_id,
            status=JobStatus.RUNNING.value,
            full_scrape=full_scrape,
            created_at=started_at,
            started_at=started_at,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def finalize_scrape_job(self, job_id: int, result: ScrapeResult) -> bool:
        """
        Move a job to its terminal state.

        Terminal jobs are never rewritten; a second finalize leaves the first
        outcome in place.

        Returns:
            True if the job was updated, False if it was already terminal
        """
        completed_at = result.completed_at or utc_now()
        try:
            updated = self.db.execute(
                update(ScrapeJob)
                .where(ScrapeJob.id == job_id, ScrapeJob.status.not_in(TERMINAL_STATUSES))
                .values(
                    status=result.status.value,
                    listings_found=result.found,
                    listings_new=result.new,
                    listings_updated=result.updated,
                    errors=result.errors,
                    error_message=result.error_message,
                    completed_at=completed_at,
                )
                .execution_options(synchronize_session=False)
            ).rowcount

            if updated:
                self.db.execute(
                    update(Source)
                    .where(Source.id == select(ScrapeJob.source_id).where(ScrapeJob.id == job_id).scalar_subquery())
                    .values(last_scraped=completed_at)
                    .execution_options(synchronize_session=False)
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not updated:
            logger.warning(f"Scrape job {job_id} is already finished, keeping its recorded outcome")
        return bool(updated)

    def latest_finished_job(self, source_id: int) -> Optional[ScrapeJob]:
        """Most recent completed or failed job for a source."""
        return self.db.execute(
            select(ScrapeJob)
            .where(ScrapeJob.source_id == source_id, ScrapeJob.status.in_(TERMINAL_STATUSES))
            .order_by(ScrapeJob.completed_at.desc(), ScrapeJob.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def recent_scrape_jobs(self, limit: int = 20) -> List[ScrapeJob]:
        return list(self.db.execute(
            select(ScrapeJob).order_by(ScrapeJob.id.desc()).limit(limit)
        ).scalars())
