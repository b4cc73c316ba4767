"""
Scrape jobs and the in-process scheduler that runs them.

Jobs are small immutable records naming what to run. JobWorker turns a job
into manager calls; JobScheduler delivers jobs through APScheduler, either
once right away or on a fixed interval, retrying failures a bounded number
of times.
"""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, ClassVar, ContextManager, Optional, Set, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .base import Colors
from .manager import ScraperManager
from .streams import CancelToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScrapeSourceJob:
    """Scrape one source."""
    source_slug: str
    max_listings: int = 0
    full_scrape: bool = True

    kind: ClassVar[str] = 'scrape'


@dataclass(frozen=True)
class ScrapeAllJob:
    """Scrape every active source."""

    kind: ClassVar[str] = 'scrape_all'


@dataclass(frozen=True)
class StaleSweepJob:
    """Deactivate stale listings for one source, or all when slug is None."""
    source_slug: Optional[str] = None

    kind: ClassVar[str] = 'stale_sweep'


Job = Union[ScrapeSourceJob, ScrapeAllJob, StaleSweepJob]

ManagerFactory = Callable[[], ContextManager[ScraperManager]]


class JobWorker:
    """Executes jobs against a manager built per job."""

    def __init__(self, manager_factory: ManagerFactory, token: Optional[CancelToken] = None):
        """
        Args:
            manager_factory: Context manager yielding a ScraperManager bound
                to a fresh database session
            token: Worker-wide cancel token, cancelled on shutdown
        """
        self.manager_factory = manager_factory
        self.token = token or CancelToken()

    async def work(self, job: Job):
        logger.info(f"Working job {job.kind}: {job}")
        with self.manager_factory() as manager:
            if isinstance(job, ScrapeSourceJob):
                return await manager.run_source(
                    self.token, job.source_slug,
                    max_listings=job.max_listings,
                    full_scrape=job.full_scrape,
                )
            if isinstance(job, ScrapeAllJob):
                return await manager.run_all(self.token)
            if isinstance(job, StaleSweepJob):
                return manager.sweep_stale(job.source_slug)
        raise ValueError(f"unknown job: {job!r}")


def session_manager_factory(session_factory, scrapers, **options) -> ManagerFactory:
    """Build managers on sessions from ``session_factory`` (e.g. SessionLocal)."""

    @contextmanager
    def factory():
        db = session_factory()
        try:
            yield ScraperManager.from_session(db, scrapers, **options)
        finally:
            db.close()

    return factory


class JobScheduler:
    """
    At-least-once job delivery on top of APScheduler.

    A job that raises is re-enqueued with a growing delay until
    ``max_attempts`` is reached. Lookup failures (unknown source or scraper)
    are not retried.
    """

    SCRAPE_ALL_JOB_ID = 'scrape_all_periodic'
    STALE_SWEEP_JOB_ID = 'stale_sweep_periodic'

    def __init__(
        self,
        worker: JobWorker,
        scheduler: Optional[AsyncIOScheduler] = None,
        max_attempts: int = 3,
        retry_delay_seconds: float = 60,
    ):
        self.worker = worker
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        # Enqueued one-shot jobs not yet finished, retries included
        self._pending: Set[str] = set()

    def start(self):
        self.scheduler.start()
        logger.info("Job scheduler started")

    def shutdown(self):
        self.worker.token.cancel("scheduler shutting down")
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Job scheduler stopped")

    def enqueue(self, job: Job, attempt: int = 1, delay_seconds: float = 0) -> str:
        """
        Schedule a one-shot run of ``job``.

        Returns:
            Scheduler job id
        """
        job_id = f"{job.kind}:{uuid.uuid4().hex[:12]}"
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self._pending.add(job_id)
        self.scheduler.add_job(
            self._execute,
            DateTrigger(run_date=run_at),
            args=[job, attempt],
            kwargs={'job_id': job_id},
            id=job_id,
            name=f"{job.kind} (attempt {attempt})",
            misfire_grace_time=None,
        )
        logger.info(f"Enqueued {job_id} (attempt {attempt}/{self.max_attempts})")
        return job_id

    def schedule_periodic(self, scrape_all_hours: int = 24, stale_sweep_hours: Optional[int] = 24):
        """Register the recurring full scrape and staleness sweep."""
        self.scheduler.add_job(
            self._execute,
            IntervalTrigger(hours=scrape_all_hours),
            args=[ScrapeAllJob(), 1],
            id=self.SCRAPE_ALL_JOB_ID,
            name="Scrape all active sources",
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,
            misfire_grace_time=600,
            replace_existing=True,
        )
        if stale_sweep_hours:
            self.scheduler.add_job(
                self._execute,
                IntervalTrigger(hours=stale_sweep_hours),
                args=[StaleSweepJob(), 1],
                id=self.STALE_SWEEP_JOB_ID,
                name="Deactivate stale listings",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=600,
                replace_existing=True,
            )
        logger.info(f"Periodic jobs scheduled: scrape_all every {scrape_all_hours}h, "
                    f"stale_sweep every {stale_sweep_hours or 'never'}h")

    @property
    def pending(self) -> int:
        """Enqueued jobs that have not finished, counting scheduled retries."""
        return len(self._pending)

    async def wait_idle(self, token: CancelToken, poll_seconds: float = 0.5) -> bool:
        """
        Wait until every enqueued job has finished or given up.

        Returns:
            False if ``token`` was cancelled first
        """
        while self._pending:
            if not await token.sleep(poll_seconds):
                return False
        return True

    async def _execute(self, job: Job, attempt: int, job_id: Optional[str] = None):
        try:
            await self.worker.work(job)
        except LookupError as e:
            logger.error(Colors.red(f"Job {job.kind} cannot run: {e}"))
        except Exception as e:
            if attempt >= self.max_attempts:
                logger.error(Colors.red(f"Job {job.kind} failed after {attempt} attempts: {e}"))
                return
            delay = self.retry_delay_seconds * attempt
            logger.warning(f"Job {job.kind} failed (attempt {attempt}/{self.max_attempts}), retrying in {delay}s: {e}")
            self.enqueue(job, attempt + 1, delay_seconds=delay)
        finally:
            self._pending.discard(job_id)
