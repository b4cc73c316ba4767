"""
Tests for scrape jobs, the job scheduler and on-demand refresh triggers.
"""

import asyncio
from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from api.database import ScrapeJob
from scrapers.base import ScraperNotRegistered, SourceNotFound
from scrapers.jobs import (
    JobScheduler,
    JobWorker,
    ScrapeAllJob,
    ScrapeSourceJob,
    StaleSweepJob,
    session_manager_factory,
)
from scrapers.streams import CancelToken
from scrapers.triggers import RefreshTrigger, SlidingWindowLimiter, TriggerRateLimited


class RecordingManager:
    """Records the calls a job turns into."""

    def __init__(self, failures=None):
        self.calls = []
        self.failures = list(failures or [])

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    async def run_source(self, token, slug, max_listings=0, full_scrape=True):
        self.calls.append(('run_source', slug, max_listings, full_scrape))
        self._maybe_fail()
        return 'source-result'

    async def run_all(self, token):
        self.calls.append(('run_all',))
        self._maybe_fail()
        return 'all-result'

    def sweep_stale(self, slug=None):
        self.calls.append(('sweep_stale', slug))
        return {}


def factory_for(manager):
    @contextmanager
    def factory():
        yield manager
    return factory


class FakeAPScheduler:
    """Collects add_job calls instead of running them."""

    def __init__(self):
        self.jobs = []
        self.running = False

    def add_job(self, func, trigger, **kwargs):
        self.jobs.append({'func': func, 'trigger': trigger, **kwargs})

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False


class TestJobWorker:
    """Test job dispatch."""

    @pytest.mark.asyncio
    async def test_dispatch(self):
        manager = RecordingManager()
        worker = JobWorker(factory_for(manager))

        assert await worker.work(ScrapeSourceJob("alpha", max_listings=5, full_scrape=False)) == 'source-result'
        assert await worker.work(ScrapeAllJob()) == 'all-result'
        assert await worker.work(StaleSweepJob("alpha")) == {}

        assert manager.calls == [
            ('run_source', 'alpha', 5, False),
            ('run_all',),
            ('sweep_stale', 'alpha'),
        ]

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        worker = JobWorker(factory_for(RecordingManager()))
        with pytest.raises(ValueError):
            await worker.work("not a job")

    @pytest.mark.asyncio
    async def test_session_factory_builds_real_manager(self, db_session, sample_source, fake_scraper,
                                                       listing_factory):
        scrapers = {"alpha": fake_scraper("alpha", [listing_factory("A")])}
        factory = session_manager_factory(lambda: db_session, scrapers, rate_limit=0)
        worker = JobWorker(factory)

        result = await worker.work(ScrapeSourceJob("alpha"))

        assert result.success
        assert db_session.query(ScrapeJob).count() == 1


class TestJobScheduler:
    """Test enqueueing, periodic registration and retries."""

    def make(self, manager, **options):
        fake = FakeAPScheduler()
        return JobScheduler(JobWorker(factory_for(manager)), scheduler=fake, **options), fake

    def test_enqueue(self):
        scheduler, fake = self.make(RecordingManager())

        job_id = scheduler.enqueue(ScrapeSourceJob("alpha"))

        assert job_id.startswith("scrape:")
        added = fake.jobs[0]
        assert isinstance(added['trigger'], DateTrigger)
        assert added['args'] == [ScrapeSourceJob("alpha"), 1]
        assert added['kwargs'] == {'job_id': job_id}
        assert added['id'] == job_id
        assert scheduler.pending == 1
        assert added['misfire_grace_time'] is None

    def test_schedule_periodic(self):
        scheduler, fake = self.make(RecordingManager())

        scheduler.schedule_periodic(scrape_all_hours=24, stale_sweep_hours=24)

        by_id = {job['id']: job for job in fake.jobs}
        scrape_all = by_id[JobScheduler.SCRAPE_ALL_JOB_ID]
        assert isinstance(scrape_all['trigger'], IntervalTrigger)
        assert scrape_all['trigger'].interval.total_seconds() == 24 * 3600
        assert scrape_all['args'][0] == ScrapeAllJob()
        assert scrape_all['max_instances'] == 1
        assert scrape_all['coalesce'] is True
        assert scrape_all['replace_existing'] is True
        assert by_id[JobScheduler.STALE_SWEEP_JOB_ID]['args'][0] == StaleSweepJob()

    def test_schedule_periodic_without_sweep(self):
        scheduler, fake = self.make(RecordingManager())
        scheduler.schedule_periodic(stale_sweep_hours=None)
        assert [job['id'] for job in fake.jobs] == [JobScheduler.SCRAPE_ALL_JOB_ID]

    @pytest.mark.asyncio
    async def test_failure_is_retried_with_delay(self):
        manager = RecordingManager(failures=[RuntimeError("timeout")])
        scheduler, fake = self.make(manager, max_attempts=3, retry_delay_seconds=60)

        await scheduler._execute(ScrapeAllJob(), 1)

        assert len(fake.jobs) == 1
        assert fake.jobs[0]['args'] == [ScrapeAllJob(), 2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        manager = RecordingManager(failures=[RuntimeError("timeout")])
        scheduler, fake = self.make(manager, max_attempts=3)

        await scheduler._execute(ScrapeAllJob(), 3)

        assert fake.jobs == []

    @pytest.mark.asyncio
    async def test_lookup_failures_are_not_retried(self):
        manager = RecordingManager(failures=[ScraperNotRegistered("no scraper registered for: ghost")])
        scheduler, fake = self.make(manager)

        await scheduler._execute(ScrapeSourceJob("ghost"), 1)

        assert fake.jobs == []

    @pytest.mark.asyncio
    async def test_pending_counts_retries_until_done(self):
        manager = RecordingManager(failures=[RuntimeError("timeout")])
        scheduler, fake = self.make(manager, max_attempts=3)
        first_id = scheduler.enqueue(ScrapeAllJob())

        await scheduler._execute(ScrapeAllJob(), 1, job_id=first_id)

        assert scheduler.pending == 1
        retry = fake.jobs[-1]
        await scheduler._execute(*retry['args'], **retry['kwargs'])
        assert scheduler.pending == 0
        assert await scheduler.wait_idle(CancelToken())

    @pytest.mark.asyncio
    async def test_wait_idle_stops_on_cancel(self):
        scheduler, _ = self.make(RecordingManager())
        scheduler.enqueue(ScrapeAllJob())
        token = CancelToken()
        token.cancel("interrupted")

        assert await scheduler.wait_idle(token, poll_seconds=0.01) is False

    def test_shutdown_cancels_running_work(self):
        scheduler, fake = self.make(RecordingManager())
        scheduler.start()

        scheduler.shutdown()

        assert not fake.running
        assert scheduler.worker.token.cancelled


class TestSlidingWindowLimiter:
    """Test the per-caller rate limiter."""

    def test_one_per_window(self):
        now = [1000.0]
        limiter = SlidingWindowLimiter(limit=1, window=3600, clock=lambda: now[0])

        assert limiter.hit("10.0.0.1") == 0
        now[0] += 600
        assert limiter.hit("10.0.0.1") == pytest.approx(3000)
        assert limiter.hit("10.0.0.2") == 0

        now[0] += 3000
        assert limiter.hit("10.0.0.1") == 0

    def test_reset(self):
        limiter = SlidingWindowLimiter(limit=1, window=3600)
        limiter.hit("a")
        limiter.reset("a")
        assert limiter.hit("a") == 0

    def test_expired_callers_are_forgotten(self):
        now = [1000.0]
        limiter = SlidingWindowLimiter(limit=1, window=3600, clock=lambda: now[0])

        for i in range(50):
            limiter.hit(f"10.0.0.{i}")
        assert len(limiter) == 50

        now[0] += 3600
        assert limiter.hit("10.0.1.1") == 0
        assert len(limiter) == 1


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, job):
        self.jobs.append(job)
        return f"{job.kind}:{len(self.jobs)}"


class TestRefreshTrigger:
    """Test on-demand refresh requests."""

    def test_single_source_refresh_is_incremental(self):
        queue = RecordingQueue()
        trigger = RefreshTrigger(queue, source_exists=lambda slug: True)

        receipt = trigger.request("10.0.0.1", "alpha")

        assert queue.jobs == [ScrapeSourceJob("alpha", full_scrape=False)]
        assert receipt.kind == "scrape"
        assert receipt.source == "alpha"

    def test_refresh_all(self):
        queue = RecordingQueue()
        receipt = RefreshTrigger(queue).request("10.0.0.1")

        assert queue.jobs == [ScrapeAllJob()]
        assert receipt.kind == "scrape_all"

    def test_second_request_is_rate_limited(self):
        queue = RecordingQueue()
        trigger = RefreshTrigger(queue)
        trigger.request("10.0.0.1")

        with pytest.raises(TriggerRateLimited) as exc_info:
            trigger.request("10.0.0.1", None)

        assert exc_info.value.retry_after > 0
        assert len(queue.jobs) == 1

    def test_unknown_source_does_not_spend_budget(self):
        queue = RecordingQueue()
        trigger = RefreshTrigger(queue, source_exists=lambda slug: slug == "alpha")

        with pytest.raises(SourceNotFound):
            trigger.request("10.0.0.1", "ghost")

        trigger.request("10.0.0.1", "alpha")
        assert len(queue.jobs) == 1


class ImmediateAPScheduler(FakeAPScheduler):
    """Runs each added job on the event loop right away."""

    def add_job(self, func, trigger, **kwargs):
        super().add_job(func, trigger, **kwargs)
        asyncio.ensure_future(func(*kwargs.get('args', []), **kwargs.get('kwargs', {})))


class TestQueueCommand:
    """Test the CLI command that enqueues a single job."""

    @pytest.fixture
    def queue_services(self, monkeypatch):
        from scrapers import cli

        manager = RecordingManager(failures=[RuntimeError("timeout")])
        scheduler = JobScheduler(JobWorker(factory_for(manager)), scheduler=ImmediateAPScheduler(),
                                 retry_delay_seconds=0)
        closed = []

        async def aclose():
            closed.append(True)

        services = SimpleNamespace(scheduler=scheduler, aclose=aclose)
        monkeypatch.setattr(cli, 'init_db', lambda: None)
        monkeypatch.setattr(cli, 'seed_sources', lambda: 0)
        monkeypatch.setattr(cli, 'install_signal_handlers', lambda token: None)
        monkeypatch.setattr(cli, 'source_exists', lambda slug: slug == "alpha")
        monkeypatch.setattr(cli, 'build_services', lambda: services)
        return cli, manager, closed

    @pytest.mark.asyncio
    async def test_enqueues_and_waits_through_retry(self, queue_services):
        cli, manager, closed = queue_services

        assert await cli.queue("alpha", 5) is True

        assert manager.calls == [('run_source', 'alpha', 5, True)] * 2
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_all_sources_when_no_slug(self, queue_services):
        cli, manager, _ = queue_services

        assert await cli.queue() is True

        assert manager.calls == [('run_all',)] * 2

    @pytest.mark.asyncio
    async def test_unknown_source_is_not_enqueued(self, queue_services):
        cli, manager, closed = queue_services

        assert await cli.queue("ghost") is False

        assert manager.calls == []
        assert closed == []
