#!/usr/bin/env python3
"""
Command line entry point for the scraper system.

Usage:
    cd backend
    python -m scrapers.cli <command> [options]

Examples:
    python -m scrapers.cli list                         # List configured sites
    python -m scrapers.cli seed                         # Create missing sources
    python -m scrapers.cli run --source bizquest --limit 25
    python -m scrapers.cli run                          # Scrape all active sources
    python -m scrapers.cli sweep                        # Deactivate stale listings
    python -m scrapers.cli stats
    python -m scrapers.cli worker                       # Run the job scheduler
    python -m scrapers.cli queue --source bizquest      # Enqueue one job and see it through
"""

import asyncio
import argparse
import json
import logging
import signal

from api.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format=settings.log_format,
)

from api.database import SessionLocal, init_db
from api.repository import ListingRepository, SourceRepository
from api.services import (
    build_browser_pool, build_scrapers, build_services, manager_options, seed_sources, source_exists,
)
from scrapers.base import Colors
from scrapers.config import get_site_summary
from scrapers.jobs import ScrapeAllJob, ScrapeSourceJob
from scrapers.manager import ScraperManager
from scrapers.streams import CancelToken

logger = logging.getLogger(__name__)


def install_signal_handlers(token: CancelToken):
    """Cancel ``token`` on SIGINT/SIGTERM so runs stop cleanly."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass


def list_scrapers():
    """List all configured sites."""
    print(f"\n{'='*60}")
    print("Configured Sites")
    print(f"{'='*60}\n")

    for site in get_site_summary():
        status = "✅" if site['enabled'] else "⏸"
        print(f"{status} {site['slug']:15} - {site['name']}")
        print(f"                  Type: {site['type']}")
        print(f"                  URL:  {site['url']}")
        print()


def seed():
    init_db()
    created = seed_sources()
    print(f"Seeded {created} new sources")


async def run(source: str = None, limit: int = 0, incremental: bool = False):
    """Scrape one source, or every active source."""
    init_db()
    seed_sources()

    token = CancelToken()
    install_signal_handlers(token)

    pool = build_browser_pool()
    db = SessionLocal()
    try:
        manager = ScraperManager.from_session(db, build_scrapers(pool), **manager_options())
        if source:
            result = await manager.run_source(token, source, max_listings=limit, full_scrape=not incremental)
            print(json.dumps(result.to_dict(), indent=2, default=str))
        else:
            await manager.run_all(token)
        summary = manager.get_results_summary()
    finally:
        db.close()
        await pool.close()

    print(f"\n{'='*60}")
    print(Colors.bold("Scrape summary"))
    print(f"{'='*60}")
    print(f"  Sites:    {summary['total_sites']} ({Colors.green(summary['successful'])} ok, "
          f"{Colors.red(summary['failed'])} failed)")
    print(f"  Found:    {summary['total_listings']}")
    print(f"  New:      {summary['new_listings']}")
    print(f"  Updated:  {summary['updated_listings']}")


def sweep(source: str = None):
    init_db()
    db = SessionLocal()
    try:
        manager = ScraperManager.from_session(db, **manager_options())
        swept = manager.sweep_stale(source)
    finally:
        db.close()
    for slug, count in swept.items():
        print(f"  {slug:15} {count} listings deactivated")
    if not swept:
        print("No source had a completed full run to sweep against")


def stats():
    init_db()
    db = SessionLocal()
    try:
        listings = ListingRepository(db)
        for source in SourceRepository(db).list_all():
            flag = Colors.green("active") if source.active else Colors.gray("inactive")
            print(f"  {source.slug:15} {flag:>20}  total={listings.count(source.id)} "
                  f"active={listings.count(source.id, active_only=True)} "
                  f"last_scraped={source.last_scraped or '-'}")
        print(f"\n  Total: {listings.count()} listings, {listings.count(active_only=True)} active")
    finally:
        db.close()


async def worker():
    """Run the periodic jobs until interrupted."""
    init_db()
    seed_sources()

    services = build_services()
    stop = CancelToken()
    install_signal_handlers(stop)

    services.scheduler.start()
    services.scheduler.schedule_periodic(
        scrape_all_hours=settings.scrape_all_interval_hours,
        stale_sweep_hours=settings.stale_sweep_interval_hours,
    )
    logger.info("Worker running, press Ctrl+C to stop")
    try:
        await stop.wait()
    finally:
        await services.aclose()


async def queue(source: str = None, limit: int = 0) -> bool:
    """
    Enqueue one scrape job and deliver it, retries included.

    Unlike ``worker`` no periodic jobs are registered; the command exits
    once the job has completed or given up.
    """
    init_db()
    seed_sources()

    if source and not source_exists(source):
        print(Colors.red(f"Unknown source: {source}"))
        return False

    services = build_services()
    stop = CancelToken()
    install_signal_handlers(stop)

    services.scheduler.start()
    try:
        job = ScrapeSourceJob(source, max_listings=limit) if source else ScrapeAllJob()
        job_id = services.scheduler.enqueue(job)
        print(f"Queued {job_id}")
        finished = await services.scheduler.wait_idle(stop)
    finally:
        await services.aclose()

    if not finished:
        print(Colors.yellow(f"Stopped before {job_id} finished"))
    return finished


def main():
    parser = argparse.ArgumentParser(description='Business listing scrapers')
    commands = parser.add_subparsers(dest='command')

    run_parser = commands.add_parser('run', help='Scrape one source or all active sources')
    run_parser.add_argument('--source', type=str, help='Source slug (e.g., bizquest)')
    run_parser.add_argument('--limit', type=int, default=0, help='Stop after N listings (0 = no cap)')
    run_parser.add_argument('--incremental', action='store_true', help='Mark the run as not a full scrape')

    commands.add_parser('list', help='List configured sites')
    commands.add_parser('seed', help='Create missing sources in the database')
    commands.add_parser('stats', help='Show listing counts per source')

    sweep_parser = commands.add_parser('sweep', help='Deactivate listings not seen recently')
    sweep_parser.add_argument('--source', type=str, help='Only sweep this source')

    commands.add_parser('worker', help='Run the job scheduler')

    queue_parser = commands.add_parser('queue', help='Enqueue a scrape job and wait for it')
    queue_parser.add_argument('--source', type=str, help='Source slug (omit for all active sources)')
    queue_parser.add_argument('--limit', type=int, default=0, help='Stop after N listings (0 = no cap)')

    args = parser.parse_args()

    if args.command == 'run':
        asyncio.run(run(args.source, args.limit, args.incremental))
    elif args.command == 'list':
        list_scrapers()
    elif args.command == 'seed':
        seed()
    elif args.command == 'stats':
        stats()
    elif args.command == 'sweep':
        sweep(args.source)
    elif args.command == 'worker':
        asyncio.run(worker())
    elif args.command == 'queue':
        if not asyncio.run(queue(args.source, args.limit)):
            raise SystemExit(1)
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
