from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.orm import Session
from typing import Dict, List, Optional
from datetime import datetime
import logging
import asyncio
import re

from api.database import get_db, init_db, Source, engine
from api.config import settings
from api.repository import ListingRepository, SourceRepository
from api.services import Services, build_services, seed_sources
from scrapers.base import Scraper, SourceNotFound
from scrapers.manager import ScraperManager
from scrapers.triggers import RefreshTrigger, TriggerRateLimited
from pydantic import BaseModel

# Setup logging directory
settings.log_dir.mkdir(exist_ok=True)


# Custom formatter to strip ANSI color codes from file logs
class ColorStripFormatter(logging.Formatter):
    """Formatter that strips ANSI color codes from log messages."""
    ansi_escape = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')

    def format(self, record):
        message = super().format(record)
        return self.ansi_escape.sub('', message)


# Setup logging with color support for console, stripped for file
file_handler = logging.FileHandler(settings.log_file, encoding='utf-8')
file_handler.setFormatter(ColorStripFormatter(settings.log_format))

console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter(settings.log_format))

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[file_handler, console_handler],
    force=True  # Override any existing configuration
)

# Per-source loggers (scraper.<slug>) get their own handlers and do not propagate,
# so each message appears once
scraper_logger = logging.getLogger('scraper')
scraper_logger.propagate = False
# Only add handlers if not already present (prevents duplicates on module reload)
if not scraper_logger.handlers:
    scraper_file_handler = logging.FileHandler(settings.log_file, encoding='utf-8')
    scraper_file_handler.setFormatter(ColorStripFormatter(settings.log_format))
    scraper_logger.addHandler(scraper_file_handler)

    scraper_console_handler = logging.StreamHandler()
    scraper_console_handler.setFormatter(logging.Formatter(settings.log_format))
    scraper_logger.addHandler(scraper_console_handler)
scraper_logger.setLevel(getattr(logging, settings.log_level.upper()))

logger = logging.getLogger(__name__)


# Filter to suppress noisy polling endpoint access logs
class PollingEndpointFilter(logging.Filter):
    # Endpoints that poll frequently and clutter logs
    SUPPRESSED_ENDPOINTS = ['/health', '/api/scrape-jobs']

    def filter(self, record):
        msg = record.getMessage()
        for endpoint in self.SUPPRESSED_ENDPOINTS:
            if endpoint in msg:
                return False
        return True


# Apply filter to uvicorn access logger at module load time
uvicorn_access_logger = logging.getLogger("uvicorn.access")
uvicorn_access_logger.addFilter(PollingEndpointFilter())


# Scraping services, created by the lifespan
_services: Optional[Services] = None


async def cleanup_resources():
    """Clean up all resources on shutdown."""
    logger.info("Cleaning up resources...")

    if _services is not None:
        await _services.aclose()
        logger.info("Scheduler and browser pool stopped")

    logger.info("Closing database connections...")
    # Run dispose in executor since it's synchronous
    await asyncio.get_running_loop().run_in_executor(None, lambda: engine.dispose(close=True))
    logger.info("Resource cleanup complete")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    global _services

    # Startup
    logger.info("=" * 60)
    logger.info("Business Listings Backend Starting Up")
    logger.info("=" * 60)
    logger.info(f"Log file: {settings.log_file}")
    logger.info(f"Database: {settings.database_url}")
    logger.info(f"CORS origins: {settings.cors_origins}")
    init_db()
    seeded = seed_sources()
    logger.info(f"Database initialized successfully ({seeded} sources seeded)")

    _services = build_services()
    if settings.scheduler_enabled:
        _services.scheduler.start()
        _services.scheduler.schedule_periodic(
            scrape_all_hours=settings.scrape_all_interval_hours,
            stale_sweep_hours=settings.stale_sweep_interval_hours,
        )
    logger.info("Backend ready to accept requests")

    yield  # Application runs here

    # Shutdown
    logger.info("=" * 60)
    logger.info("Business Listings Backend Shutting Down")
    logger.info("=" * 60)

    try:
        await asyncio.wait_for(cleanup_resources(), timeout=10.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown cleanup timed out, forcing exit")
    _services = None

    logger.info("Shutdown complete")


app = FastAPI(
    title="Business Listings API",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
# Note: allow_credentials must be False when allow_origins is ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    """Return empty response for favicon requests"""
    return Response(status_code=204)


# Dependencies

def get_refresh_trigger() -> RefreshTrigger:
    if _services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job scheduler is not running")
    return _services.trigger


def get_scrapers() -> Dict[str, Scraper]:
    return _services.scrapers if _services is not None else {}


# Pydantic models for API responses
class SourceResponse(BaseModel):
    id: int
    name: str
    slug: str
    base_url: str
    scraper_type: str
    active: bool
    last_scraped: Optional[datetime]

    class Config:
        from_attributes = True


class ScrapeJobResponse(BaseModel):
    id: int
    source_id: int
    status: str
    full_scrape: bool
    listings_found: int
    listings_new: int
    listings_updated: int
    errors: int
    error_message: Optional[str]
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class RefreshResponse(BaseModel):
    job_id: str
    kind: str
    source: Optional[str] = None
    message: str


# API Endpoints

@app.get("/")
async def root():
    return {"message": "Business Listings API", "version": "1.0.0"}


@app.get("/health")
async def health(db: Session = Depends(get_db)):
    """Liveness plus a database round trip"""
    db.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "database": "ok",
        "scheduler": "running" if _services is not None and _services.scheduler.scheduler.running else "stopped",
    }


@app.get("/api/sources", response_model=List[SourceResponse])
async def get_sources(db: Session = Depends(get_db)):
    """Get all configured sources"""
    return SourceRepository(db).list_all()


@app.get("/api/scrapers")
async def list_scrapers(db: Session = Depends(get_db), scrapers: Dict[str, Scraper] = Depends(get_scrapers)):
    """List all configured sites and whether a scraper is registered for each"""
    manager = ScraperManager.from_session(db, scrapers)
    return {
        "scrapers": manager.list_scrapers(),
        "registered": sorted(scrapers),
    }


@app.post("/api/refresh", response_model=RefreshResponse, status_code=status.HTTP_202_ACCEPTED)
async def refresh(
    request: Request,
    source: Optional[str] = Query(None, description="Source slug; omit to refresh every source"),
    trigger: RefreshTrigger = Depends(get_refresh_trigger),
):
    """Queue an on-demand refresh. Each caller may trigger one refresh per window."""
    caller = request.client.host if request.client else "unknown"
    try:
        receipt = trigger.request(caller, source)
    except SourceNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except TriggerRateLimited as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
            headers={"Retry-After": str(int(e.retry_after) + 1)},
        )

    target = source or "all sources"
    return RefreshResponse(
        job_id=receipt.job_id,
        kind=receipt.kind,
        source=receipt.source,
        message=f"Refresh of {target} queued",
    )


@app.get("/api/scrape-jobs", response_model=List[ScrapeJobResponse])
async def get_scrape_jobs(
    limit: int = Query(20, ge=1, le=200, description="Number of most recent jobs"),
    db: Session = Depends(get_db),
):
    """Most recent scrape jobs, newest first"""
    return SourceRepository(db).recent_scrape_jobs(limit)


@app.get("/api/stats")
async def get_stats(db: Session = Depends(get_db)):
    """Listing counts per source"""
    listings = ListingRepository(db)
    per_source = {}
    for source in SourceRepository(db).list_all():
        per_source[source.slug] = {
            "total": listings.count(source.id),
            "active": listings.count(source.id, active_only=True),
            "last_scraped": source.last_scraped.isoformat() if source.last_scraped else None,
        }
    return {
        "total_listings": listings.count(),
        "active_listings": listings.count(active_only=True),
        "total_sources": db.query(Source).count(),
        "sources": per_source,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host=settings.api_host, port=settings.api_port, reload=settings.api_debug)
