"""
Base types for the listing scraper system.

This module defines the scraper contract shared by the static and browser
variants, the candidate listing record, per-run options and results, and
the error taxonomy used by scrapers and the manager.
"""

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, TYPE_CHECKING, runtime_checkable
import logging

if TYPE_CHECKING:
    from .streams import CancelToken, ScrapeStreams

logger = logging.getLogger(__name__)

# Page budget used when a run has no listing cap
DEFAULT_MAX_PAGES = 50


# ANSI color codes for terminal output
class Colors:
    """ANSI color codes for colorized logging."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'

    @staticmethod
    def green(text):
        return f"{Colors.GREEN}{text}{Colors.RESET}"

    @staticmethod
    def yellow(text):
        return f"{Colors.YELLOW}{text}{Colors.RESET}"

    @staticmethod
    def red(text):
        return f"{Colors.RED}{text}{Colors.RESET}"

    @staticmethod
    def cyan(text):
        return f"{Colors.CYAN}{text}{Colors.RESET}"

    @staticmethod
    def gray(text):
        return f"{Colors.GRAY}{text}{Colors.RESET}"

    @staticmethod
    def bold(text):
        return f"{Colors.BOLD}{text}{Colors.RESET}"


class ScraperType(Enum):
    """How a source's pages are fetched."""
    STATIC = "static"     # httpx + BeautifulSoup
    BROWSER = "browser"   # Playwright page from the browser pool


class JobStatus(str, Enum):
    """ScrapeJob lifecycle: pending -> running -> completed | failed."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


# ============================================================
# ERRORS
# ============================================================

class ScrapeError(Exception):
    """A page or item could not be fetched or parsed. The run continues."""

    fatal = False

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.url = url

    def __str__(self):
        return self.message


class FatalScrapeError(ScrapeError):
    """The run cannot continue (entry page unreachable, unexpected failure)."""

    fatal = True


class BlockedError(FatalScrapeError):
    """The source answered with an anti-bot challenge or access denial."""


class ScraperNotRegistered(LookupError):
    """No scraper is registered for the requested slug."""


class SourceNotFound(LookupError):
    """No source with the requested slug exists in the store."""


class ScrapeCancelledException(Exception):
    """Raised at a suspension point once the run's cancel token fired."""


# ============================================================
# SITE CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class Locator:
    """One way of finding a field inside a listing card.

    ``attr`` names an attribute to read; when None the element's text is used.
    """
    selector: str
    attr: Optional[str] = None


@dataclass
class SiteConfig:
    """Configuration for one brokerage site."""
    name: str                           # Display name
    slug: str                           # Stable identifier, matches Source.slug
    base_url: str                       # Used to resolve relative links
    start_url: str                      # First search-results page
    scraper_type: ScraperType
    card_selectors: Tuple[str, ...]     # Tried in order, first with matches wins
    field_rules: Dict[str, Tuple[Locator, ...]] = field(default_factory=dict)
    id_patterns: Tuple[str, ...] = ()   # Regexes applied to the listing URL
    next_page_selectors: Tuple[str, ...] = ("a.next", "a[rel='next']")
    page_url_template: Optional[str] = None  # e.g. 'https://site/businesses-for-sale/{page}/'
    page_size: int = 20
    rate_limit_seconds: float = 2.0
    country: str = 'US'
    enabled: bool = True

    def page_url(self, page_num: int) -> Optional[str]:
        """Numbered results URL, for sites paginated by URL instead of links."""
        if not self.page_url_template:
            return None
        return self.page_url_template.format(page=page_num)


# ============================================================
# RUN OPTIONS & RECORDS
# ============================================================

@dataclass
class ScrapeOptions:
    """Per-run parameters. Not persisted."""
    full_scrape: bool = True
    max_listings: int = 0               # 0 means unbounded
    rate_limit: float = 2.0             # Minimum delay between page requests
    max_pages_ceiling: int = DEFAULT_MAX_PAGES

    def max_pages(self, page_size: int, ceiling: Optional[int] = None) -> int:
        """Page budget for this run."""
        if self.max_listings > 0:
            return self.max_listings // max(page_size, 1) + 1
        return ceiling if ceiling is not None else self.max_pages_ceiling

    def cap_reached(self, emitted: int) -> bool:
        return self.max_listings > 0 and emitted >= self.max_listings


MONEY_FIELDS = (
    'asking_price', 'revenue', 'cash_flow', 'ebitda',
    'inventory_value', 'real_estate_value', 'monthly_rent',
)


@dataclass
class ScrapedListing:
    """A candidate listing produced by a scraper, before merge.

    Money fields are integer cents; None means the source did not disclose
    the value (which is not the same as zero).
    """
    external_id: str
    title: str
    source_id: Optional[int] = None
    url: Optional[str] = None
    description: Optional[str] = None

    asking_price: Optional[int] = None
    revenue: Optional[int] = None
    cash_flow: Optional[int] = None
    ebitda: Optional[int] = None
    inventory_value: Optional[int] = None
    real_estate_value: Optional[int] = None
    monthly_rent: Optional[int] = None

    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = 'US'
    lat: Optional[float] = None
    lng: Optional[float] = None

    industry: Optional[str] = None
    industry_category: Optional[str] = None
    business_type: Optional[str] = None
    is_franchise: bool = False
    franchise_name: Optional[str] = None
    real_estate_included: bool = False

    reason_for_sale: Optional[str] = None
    year_established: Optional[int] = None
    employees: Optional[int] = None
    lease_expiration: Optional[date] = None

    raw_data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be given together")

    def to_record(self) -> Dict[str, Any]:
        """Column values for persistence, including explicit Nones."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ScrapeResult:
    """Outcome of a single source run."""
    source: str
    job_id: Optional[int] = None
    started_at: datetime = None
    completed_at: Optional[datetime] = None
    status: JobStatus = JobStatus.RUNNING
    found: int = 0
    new: int = 0
    updated: int = 0
    errors: int = 0
    error_message: Optional[str] = None
    error_details: List[str] = field(default_factory=list)

    # Non-fatal errors kept in memory for display
    MAX_ERROR_DETAILS = 20

    @property
    def success(self) -> bool:
        return self.status == JobStatus.COMPLETED

    @property
    def duration_seconds(self) -> float:
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def record_error(self, error: Exception):
        self.errors += 1
        if len(self.error_details) < self.MAX_ERROR_DETAILS:
            self.error_details.append(str(error))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'job_id': self.job_id,
            'status': self.status.value,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': self.duration_seconds,
            'found': self.found,
            'new': self.new,
            'updated': self.updated,
            'errors': self.errors,
            'error_message': self.error_message,
            'error_details': self.error_details[:10],
        }


@runtime_checkable
class Scraper(Protocol):
    """Contract shared by every source scraper.

    ``scrape`` must be called from a running event loop. It returns at once
    with the two bounded streams; the producer task closes both when the run
    ends, normally or by cancellation.
    """

    def name(self) -> str:
        ...

    def scrape(self, token: 'CancelToken', options: ScrapeOptions) -> 'ScrapeStreams':
        ...
