"""
Pytest configuration and fixtures for the listings backend tests.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.database import Base, get_db
from api.main import app
from scrapers.base import Locator, ScrapedListing, ScraperType, SiteConfig
from scrapers.streams import spawn_producer


# Create an in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """Override the get_db dependency for testing."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    """Create a test client with database override."""
    app.dependency_overrides[get_db] = override_get_db
    Base.metadata.create_all(bind=engine)

    # Use TestClient directly without context manager so the lifespan
    # (scheduler, browser pool) does not start
    test_client = TestClient(app)
    yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def sample_source(db_session):
    """Create a sample source for testing."""
    from api.database import Source

    source = Source(
        name="Alpha Brokers",
        slug="alpha",
        base_url="https://alpha.example.com",
        scraper_type="static",
        active=True,
    )
    db_session.add(source)
    db_session.commit()
    db_session.refresh(source)
    return source


@pytest.fixture
def sample_listing(db_session, sample_source):
    """Create a sample listing for testing."""
    from api.database import Listing

    listing = Listing(
        source_id=sample_source.id,
        external_id="1001",
        title="Profitable Coffee Shop",
        asking_price=25_000_000,
        city="Austin",
        state="TX",
        is_active=True,
    )
    db_session.add(listing)
    db_session.commit()
    db_session.refresh(listing)
    return listing


class FixedClock:
    """Settable time source for the manager."""

    def __init__(self, now: datetime = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def clock():
    return FixedClock()


def make_listing(external_id: str, title: str = None, **fields) -> ScrapedListing:
    return ScrapedListing(external_id=external_id, title=title or f"Business {external_id}", **fields)


@pytest.fixture
def listing_factory():
    """Build ScrapedListing records with sensible defaults."""
    return make_listing


class FakeScraper:
    """Scraper emitting a fixed set of listings and errors."""

    def __init__(self, slug, listings=(), errors=(), fatal=None, step_delay=0.0):
        self.slug = slug
        self.listings = list(listings)
        self.errors = list(errors)
        self.fatal = fatal
        self.step_delay = step_delay
        self.calls = []
        self.streams = []

    def name(self):
        return self.slug

    def scrape(self, token, options):
        self.calls.append(options)

        async def produce(listings, errors):
            for error in self.errors:
                await errors.send(error, token)
            emitted = 0
            for listing in self.listings:
                if options.cap_reached(emitted):
                    break
                if not await listings.send(replace(listing), token):
                    return
                emitted += 1
                if self.step_delay:
                    await token.run(asyncio.sleep(self.step_delay))
            if self.fatal is not None:
                raise self.fatal

        streams = spawn_producer(token, produce, self.slug)
        self.streams.append(streams)
        return streams


@pytest.fixture
def fake_scraper():
    """The FakeScraper class, for building scrapers with canned output."""
    return FakeScraper


def _card_html(external_id, title, price="$100,000", location="Austin, TX", extra=""):
    return f"""
    <div class="listing-card" data-listing-id="{external_id}">
        <h3><a href="/listing/{external_id}">{title}</a></h3>
        <span class="price">{price}</span>
        <span class="location">{location}</span>
        {extra}
    </div>
    """


def _results_page(cards, next_href=None):
    next_link = f'<a class="next" href="{next_href}">Next</a>' if next_href else ""
    return f"<html><head><title>Results</title></head><body>{''.join(cards)}{next_link}</body></html>"


@pytest.fixture
def card_html():
    """Markup for one results-page card."""
    return _card_html


@pytest.fixture
def results_page():
    """Markup for a results page from a list of cards."""
    return _results_page


@pytest.fixture
def site_config():
    """A static site configuration matching the card_html markup."""
    return SiteConfig(
        name="Test Brokers",
        slug="testbrokers",
        base_url="https://brokers.example.com",
        start_url="https://brokers.example.com/businesses-for-sale/",
        scraper_type=ScraperType.STATIC,
        card_selectors=(".listing-card",),
        field_rules={
            'external_id': (Locator('', 'data-listing-id'),),
            'url': (Locator('h3 a', 'href'),),
            'title': (Locator('h3'),),
            'asking_price': (Locator('.asking-price'), Locator('.price')),
            'cash_flow': (Locator('.cash-flow'),),
            'location': (Locator('.location'),),
            'industry': (Locator('.category'),),
        },
        id_patterns=(r'/listing/(\d+)',),
        page_size=20,
        rate_limit_seconds=0,
    )


async def _drain(streams):
    listings, errors = streams

    async def collect(stream):
        return [item async for item in stream]

    return await asyncio.gather(collect(listings), collect(errors))


@pytest.fixture
def drain():
    """Coroutine collecting both streams of a run: ``items, errors = await drain(streams)``."""
    return _drain
