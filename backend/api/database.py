from sqlalchemy import (
    create_engine, Column, Integer, BigInteger, String, Float, Date, DateTime, Boolean, Text,
    ForeignKey, Index, JSON, UniqueConstraint,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from datetime import datetime, timezone
from pathlib import Path


def utc_now():
    """Return current UTC time (timezone-aware). Replaces deprecated datetime.utcnow()."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from SQLite as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


Base = declarative_base()


class Source(Base):
    __tablename__ = 'sources'

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    base_url = Column(String, nullable=False)
    scraper_type = Column(String, nullable=False, default='static')  # static | browser
    active = Column(Boolean, default=True, nullable=False)
    config = Column(JSON, default=dict)  # Opaque per-source settings
    last_scraped = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    listings = relationship("Listing", back_populates="source")
    scrape_jobs = relationship("ScrapeJob", back_populates="source")


class Listing(Base):
    __tablename__ = 'listings'

    id = Column(Integer, primary_key=True)
    source_id = Column(Integer, ForeignKey('sources.id'), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    url = Column(String)

    # Descriptive
    title = Column(String, nullable=False)
    description = Column(Text)
    reason_for_sale = Column(Text)

    # Financials, integer cents (NULL means not disclosed)
    asking_price = Column(BigInteger, index=True)
    revenue = Column(BigInteger)
    cash_flow = Column(BigInteger)
    ebitda = Column(BigInteger)
    inventory_value = Column(BigInteger)
    real_estate_value = Column(BigInteger)
    monthly_rent = Column(BigInteger)

    # Location
    city = Column(String)
    state = Column(String, index=True)
    zip_code = Column(String)
    country = Column(String, default='US')
    lat = Column(Float)
    lng = Column(Float)

    # Classification
    industry = Column(String, index=True)
    industry_category = Column(String)
    business_type = Column(String)
    is_franchise = Column(Boolean, default=False, nullable=False)
    franchise_name = Column(String)
    real_estate_included = Column(Boolean, default=False, nullable=False)

    # Details
    year_established = Column(Integer)
    employees = Column(Integer)
    lease_expiration = Column(Date)
    raw_data = Column(JSON, default=dict)

    # Freshness
    first_seen_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    last_seen_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    source = relationship("Source", back_populates="listings")

    __table_args__ = (
        UniqueConstraint('source_id', 'external_id', name='uq_listings_source_external'),
        Index('ix_listings_source_active_seen', 'source_id', 'is_active', 'last_seen_at'),
    )


class ScrapeJob(Base):
    __tablename__ = 'scrape_jobs'

    id = Column(Integer, primary_key=True)
    source_id = Column(Integer, ForeignKey('sources.id'), nullable=False, index=True)
    status = Column(String, nullable=False, default='pending', index=True)
    full_scrape = Column(Boolean, default=True, nullable=False)

    listings_found = Column(Integer, default=0, nullable=False)
    listings_new = Column(Integer, default=0, nullable=False)
    listings_updated = Column(Integer, default=0, nullable=False)
    errors = Column(Integer, default=0, nullable=False)
    error_message = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    source = relationship("Source", back_populates="scrape_jobs")

    __table_args__ = (
        Index('ix_scrape_jobs_source_completed', 'source_id', 'completed_at'),
    )


# Database setup - import settings for database URL
from api.config import settings


def _engine_options(url: str) -> dict:
    """Pooling for server databases; SQLite keeps SQLAlchemy's defaults."""
    if make_url(url).get_backend_name() == 'sqlite':
        return {'connect_args': {'check_same_thread': False}}
    return {
        'pool_size': 5,           # Number of connections to keep in pool
        'max_overflow': 10,       # Additional connections allowed beyond pool_size
        'pool_pre_ping': True,    # Verify connections before use (handles stale connections)
        'pool_recycle': 3600,     # Recycle connections after 1 hour
    }


engine = create_engine(settings.database_url, echo=False, **_engine_options(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    url = make_url(settings.database_url)
    if url.get_backend_name() == 'sqlite' and url.database and url.database != ':memory:':
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
