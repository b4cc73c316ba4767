"""Shared utilities for scrapers."""

from .normalizers import (
    clean_text,
    parse_money,
    parse_location,
    parse_int,
    absolute_url,
)
from .extractors import (
    ListingPage,
    detect_block,
    extract_external_id,
    extract_listing,
    parse_listing_page,
    extract_json_ld_listings,
    extract_link_listings,
)

__all__ = [
    'clean_text',
    'parse_money',
    'parse_location',
    'parse_int',
    'absolute_url',
    'ListingPage',
    'detect_block',
    'extract_external_id',
    'extract_listing',
    'parse_listing_page',
    'extract_json_ld_listings',
    'extract_link_listings',
]
