"""
Data normalization utilities for scrapers.

These functions standardize scraped text into consistent values: money as
integer cents, locations as city/state/zip, whitespace collapsed.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple
from urllib.parse import urljoin


# Text meaning "price not published"
UNDISCLOSED_MARKERS = (
    'not disclosed', 'undisclosed', 'disclosed', 'call', 'contact',
    'n/a', 'upon request', 'negotiable', 'tbd',
)

MONEY_LABELS = ('asking price', 'cash flow', 'revenue', 'gross revenue', 'price', 'sde', ':')

_RANGE_SEPARATOR = re.compile(r'\s*(?:-|–|—|\bto\b)\s*')
_AMOUNT = re.compile(r'(\d+(?:\.\d+)?)\s*(million|mil|mm|m|thousand|k)?\b')

_MULTIPLIERS = {
    'k': 1_000, 'thousand': 1_000,
    'm': 1_000_000, 'mm': 1_000_000, 'mil': 1_000_000, 'million': 1_000_000,
}

_WHITESPACE = re.compile(r'\s+')


def clean_text(text: Optional[str]) -> Optional[str]:
    """Collapse runs of whitespace; empty results become None."""
    if not text:
        return None
    cleaned = _WHITESPACE.sub(' ', text).strip()
    return cleaned or None


def parse_money(text: Optional[str]) -> Optional[int]:
    """
    Parse a displayed amount into integer cents.

    Ranges resolve to their lower bound; undisclosed amounts return None.

    Examples:
        $1,250,000 -> 125000000
        $500K -> 50000000
        $1M - $2M -> 100000000
        Call for price -> None
    """
    if not text:
        return None

    cleaned = text.strip().lower()
    if any(marker in cleaned for marker in UNDISCLOSED_MARKERS):
        return None

    cleaned = cleaned.replace('$', '').replace(',', '')
    for label in MONEY_LABELS:
        cleaned = cleaned.replace(label, ' ')

    lower_bound = _RANGE_SEPARATOR.split(cleaned.strip(), maxsplit=1)[0]
    match = _AMOUNT.search(lower_bound)
    if not match:
        return None

    try:
        amount = Decimal(match.group(1))
    except InvalidOperation:
        return None

    suffix = match.group(2)
    if suffix:
        amount *= _MULTIPLIERS[suffix]

    return int(amount * 100)


def parse_location(text: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Split location text into (city, state, zip).

    Examples:
        Austin, TX -> ('Austin', 'TX', None)
        Miami, FL 33101 -> ('Miami', 'FL', '33101')
        TX -> (None, 'TX', None)
        Greater Denver Area -> ('Greater Denver Area', None, None)
    """
    location = clean_text(text)
    if not location:
        return None, None, None

    if ',' in location:
        city, _, rest = location.partition(',')
        city = city.strip() or None
        tokens = rest.split()
        state = tokens[0].upper() if tokens else None
        zip_code = None
        if len(tokens) > 1 and re.fullmatch(r'\d{5}(?:-\d{4})?', tokens[1]):
            zip_code = tokens[1]
        return city, state, zip_code

    if len(location) == 2 and location.isalpha():
        return None, location.upper(), None

    return location, None, None


def parse_int(text: Optional[str]) -> Optional[int]:
    """First integer in the text, ignoring thousands separators."""
    if not text:
        return None
    match = re.search(r'\d+', text.replace(',', ''))
    return int(match.group()) if match else None


def parse_coordinate(text: Optional[str]) -> Optional[float]:
    if text is None:
        return None
    try:
        return float(str(text).strip())
    except ValueError:
        return None


def absolute_url(base_url: str, href: Optional[str]) -> Optional[str]:
    """Resolve a possibly relative link against the source base URL."""
    if not href:
        return None
    href = href.strip()
    if href.startswith(('javascript:', 'mailto:', '#')):
        return None
    return urljoin(base_url if base_url.endswith('/') else base_url + '/', href)
