"""Due-date normalization to ``YYYY-MM-DD``."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

ROLLOVER_DAYS = 30
LEAP_SEARCH_YEARS = 4

_MONTHS = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}

_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")
_MONTH_FIRST_RE = re.compile(r"^([a-z]{3,9})\.?\s+(\d{1,2})(?:\s+(\d{4}))?$", re.IGNORECASE)
_DAY_FIRST_RE = re.compile(r"^(\d{1,2})\s+([a-z]{3,9})\.?(?:\s+(\d{4}))?$", re.IGNORECASE)
_NUMERIC_RE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})(?:[/\-.](\d{2}|\d{4}))?$")
_ORDINAL_RE = re.compile(r"(\d{1,2})(?:st|nd|rd|th)\b", re.IGNORECASE)
_WEEKDAY_RE = re.compile(
    r"^(?:(?:next|this|last|on)\s+)?(?:mon|tues?|wed(?:nes)?|thu(?:rs?)?|fri|sat(?:ur)?|sun)(?:day)?\.?$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ParsedDate:
    value: date
    explicit_year: bool


def normalize_due_date(
    raw: str | None, reference: date | datetime | None = None
) -> str | None:
    """Normalize a raw date string to ``YYYY-MM-DD``.

    Already-normalized strings pass through unchanged. Bare month/day dates
    take the reference year and roll forward one year when they would land
    more than 30 days before ``reference`` (the email receipt date, today if
    omitted). Unparsable input returns ``None``.
    """
    parsed = parse_date(raw, reference)
    return parsed.value.isoformat() if parsed else None


def parse_date(
    raw: str | None, reference: date | datetime | None = None
) -> ParsedDate | None:
    """Parse a raw date string, reporting whether the year was explicit."""
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None

    ref = as_date(reference)

    iso = _ISO_RE.match(text)
    if iso:
        value = _safe_date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        return ParsedDate(value, explicit_year=True) if value else None

    cleaned = _ORDINAL_RE.sub(r"\1", text.replace(",", " "))
    cleaned = " ".join(cleaned.split())

    parsed = _parse_known_formats(cleaned, ref)
    if parsed is None and re.search(r"[a-z]", cleaned, re.IGNORECASE):
        parsed = _parse_with_dateutil(cleaned, ref)
    if parsed is None:
        return None

    if not parsed.explicit_year:
        parsed = _roll_forward(parsed, ref)
    return parsed


def _parse_known_formats(text: str, ref: date) -> ParsedDate | None:
    match = _MONTH_FIRST_RE.match(text)
    if match:
        month = _month_number(match.group(1))
        if month is None:
            return None
        return _build(match.group(3), month, int(match.group(2)), ref)

    match = _DAY_FIRST_RE.match(text)
    if match:
        month = _month_number(match.group(2))
        if month is None:
            return None
        return _build(match.group(3), month, int(match.group(1)), ref)

    match = _NUMERIC_RE.match(text)
    if match:
        year_text = match.group(3)
        if year_text and len(year_text) == 2:
            short = int(year_text)
            year_text = str(1900 + short if short >= 50 else 2000 + short)
        return _build(year_text, int(match.group(1)), int(match.group(2)), ref)

    return None


def _parse_with_dateutil(text: str, ref: date) -> ParsedDate | None:
    if _WEEKDAY_RE.match(text):
        return None
    # Two parses with different defaults show which fields the text supplied.
    try:
        first = date_parser.parse(text, default=datetime(ref.year, 1, 1))
        second = date_parser.parse(text, default=datetime(ref.year + 4, 2, 2))
    except (ValueError, OverflowError):
        logger.debug("Could not parse date %r", text)
        return None
    if (first.month, first.day) != (second.month, second.day):
        logger.debug("Date %r has no month and day", text)
        return None
    if first.year < 2000:
        return None
    return ParsedDate(first.date(), explicit_year=first.year == second.year)


def _build(year_text: str | None, month: int, day: int, ref: date) -> ParsedDate | None:
    if year_text is not None:
        value = _safe_date(int(year_text), month, day)
        return ParsedDate(value, explicit_year=True) if value else None
    value = _next_valid_date(ref.year, month, day)
    return ParsedDate(value, explicit_year=False) if value else None


def _roll_forward(parsed: ParsedDate, ref: date) -> ParsedDate:
    if parsed.value >= ref - timedelta(days=ROLLOVER_DAYS):
        return parsed
    rolled = _next_valid_date(parsed.value.year + 1, parsed.value.month, parsed.value.day)
    if rolled is None:
        return parsed
    return ParsedDate(rolled, explicit_year=False)


def _next_valid_date(year: int, month: int, day: int) -> date | None:
    # Feb 29 without a year means the next leap year.
    for candidate in range(year, year + LEAP_SEARCH_YEARS + 1):
        value = _safe_date(candidate, month, day)
        if value is not None:
            return value
    return None


def _month_number(name: str) -> int | None:
    lowered = name.lower()
    for full, number in _MONTHS.items():
        if full.startswith(lowered) and len(lowered) >= 3:
            return number
    return None


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def as_date(reference: date | datetime | None) -> date:
    if reference is None:
        return date.today()
    if isinstance(reference, datetime):
        return reference.date()
    return reference
