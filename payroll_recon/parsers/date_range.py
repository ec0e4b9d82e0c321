"""Statement period parsing.

Bank statements state their coverage in many shapes ("01/01/2024 - 31/03/2024",
"January - March 2024", "Jan-24 to Mar-24", ...). Each shape has its own pure
matcher below; `parse_statement_period` tries them in order and the first
structurally valid result wins.

A matcher returns None when its shape is absent from the text and raises
ParseFailure when the shape is there but the values are impossible (month 13,
year 1850). The chain treats both as "try the next matcher".
"""

import calendar
import logging
import re
from collections.abc import Callable
from datetime import date

from pydantic import ValidationError

from payroll_recon.exceptions import ParseFailure
from payroll_recon.models import StatementPeriod
from payroll_recon.parsers.month_range import generate_month_range

logger = logging.getLogger("payroll_recon.parsers")

_MONTHS = [name.lower() for name in calendar.month_name[1:]]

_DASH = r"\s*[-–—]\s*"
_RANGE_SEP = r"\s*(?:[-–—]|to|until|through)\s*"
_WORD = r"\b([A-Za-z]{3,9})\.?"
_NUM_DATE = r"(\d{1,2})[/.](\d{1,2})[/.](\d{4})"
_MIXED_DATE = r"(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4})"

_NUMERIC_RANGE = re.compile(_NUM_DATE + _DASH + _NUM_DATE)
_NUMERIC_TO_RANGE = re.compile(_MIXED_DATE + _RANGE_SEP + _MIXED_DATE, re.IGNORECASE)
_ISO_RANGE = re.compile(r"(\d{4})-(\d{2})-(\d{2})" + _RANGE_SEP + r"(\d{4})-(\d{2})-(\d{2})", re.IGNORECASE)
_SINGLE_MONTH = re.compile(r"^\s*" + _WORD + r",?\s+(\d{4})\s*$")
_SINGLE_NUMERIC_MONTH = re.compile(r"^\s*(\d{1,2})[/.\-](\d{4})\s*$")
_MONTH_RANGE_SAME_YEAR = re.compile(_WORD + _RANGE_SEP + _WORD + r",?\s+(\d{4})\b", re.IGNORECASE)
_MONTH_RANGE_CROSS_YEAR = re.compile(
    r"(?:\b(\d{1,2})(?:st|nd|rd|th)?\s+)?"
    + _WORD
    + r",?\s+(\d{4})"
    + _RANGE_SEP
    + r"(?:\b(\d{1,2})(?:st|nd|rd|th)?\s+)?"
    + _WORD
    + r",?\s+(\d{4})\b",
    re.IGNORECASE,
)
_ABBREVIATED_RANGE = re.compile(
    r"\b([A-Za-z]{3})[a-z]*[\s'’\-]*(\d{4}|\d{2})" + _RANGE_SEP + r"\b([A-Za-z]{3})[a-z]*[\s'’\-]*(\d{4}|\d{2})\b",
    re.IGNORECASE,
)
_DATE_LIKE = re.compile(
    r"(?P<dmy>\b\d{1,2}[/.\-]\d{1,2}[/.\-]\d{4}\b)"
    r"|(?P<iso>\b\d{4}-\d{2}-\d{2}\b)"
    r"|(?P<dmonthy>\b\d{1,2}(?:st|nd|rd|th)?\s+[A-Za-z]{3,9}\.?,?\s+\d{4}\b)"
    r"|(?P<monthdy>\b[A-Za-z]{3,9}\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}\b)",
    re.IGNORECASE,
)


def get_month_number(name: str | None) -> int | None:
    """
    Resolve a month name to 1-12.

    Accepts full names, three-letter abbreviations, and any prefix of a full
    name at least three letters long ("Sept", "Janu"). Case-insensitive.
    """
    if not name:
        return None
    key = name.strip().rstrip(".").lower()
    if len(key) < 3:
        return None
    for index, full in enumerate(_MONTHS, start=1):
        if full.startswith(key):
            return index
    return None


def _safe_date(year: int, month: int, day: int | None) -> date | None:
    if day is None:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _expand_year(value: str) -> int:
    year = int(value)
    return year + 2000 if len(value) == 2 else year


def _build(
    raw: str,
    start_month: int | None,
    start_year: int,
    end_month: int | None,
    end_year: int,
    start_day: int | None = None,
    end_day: int | None = None,
) -> StatementPeriod:
    """Validate month/year bounds and build a period.

    Raises:
        ParseFailure: If a month is unknown or out of range, or a year is implausible
    """
    if start_month is None or end_month is None:
        raise ParseFailure("Unrecognised month name", value=raw)
    if not (1 <= start_month <= 12 and 1 <= end_month <= 12):
        raise ParseFailure(f"Month out of range: {start_month}, {end_month}", value=raw)
    if start_year <= 1900 or end_year <= 1900:
        raise ParseFailure(f"Year out of range: {start_year}, {end_year}", value=raw)
    try:
        return StatementPeriod(
            raw=raw,
            start_month=start_month,
            start_year=start_year,
            end_month=end_month,
            end_year=end_year,
            start_date=_safe_date(start_year, start_month, start_day),
            end_date=_safe_date(end_year, end_month, end_day),
        )
    except ValidationError as e:
        raise ParseFailure(str(e), value=raw) from e


def _first_valid(pattern: re.Pattern, text: str, build: Callable[[re.Match], StatementPeriod]):
    failure = None
    for match in pattern.finditer(text):
        try:
            return build(match)
        except ParseFailure as e:
            failure = failure or e
    if failure is not None:
        raise failure
    return None


def match_numeric_range(text: str) -> StatementPeriod | None:
    """DD/MM/YYYY - DD/MM/YYYY (also with en/em dashes or dotted dates)."""

    def build(m: re.Match) -> StatementPeriod:
        d1, m1, y1, d2, m2, y2 = (int(group) for group in m.groups())
        return _build(text, m1, y1, m2, y2, d1, d2)

    return _first_valid(_NUMERIC_RANGE, text, build)


def match_numeric_to_range(text: str) -> StatementPeriod | None:
    """Numeric ranges joined by "to", or using "-" inside the dates, or ISO dates."""

    def build(m: re.Match) -> StatementPeriod:
        d1, m1, y1, d2, m2, y2 = (int(group) for group in m.groups())
        return _build(text, m1, y1, m2, y2, d1, d2)

    def build_iso(m: re.Match) -> StatementPeriod:
        y1, m1, d1, y2, m2, d2 = (int(group) for group in m.groups())
        return _build(text, m1, y1, m2, y2, d1, d2)

    try:
        period = _first_valid(_NUMERIC_TO_RANGE, text, build)
    except ParseFailure:
        period = None
    return period or _first_valid(_ISO_RANGE, text, build_iso)


def match_single_month(text: str) -> StatementPeriod | None:
    """A whole string naming one month: "March 2024", "Mar 2024", "03/2024"."""
    m = _SINGLE_MONTH.match(text)
    if m:
        month = get_month_number(m.group(1))
        year = int(m.group(2))
        return _build(text, month, year, month, year)

    m = _SINGLE_NUMERIC_MONTH.match(text)
    if m:
        month, year = int(m.group(1)), int(m.group(2))
        return _build(text, month, year, month, year)
    return None


def match_month_range_same_year(text: str) -> StatementPeriod | None:
    """ "January - July 2024", "Jan to Mar 2024"."""

    def build(m: re.Match) -> StatementPeriod:
        year = int(m.group(3))
        return _build(text, get_month_number(m.group(1)), year, get_month_number(m.group(2)), year)

    return _first_valid(_MONTH_RANGE_SAME_YEAR, text, build)


def match_month_range_cross_year(text: str) -> StatementPeriod | None:
    """ "November 2023 - February 2024", optionally with leading day numbers."""

    def build(m: re.Match) -> StatementPeriod:
        d1, name1, y1, d2, name2, y2 = m.groups()
        return _build(
            text,
            get_month_number(name1),
            int(y1),
            get_month_number(name2),
            int(y2),
            int(d1) if d1 else None,
            int(d2) if d2 else None,
        )

    return _first_valid(_MONTH_RANGE_CROSS_YEAR, text, build)


def match_abbreviated_range(text: str) -> StatementPeriod | None:
    """Three-letter month abbreviations with attached years: "Jan-24 to Mar-24", "Jan'24 - Mar'24"."""

    def build(m: re.Match) -> StatementPeriod:
        name1, y1, name2, y2 = m.groups()
        return _build(text, get_month_number(name1), _expand_year(y1), get_month_number(name2), _expand_year(y2))

    return _first_valid(_ABBREVIATED_RANGE, text, build)


def _parse_date_like(m: re.Match) -> date | None:
    token = m.group(0)
    if m.group("dmy"):
        day, month, year = (int(part) for part in re.split(r"[/.\-]", token))
    elif m.group("iso"):
        year, month, day = (int(part) for part in token.split("-"))
    else:
        words = re.findall(r"[A-Za-z]+", token)
        numbers = re.findall(r"\d+", token)
        month = next((get_month_number(word) for word in words if get_month_number(word)), None)
        if month is None or len(numbers) < 2:
            return None
        day, year = int(numbers[0]), int(numbers[-1])
    if not 1 <= month <= 12 or year <= 1900:
        return None
    return _safe_date(year, month, day)


def match_any_dates(text: str) -> StatementPeriod | None:
    """Fallback: first and last date-like substrings anywhere in the text."""
    found = [parsed for parsed in (_parse_date_like(m) for m in _DATE_LIKE.finditer(text)) if parsed]
    if len(found) < 2:
        return None
    first, last = found[0], found[-1]
    return _build(text, first.month, first.year, last.month, last.year, first.day, last.day)


PERIOD_MATCHERS: list[Callable[[str], StatementPeriod | None]] = [
    match_numeric_range,
    match_numeric_to_range,
    match_single_month,
    match_month_range_same_year,
    match_month_range_cross_year,
    match_abbreviated_range,
    match_any_dates,
]


def parse_statement_period(text: str | None) -> StatementPeriod | None:
    """
    Parse a statement period string into a normalized month/year range.

    Never raises. Returns None when no matcher recognizes the text; callers
    must then treat the period as unknown rather than assume any months.
    Reversed ranges are swapped so the end never precedes the start.

    Args:
        text: Raw period string as printed on the statement

    Returns:
        StatementPeriod or None
    """
    if not text or not isinstance(text, str):
        return None

    normalized = " ".join(text.split())
    for matcher in PERIOD_MATCHERS:
        try:
            period = matcher(normalized)
        except (ParseFailure, ValueError, TypeError) as e:
            logger.debug("Matcher %s rejected %r: %s", matcher.__name__, normalized, e)
            continue
        if period is not None:
            logger.debug(
                "Parsed period %r via %s: %d/%d - %d/%d",
                normalized,
                matcher.__name__,
                period.start_month,
                period.start_year,
                period.end_month,
                period.end_year,
            )
            return period

    logger.warning("Failed to parse statement period: %r", text)
    return None


def is_period_contained(period_text: str | None, month: int, year: int) -> bool:
    """True if the stated period covers the given cycle month."""
    period = parse_statement_period(period_text)
    if period is None:
        return False
    return period.contains(month, year)


def validate_statement_period_range(
    period_text: str | None, month: int, year: int
) -> tuple[bool, str, list[tuple[int, int]]]:
    """
    Check that a statement covers the cycle month it is filed under.

    Returns:
        Tuple of (is_valid, human-readable message, (month, year) pairs covered)
    """
    period = parse_statement_period(period_text)
    if period is None:
        return False, f"Could not parse statement period '{period_text}'", []

    months = [
        (entry.month, entry.year)
        for entry in generate_month_range(period.start_month, period.start_year, period.end_month, period.end_year)
    ]
    label = f"{calendar.month_name[month]} {year}"

    if (month, year) not in months:
        return False, f"Statement period '{period_text}' does not include {label}", months

    if len(months) > 1:
        return True, f"Statement covers {len(months)} months including {label}", months
    return True, f"Statement covers {label}", months


def format_period(start: date, end: date) -> str:
    """Canonical "DD/MM/YYYY - DD/MM/YYYY" period string."""
    return f"{start:%d/%m/%Y} - {end:%d/%m/%Y}"


def period_from_months(months: list[tuple[int, int]]) -> StatementPeriod | None:
    """Synthesize a period spanning the earliest to latest (month, year) given."""
    valid = sorted((year, month) for month, year in months if 1 <= month <= 12 and year > 1900)
    if not valid:
        return None
    (start_year, start_month), (end_year, end_month) = valid[0], valid[-1]
    start = date(start_year, start_month, 1)
    end = date(end_year, end_month, calendar.monthrange(end_year, end_month)[1])
    return StatementPeriod(
        raw=format_period(start, end),
        start_month=start_month,
        start_year=start_year,
        end_month=end_month,
        end_year=end_year,
        start_date=start,
        end_date=end,
    )
