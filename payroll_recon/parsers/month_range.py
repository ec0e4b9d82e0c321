"""Expansion of a month/year range into one MonthEntry per month."""

import logging

from payroll_recon.models import MonthEntry, StatementPeriod

logger = logging.getLogger("payroll_recon.parsers")

MIN_YEAR = 1900
MAX_YEAR = 2100
MAX_ITERATIONS = 1000


def _clamp_month(month: int) -> int:
    return min(max(month, 1), 12)


def generate_month_range(
    start_month: int | None,
    start_year: int | None,
    end_month: int | None,
    end_year: int | None,
) -> list[MonthEntry]:
    """
    Generate the months from start to end inclusive, balances unset.

    Missing or zero inputs give an empty list. Months are clamped to 1-12.
    Years outside 1900-2100 give a single entry at the start. A reversed
    range is swapped rather than rejected.

    Args:
        start_month: First month (1-12)
        start_year: First year
        end_month: Last month (1-12)
        end_year: Last year

    Returns:
        Ordered list of MonthEntry
    """
    if not start_month or not start_year or not end_month or not end_year:
        logger.warning(
            "Invalid inputs to generate_month_range: %s/%s - %s/%s", start_month, start_year, end_month, end_year
        )
        return []

    start_month, end_month = _clamp_month(int(start_month)), _clamp_month(int(end_month))
    start_year, end_year = int(start_year), int(end_year)

    if not (MIN_YEAR <= start_year <= MAX_YEAR and MIN_YEAR <= end_year <= MAX_YEAR):
        logger.warning("Year out of range (%d-%d), returning start month only", start_year, end_year)
        return [MonthEntry(month=start_month, year=start_year)]

    if (end_year, end_month) < (start_year, start_month):
        logger.info("End %d/%d precedes start %d/%d, swapping", end_month, end_year, start_month, start_year)
        start_month, start_year, end_month, end_year = end_month, end_year, start_month, start_year

    months: list[MonthEntry] = []
    month, year = start_month, start_year
    while (year, month) <= (end_year, end_month):
        if len(months) >= MAX_ITERATIONS:
            logger.error(
                "Month range %d/%d - %d/%d hit the %d iteration cap, truncating",
                start_month,
                start_year,
                end_month,
                end_year,
                MAX_ITERATIONS,
            )
            break
        months.append(MonthEntry(month=month, year=year))
        month += 1
        if month > 12:
            month = 1
            year += 1

    return months


def generate_period_months(period: StatementPeriod | None) -> list[MonthEntry]:
    """Months covered by a parsed statement period; empty for an unknown period."""
    if period is None:
        return []
    return generate_month_range(period.start_month, period.start_year, period.end_month, period.end_year)
