"""Closing-balance trust classification for bank statement months.

This is the only place that decides whether a month's closing balance can be
trusted. Downstream code reads `MonthEntry.scenario` and `is_complete` and
must not re-derive trust from the model's own confidence.
"""

import calendar
import logging
from datetime import date
from typing import Any

from pydantic import ValidationError

from payroll_recon.config import settings
from payroll_recon.models import BalanceScenario, MonthEntry, StatementPeriod
from payroll_recon.parsers.date_range import period_from_months
from payroll_recon.parsers.document_types import RawMonthlyBalance
from payroll_recon.parsers.month_range import generate_period_months

logger = logging.getLogger(__name__)


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _coerce_candidates(candidates: list[RawMonthlyBalance | dict[str, Any]]) -> list[RawMonthlyBalance]:
    """Drop candidates whose month or year is missing or out of range."""
    valid = []
    for candidate in candidates:
        if isinstance(candidate, dict):
            try:
                candidate = RawMonthlyBalance.model_validate(candidate)
            except ValidationError as e:
                logger.debug("Discarding unreadable balance candidate: %s", e)
                continue
        if candidate.month is None or not 1 <= candidate.month <= 12:
            logger.info("Discarding balance candidate with invalid month %r", candidate.month)
            continue
        if candidate.year is None or candidate.year <= 1900:
            logger.info("Discarding balance candidate with invalid year %r", candidate.year)
            continue
        valid.append(candidate)
    return valid


def _merge_pair(kept: RawMonthlyBalance, other: RawMonthlyBalance) -> RawMonthlyBalance:
    """Fill None fields of `kept` from `other`."""
    updates = {
        name: getattr(other, name)
        for name in RawMonthlyBalance.model_fields
        if getattr(kept, name) is None and getattr(other, name) is not None
    }
    return kept.model_copy(update=updates) if updates else kept


def merge_candidates(candidates: list[RawMonthlyBalance]) -> dict[tuple[int, int], RawMonthlyBalance]:
    """
    Collapse candidates reported more than once for the same month.

    Chunked or multi-section statements often repeat a month. The candidate
    carrying more balance facts wins; on a tie the two are merged field by
    field.
    """
    merged: dict[tuple[int, int], RawMonthlyBalance] = {}
    for candidate in candidates:
        key = (candidate.year, candidate.month)
        existing = merged.get(key)
        if existing is None:
            merged[key] = candidate
        elif candidate.completeness > existing.completeness:
            merged[key] = candidate
        elif candidate.completeness == existing.completeness:
            merged[key] = _merge_pair(existing, candidate)
    return merged


def _classify(
    candidate: RawMonthlyBalance,
    *,
    is_final: bool,
    period_end: date,
    last_transaction_date: date | None,
    threshold: int,
) -> MonthEntry:
    base = {
        "month": candidate.month,
        "year": candidate.year,
        "opening_balance": candidate.opening_balance,
        "closing_date": candidate.closing_date,
        "statement_page": candidate.statement_page,
    }
    gap = (period_end - last_transaction_date).days if is_final and last_transaction_date else None

    if candidate.scenario == BalanceScenario.INCOMPLETE_MONTH or (gap is not None and gap > threshold):
        if gap is not None and gap > threshold:
            notes = f"Last transaction {last_transaction_date:%d/%m/%Y} is {gap} days before period end"
        else:
            notes = candidate.notes or "Month flagged incomplete"
        return MonthEntry(
            **base,
            closing_balance=None,
            is_complete=False,
            scenario=BalanceScenario.INCOMPLETE_MONTH,
            notes=notes,
        )

    if candidate.closing_balance is None:
        if candidate.last_transaction_balance is not None:
            return MonthEntry(
                **base,
                closing_balance=candidate.last_transaction_balance,
                is_complete=True,
                scenario=BalanceScenario.LAST_TRANSACTION,
                notes=candidate.notes or "No month-end balance printed; using balance after last transaction",
            )
        return MonthEntry(**base, is_complete=False, scenario=None, notes=candidate.notes or "No closing balance found")

    if gap is not None and gap > 0:
        balance = candidate.last_transaction_balance
        if balance is None:
            balance = candidate.closing_balance
        return MonthEntry(
            **base,
            closing_balance=balance,
            is_complete=True,
            scenario=BalanceScenario.EARLY_END,
            notes=f"Statement ends {period_end:%d/%m/%Y} but last transaction is {last_transaction_date:%d/%m/%Y}",
        )

    if not is_final and candidate.closing_date:
        month_end = _month_end(candidate.year, candidate.month)
        if candidate.closing_date < month_end:
            balance = candidate.last_transaction_balance
            if balance is None:
                balance = candidate.closing_balance
            return MonthEntry(
                **base,
                closing_balance=balance,
                is_complete=True,
                scenario=BalanceScenario.EARLY_END,
                notes=f"Transactions end {candidate.closing_date:%d/%m/%Y}, before month end {month_end:%d/%m/%Y}",
            )

    return MonthEntry(
        **base,
        closing_balance=candidate.closing_balance,
        is_complete=True,
        scenario=BalanceScenario.COMPLETE_MONTH,
        notes=candidate.notes,
    )


def classify_monthly_balances(
    candidates: list[RawMonthlyBalance | dict[str, Any]],
    period: StatementPeriod | None,
    last_transaction_date: date | None,
    *,
    incomplete_threshold_days: int | None = None,
) -> list[MonthEntry]:
    """
    Turn the model's per-month balance candidates into classified MonthEntry.

    Args:
        candidates: Raw month candidates from the model response
        period: Stated statement period, or None if it could not be parsed
        last_transaction_date: Date of the statement's last transaction, if known
        incomplete_threshold_days: Days before period end after which the final
            month counts as incomplete (defaults to the configured threshold)

    Returns:
        One MonthEntry per month, sorted by (year, month). When the period is
        known, months without a candidate appear as empty entries.
    """
    threshold = settings.incomplete_month_threshold_days if incomplete_threshold_days is None else incomplete_threshold_days

    merged = merge_candidates(_coerce_candidates(candidates))
    if not merged and period is None:
        return []

    effective = period or period_from_months([(month, year) for year, month in merged])
    final_key = (effective.end_year, effective.end_month)
    period_end = effective.period_end

    if last_transaction_date is None and final_key in merged:
        last_transaction_date = merged[final_key].closing_date

    entries: dict[tuple[int, int], MonthEntry] = {}
    for key, candidate in merged.items():
        entries[key] = _classify(
            candidate,
            is_final=key == final_key,
            period_end=period_end,
            last_transaction_date=last_transaction_date,
            threshold=threshold,
        )
        if period is not None and not period.contains(candidate.month, candidate.year):
            logger.info("Month %d/%d lies outside the stated period %r", candidate.month, candidate.year, period.raw)

    if period is not None:
        for empty in generate_period_months(period):
            entries.setdefault(empty.key, empty)

    result = [entries[key] for key in sorted(entries)]
    logger.debug(
        "Classified %d months: %s",
        len(result),
        ", ".join(f"{e.month}/{e.year}={e.scenario.value if e.scenario else 'EMPTY'}" for e in result),
    )
    return result
