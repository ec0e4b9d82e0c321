"""Tests for closing-balance classification."""

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from payroll_recon.models import BalanceScenario, MonthEntry
from payroll_recon.parsers.date_range import parse_statement_period
from payroll_recon.parsers.document_types import RawMonthlyBalance
from payroll_recon.services.balance_scenarios import classify_monthly_balances, merge_candidates


def _by_month(entries):
    return {(entry.month, entry.year): entry for entry in entries}


class TestMonthEntryInvariant:
    """Test the INCOMPLETE_MONTH model invariant."""

    def test_incomplete_month_rejects_closing_balance(self):
        """An incomplete month can never carry a closing balance."""
        with pytest.raises(ValidationError):
            MonthEntry(
                month=3,
                year=2024,
                closing_balance=Decimal("10"),
                scenario=BalanceScenario.INCOMPLETE_MONTH,
            )

    def test_incomplete_month_rejects_is_complete(self):
        """An incomplete month can never be marked complete."""
        with pytest.raises(ValidationError):
            MonthEntry(month=3, year=2024, is_complete=True, scenario=BalanceScenario.INCOMPLETE_MONTH)


class TestClassifyMonthlyBalances:
    """Test scenario classification per month."""

    def test_complete_months(self):
        """Months with printed closing balances through month end are complete."""
        period = parse_statement_period("01/01/2024 - 29/02/2024")
        entries = classify_monthly_balances(
            [
                {"month": 1, "year": 2024, "opening_balance": "1,000", "closing_balance": "1,500.00"},
                {"month": "February", "year": "2024", "closing_balance": 2000},
            ],
            period,
            date(2024, 2, 29),
        )

        assert [(e.month, e.scenario) for e in entries] == [
            (1, BalanceScenario.COMPLETE_MONTH),
            (2, BalanceScenario.COMPLETE_MONTH),
        ]
        assert entries[0].closing_balance == Decimal("1500.00")
        assert entries[0].opening_balance == Decimal("1000")
        assert all(e.is_complete for e in entries)

    def test_final_month_incomplete_when_gap_exceeds_threshold(self):
        """A last transaction far before period end makes the final month incomplete."""
        period = parse_statement_period("01/03/2024 - 31/03/2024")
        entries = classify_monthly_balances(
            [{"month": 3, "year": 2024, "closing_balance": "5,000"}],
            period,
            date(2024, 3, 20),
            incomplete_threshold_days=5,
        )

        entry = entries[0]
        assert entry.scenario == BalanceScenario.INCOMPLETE_MONTH
        assert entry.closing_balance is None
        assert entry.is_complete is False
        assert "11 days" in entry.notes

    def test_model_flag_forces_incomplete_regardless_of_balance(self):
        """A model-flagged incomplete month drops whatever balance came with it."""
        period = parse_statement_period("March 2024")
        entries = classify_monthly_balances(
            [
                {
                    "month": 3,
                    "year": 2024,
                    "closing_balance": "9,999",
                    "is_complete": True,
                    "balance_scenario": "INCOMPLETE_MONTH",
                }
            ],
            period,
            date(2024, 3, 31),
        )

        assert entries[0].scenario == BalanceScenario.INCOMPLETE_MONTH
        assert entries[0].closing_balance is None
        assert entries[0].is_complete is False

    def test_final_month_early_end_within_threshold(self):
        """A small gap before period end is an early end, still trusted."""
        period = parse_statement_period("01/03/2024 - 31/03/2024")
        entries = classify_monthly_balances(
            [{"month": 3, "year": 2024, "closing_balance": "5,000", "last_transaction_balance": "4,900"}],
            period,
            date(2024, 3, 28),
            incomplete_threshold_days=5,
        )

        entry = entries[0]
        assert entry.scenario == BalanceScenario.EARLY_END
        assert entry.closing_balance == Decimal("4900")
        assert entry.is_complete is True

    def test_middle_month_early_end(self):
        """A non-final month whose transactions stop before month end is an early end."""
        period = parse_statement_period("01/01/2024 - 29/02/2024")
        entries = classify_monthly_balances(
            [
                {"month": 1, "year": 2024, "closing_balance": "700", "closing_date": "2024-01-25"},
                {"month": 2, "year": 2024, "closing_balance": "800"},
            ],
            period,
            date(2024, 2, 29),
        )

        assert entries[0].scenario == BalanceScenario.EARLY_END
        assert entries[0].closing_balance == Decimal("700")
        assert entries[1].scenario == BalanceScenario.COMPLETE_MONTH

    def test_last_transaction_balance_fallback(self):
        """Without a printed closing balance the last transaction balance is used."""
        period = parse_statement_period("January - February 2024")
        entries = classify_monthly_balances(
            [
                {"month": 1, "year": 2024, "last_transaction_balance": "1,234.50"},
                {"month": 2, "year": 2024, "closing_balance": "900"},
            ],
            period,
            date(2024, 2, 29),
        )

        assert entries[0].scenario == BalanceScenario.LAST_TRANSACTION
        assert entries[0].closing_balance == Decimal("1234.50")
        assert entries[0].is_complete is True

    def test_no_balance_at_all(self):
        """A month with nothing usable has no scenario and no balance."""
        period = parse_statement_period("January - February 2024")
        entries = classify_monthly_balances(
            [{"month": 1, "year": 2024, "notes": "page missing"}, {"month": 2, "year": 2024, "closing_balance": "1"}],
            period,
            date(2024, 2, 29),
        )

        assert entries[0].scenario is None
        assert entries[0].closing_balance is None
        assert entries[0].is_complete is False
        assert entries[0].notes == "page missing"

    def test_fills_missing_period_months(self):
        """Months of the period the model skipped appear as empty entries."""
        period = parse_statement_period("January - March 2024")
        entries = classify_monthly_balances(
            [{"month": 1, "year": 2024, "closing_balance": "100"}, {"month": 3, "year": 2024, "closing_balance": "300"}],
            period,
            date(2024, 3, 31),
        )

        assert [(e.month, e.year) for e in entries] == [(1, 2024), (2, 2024), (3, 2024)]
        assert entries[1].scenario is None
        assert entries[1].closing_balance is None

    def test_discards_invalid_candidates(self):
        """Candidates with impossible months or years are dropped."""
        period = parse_statement_period("March 2024")
        entries = classify_monthly_balances(
            [
                {"month": 13, "year": 2024, "closing_balance": "1"},
                {"month": 3, "year": 1800, "closing_balance": "1"},
                {"month": None, "year": 2024, "closing_balance": "1"},
                {"month": 3, "year": 2024, "closing_balance": "42"},
            ],
            period,
            date(2024, 3, 31),
        )

        assert len(entries) == 1
        assert entries[0].closing_balance == Decimal("42")

    def test_unknown_period_uses_candidate_span(self):
        """Without a stated period the latest candidate month is treated as final."""
        entries = classify_monthly_balances(
            [
                {"month": 4, "year": 2024, "closing_balance": "10", "closing_date": "2024-04-10"},
                {"month": 3, "year": 2024, "closing_balance": "20"},
            ],
            None,
            None,
        )

        by_month = _by_month(entries)
        assert [(e.month, e.year) for e in entries] == [(3, 2024), (4, 2024)]
        assert by_month[(4, 2024)].scenario == BalanceScenario.INCOMPLETE_MONTH
        assert by_month[(3, 2024)].scenario == BalanceScenario.COMPLETE_MONTH

    def test_nothing_to_classify(self):
        """No candidates and no period gives an empty list."""
        assert classify_monthly_balances([], None, None) == []

    def test_period_without_candidates(self):
        """A known period with no candidates lists every month empty."""
        entries = classify_monthly_balances([], parse_statement_period("January - February 2024"), None)
        assert [(e.month, e.scenario) for e in entries] == [(1, None), (2, None)]

    def test_incomplete_invariant_holds_everywhere(self):
        """Every INCOMPLETE_MONTH output has no balance and is not complete."""
        period = parse_statement_period("January - March 2024")
        entries = classify_monthly_balances(
            [
                {"month": 1, "year": 2024, "closing_balance": "1", "scenario": "incomplete month"},
                {"month": 2, "year": 2024, "closing_balance": "2"},
                {"month": 3, "year": 2024, "closing_balance": "3"},
            ],
            period,
            date(2024, 3, 1),
        )

        incomplete = [e for e in entries if e.scenario == BalanceScenario.INCOMPLETE_MONTH]
        assert {(e.month, e.year) for e in incomplete} == {(1, 2024), (3, 2024)}
        assert all(e.closing_balance is None and not e.is_complete for e in incomplete)


class TestMergeCandidates:
    """Test merging of repeated month candidates."""

    def test_prefers_more_complete_candidate(self):
        """The candidate with more balance facts wins."""
        merged = merge_candidates(
            [
                RawMonthlyBalance(month=1, year=2024, closing_balance="100"),
                RawMonthlyBalance(month=1, year=2024, opening_balance="50", closing_balance="120"),
            ]
        )
        assert merged[(2024, 1)].closing_balance == Decimal("120")

    def test_merges_equal_candidates_field_by_field(self):
        """Ties keep the first value and fill its gaps from the second."""
        merged = merge_candidates(
            [
                RawMonthlyBalance(month=1, year=2024, closing_balance="100"),
                RawMonthlyBalance(month=1, year=2024, opening_balance="50", notes="second"),
            ]
        )
        entry = merged[(2024, 1)]
        assert entry.closing_balance == Decimal("100")
        assert entry.opening_balance == Decimal("50")
        assert entry.notes == "second"
