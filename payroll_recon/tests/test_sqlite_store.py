"""Tests for the SQLite record store."""

from decimal import Decimal

import pytest

from payroll_recon.db.sqlite import RecordStore
from payroll_recon.models import BankStatementRecord, PayrollRecord, StatementType


@pytest.fixture
def store(tmp_path):
    return RecordStore(tmp_path / "test.db")


class TestPayrollRecords:
    """Test payroll record persistence."""

    def test_round_trip(self, store):
        """Should store and load a payroll record."""
        record = PayrollRecord(
            id="rec1",
            company_name="Acme Ltd",
            period="2024-02",
            documents={"paye_receipt": "receipts/paye.pdf"},
            extractions={"paye_receipt": {"amount": "1,200"}},
        )
        store.upsert_payroll_record(record)

        assert store.get_payroll_record("rec1") == record

    def test_unknown_record(self, store):
        """Unknown ids return None."""
        assert store.get_payroll_record("nope") is None

    def test_list_by_period(self, store):
        """Should filter by period and sort by company."""
        store.upsert_payroll_record(PayrollRecord(id="b", company_name="Beta", period="2024-02"))
        store.upsert_payroll_record(PayrollRecord(id="a", company_name="Alpha", period="2024-02"))
        store.upsert_payroll_record(PayrollRecord(id="c", company_name="Gamma", period="2024-03"))

        assert [r.id for r in store.list_payroll_records("2024-02")] == ["a", "b"]
        assert len(store.list_payroll_records()) == 3

    def test_upsert_replaces(self, store):
        """A second upsert overwrites the record."""
        store.upsert_payroll_record(PayrollRecord(id="a", company_name="Old", period="2024-02"))
        store.upsert_payroll_record(PayrollRecord(id="a", company_name="New", period="2024-02"))
        assert store.get_payroll_record("a").company_name == "New"


class TestBankStatements:
    """Test bank statement persistence."""

    def test_round_trip_and_filter(self, store):
        """Should store statements and filter by cycle month."""
        store.upsert_bank_statement(
            BankStatementRecord(
                id="s1",
                company_name="Acme",
                statement_month=2,
                statement_year=2024,
                statement_type=StatementType.RANGE,
                statement_pdf="range.pdf",
                password="secret",
            )
        )
        store.upsert_bank_statement(BankStatementRecord(id="s2", statement_month=3, statement_year=2024))

        loaded = store.get_bank_statement("s1")
        assert loaded.statement_type == StatementType.RANGE
        assert loaded.password == "secret"
        assert [s.id for s in store.list_bank_statements(month=2, year=2024)] == ["s1"]
        assert [s.id for s in store.list_bank_statements(year=2024)] == ["s1", "s2"]


class TestExtractionsColumn:
    """Test whole-object reads and writes of extractions."""

    def test_write_and_read(self, store):
        """Decimal values are stored as JSON-safe values."""
        store.upsert_bank_statement(BankStatementRecord(id="s1", statement_month=1, statement_year=2024))
        assert store.write_extractions("bank_statement", "s1", {"closing_balance": Decimal("12.50")}) is True
        assert store.read_extractions("bank_statement", "s1") == {"closing_balance": "12.50"}

    def test_write_to_unknown_record(self, store):
        """Writing to a missing record reports False."""
        assert store.write_extractions("payroll", "ghost", {"a": 1}) is False
        assert store.read_extractions("payroll", "ghost") == {}
