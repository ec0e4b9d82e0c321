"""Tests for the batch extraction drivers."""

import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from payroll_recon.config import Settings
from payroll_recon.db.blob_store import LocalDocumentStore
from payroll_recon.models import BankStatementRecord, BatchMode, PayrollRecord, TaxType
from payroll_recon.services.batch import (
    extract_bank_statements,
    extract_payment_receipts,
    select_receipt_documents,
)
from payroll_recon.services.cache import ExtractionCache, fingerprint
from payroll_recon.services.extraction import ExtractionOrchestrator
from payroll_recon.services.key_pool import KeyPool

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32

STATEMENT_JSON = json.dumps(
    {
        "bank_name": "Equity",
        "currency": "KES",
        "statement_period": "01/01/2024 - 29/02/2024",
        "last_transaction_date": "29/02/2024",
        "monthly_balances": [
            {"month": 1, "year": 2024, "closing_balance": "10,000"},
            {"month": 2, "year": 2024, "closing_balance": "12,500"},
        ],
    }
)

RECEIPT_JSON = json.dumps(
    {"amount": "5,000", "payment_date": "2024-02-09", "payment_mode": "Bank Transfer", "bank_name": "KCB"}
)

COMPLETE = {"amount": "1", "payment_date": "2024-01-01", "payment_mode": "Mpesa"}


def _response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def store_root(tmp_path):
    for path in ("statements/range.png", "statements/other.png", "receipts/paye.png", "receipts/nita.png"):
        target = tmp_path / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(PNG)
    return tmp_path


@pytest.fixture
def orchestrator(store_root):
    config = Settings(enable_embeddings=False, bulk_max_retries=0, bulk_retry_delay_seconds=0.0)
    return ExtractionOrchestrator(KeyPool(["k1"]), document_store=LocalDocumentStore(store_root), config=config)


def _statement(statement_id, month, pdf):
    return BankStatementRecord(
        id=statement_id, company_name="Acme Ltd", statement_month=month, statement_year=2024, statement_pdf=pdf
    )


def _payroll(record_id="rec1", extractions=None):
    return PayrollRecord(
        id=record_id,
        company_name="Acme Ltd",
        period="2024-02",
        documents={"paye_receipt": "receipts/paye.png", "nita_receipt": "receipts/nita.png", "shif_receipt": None},
        extractions=extractions or {},
    )


@pytest.mark.asyncio
class TestExtractBankStatements:
    """Test statement batches with dedup and caching."""

    async def test_shared_file_extracted_once(self, orchestrator):
        """Two statements on the same file cost one model call and both get results."""
        statements = [_statement("jan", 1, "statements/range.png"), _statement("feb", 2, "statements/range.png")]
        mock = AsyncMock(return_value=_response(STATEMENT_JSON))
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            processed = await extract_bank_statements(orchestrator, statements, period="2024-02")

        assert mock.await_count == 1
        assert [doc.record_id for doc in processed] == ["jan", "feb"]
        assert processed[0].result.fields["closing_balance"] == Decimal("10000")
        assert processed[1].result.fields["closing_balance"] == Decimal("12500")
        assert all(doc.path == "statements/range.png" for doc in processed)
        assert all(doc.document_type == "bank_statement" for doc in processed)

    async def test_fanned_out_results_are_independent(self, orchestrator):
        """Editing one statement's result must not change the other's."""
        statements = [_statement("jan", 1, "statements/range.png"), _statement("feb", 2, "statements/range.png")]
        with patch(
            "payroll_recon.parsers.llm_client.acompletion", new=AsyncMock(return_value=_response(STATEMENT_JSON))
        ):
            processed = await extract_bank_statements(orchestrator, statements, period="2024-02")

        processed[0].result.fields["bank_name"] = "Edited"
        assert processed[1].result.fields["bank_name"] == "Equity"

    async def test_distinct_files_extracted_separately(self, orchestrator):
        """Different files are separate extraction units."""
        statements = [_statement("a", 1, "statements/range.png"), _statement("b", 1, "statements/other.png")]
        mock = AsyncMock(return_value=_response(STATEMENT_JSON))
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            processed = await extract_bank_statements(orchestrator, statements, period="2024-01")

        assert mock.await_count == 2
        assert len(processed) == 2

    async def test_repeat_request_served_from_cache(self, orchestrator):
        """An identical repeat request never calls the model again."""
        cache = ExtractionCache()
        statements = [_statement("jan", 1, "statements/range.png"), _statement("feb", 2, "statements/range.png")]
        mock = AsyncMock(return_value=_response(STATEMENT_JSON))
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            first = await extract_bank_statements(orchestrator, statements, period="2024-02", cache=cache)
            second = await extract_bank_statements(
                orchestrator, list(reversed(statements)), period="2024-02", cache=cache
            )

        assert mock.await_count == 1
        assert [doc.record_id for doc in second] == [doc.record_id for doc in first]
        assert cache.stats()["hits"] == 1

    async def test_namespaces_do_not_share_cache(self, orchestrator):
        """Sessions with different namespaces each pay for their own extraction."""
        cache = ExtractionCache()
        statements = [_statement("jan", 1, "statements/range.png")]
        mock = AsyncMock(return_value=_response(STATEMENT_JSON))
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            await extract_bank_statements(orchestrator, statements, period="2024-01", cache=cache, namespace="u1")
            await extract_bank_statements(orchestrator, statements, period="2024-01", cache=cache, namespace="u2")

        assert mock.await_count == 2

    async def test_failed_runs_are_not_cached(self, orchestrator):
        """A run with no successful result is not cached."""
        cache = ExtractionCache()
        statements = [_statement("jan", 1, "statements/range.png")]
        with patch("payroll_recon.parsers.llm_client.acompletion", new=AsyncMock(return_value=_response("oops"))):
            processed = await extract_bank_statements(orchestrator, statements, period="2024-01", cache=cache)

        assert processed[0].result.success is False
        assert cache.stats()["size"] == 0

    async def test_cancelled_runs_are_not_cached(self, orchestrator):
        """A run cancelled part way is not cached, so repeating it extracts the rest."""
        cache = ExtractionCache()
        statements = [_statement("a", 1, "statements/range.png"), _statement("b", 1, "statements/other.png")]
        cancel = asyncio.Event()
        mock = AsyncMock(return_value=_response(STATEMENT_JSON))
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            first = await extract_bank_statements(
                orchestrator,
                statements,
                period="2024-01",
                cache=cache,
                on_progress=lambda done, total, result: cancel.set(),
                cancel_event=cancel,
            )
            second = await extract_bank_statements(orchestrator, statements, period="2024-01", cache=cache)

        assert first[1].result.error_kind == "cancelled"
        assert [doc.result.success for doc in second] == [True, True]
        assert mock.await_count == 3

    async def test_partly_failed_runs_are_not_cached(self, orchestrator):
        """One failed document keeps the whole run out of the cache."""
        cache = ExtractionCache()
        statements = [_statement("a", 1, "statements/range.png"), _statement("b", 1, "statements/other.png")]
        mock = AsyncMock(side_effect=[_response(STATEMENT_JSON), _response("oops")])
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            processed = await extract_bank_statements(orchestrator, statements, period="2024-01", cache=cache)

        assert [doc.result.success for doc in processed] == [True, False]
        assert cache.stats()["size"] == 0

    async def test_month_outside_shared_period_gets_no_balance(self, orchestrator):
        """A statement whose month the shared file does not cover gets None and a flag."""
        statements = [_statement("jan", 1, "statements/range.png"), _statement("mar", 3, "statements/range.png")]
        with patch(
            "payroll_recon.parsers.llm_client.acompletion", new=AsyncMock(return_value=_response(STATEMENT_JSON))
        ):
            processed = await extract_bank_statements(orchestrator, statements, period="2024-03")

        assert processed[0].result.fields["closing_balance"] == Decimal("10000")
        march = processed[1].result
        assert march.success is True
        assert march.fields["closing_balance"] is None
        assert any("does not cover 3/2024" in issue for issue in march.quality_issues)
        assert not any("does not cover" in issue for issue in processed[0].result.quality_issues)

    async def test_statements_without_files_are_skipped(self, orchestrator):
        """Statements with no documents produce no results."""
        statement = BankStatementRecord(id="empty", statement_month=1, statement_year=2024)
        mock = AsyncMock()
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            processed = await extract_bank_statements(orchestrator, [statement], period="2024-01")

        assert processed == []
        mock.assert_not_awaited()


class TestSelectReceiptDocuments:
    """Test batch mode selection."""

    def test_all_mode_takes_every_uploaded_receipt(self):
        """ALL picks every receipt with a file, skipping empty slots."""
        selected = select_receipt_documents([_payroll()], BatchMode.ALL)
        assert [tax.id for _, tax, _ in selected] == ["paye", "nita"]

    def test_missing_mode_skips_existing(self):
        """MISSING skips receipts that already have an extraction."""
        record = _payroll(extractions={"paye_receipt": {"amount": "1"}})
        selected = select_receipt_documents([record], BatchMode.MISSING)
        assert [tax.id for _, tax, _ in selected] == ["nita"]

    def test_failed_mode_redoes_incomplete(self):
        """FAILED picks incomplete and missing extractions, not complete ones."""
        record = _payroll(extractions={"paye_receipt": COMPLETE, "nita_receipt": {"amount": "1"}})
        selected = select_receipt_documents([record], BatchMode.FAILED)
        assert [tax.id for _, tax, _ in selected] == ["nita"]

        record = _payroll(extractions={"paye_receipt": COMPLETE})
        selected = select_receipt_documents([record], BatchMode.FAILED)
        assert [tax.id for _, tax, _ in selected] == ["nita"]

    def test_custom_tax_types(self):
        """Only the requested tax types are considered."""
        selected = select_receipt_documents([_payroll()], BatchMode.ALL, [TaxType(id="nita", label="NITA")])
        assert [path for _, _, path in selected] == ["receipts/nita.png"]


@pytest.mark.asyncio
class TestExtractPaymentReceipts:
    """Test receipt batches."""

    async def test_extracts_selected_receipts(self, orchestrator):
        """Each selected receipt gets a result tied to its record and type."""
        mock = AsyncMock(return_value=_response(RECEIPT_JSON))
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            processed = await extract_payment_receipts(orchestrator, [_payroll()], period="2024-02")

        assert mock.await_count == 2
        assert [(doc.record_id, doc.document_type) for doc in processed] == [
            ("rec1", "paye_receipt"),
            ("rec1", "nita_receipt"),
        ]
        assert processed[0].result.document_id == "rec1:paye_receipt"
        assert processed[0].result.fields["bank_name"] == "KCB"
        assert processed[0].result.validation_errors == []

    async def test_nothing_selected(self, orchestrator):
        """A mode that selects nothing returns no results without calling the model."""
        record = _payroll(extractions={"paye_receipt": COMPLETE, "nita_receipt": COMPLETE})
        mock = AsyncMock()
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            processed = await extract_payment_receipts(orchestrator, [record], period="2024-02", mode=BatchMode.FAILED)

        assert processed == []
        mock.assert_not_awaited()

    async def test_cache_keyed_by_mode(self, orchestrator):
        """Different batch modes are cached separately."""
        cache = ExtractionCache()
        mock = AsyncMock(return_value=_response(RECEIPT_JSON))
        with patch("payroll_recon.parsers.llm_client.acompletion", new=mock):
            await extract_payment_receipts(orchestrator, [_payroll()], period="2024-02", cache=cache)
            await extract_payment_receipts(orchestrator, [_payroll()], period="2024-02", cache=cache)
            await extract_payment_receipts(
                orchestrator, [_payroll()], period="2024-02", cache=cache, mode=BatchMode.MISSING
            )

        assert mock.await_count == 4
        assert sorted(cache.stats()["keys"]) == [
            fingerprint("2024-02", ["rec1"], "all"),
            fingerprint("2024-02", ["rec1"], "missing"),
        ]
