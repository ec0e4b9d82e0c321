"""Batch drivers tying records, dedup, cache and the orchestrator together."""

import asyncio
import logging
from pathlib import PurePosixPath

from payroll_recon.models import (
    TAX_TYPES,
    BankStatementRecord,
    BatchMode,
    ExtractionMode,
    ExtractionRequest,
    ExtractionResult,
    PayrollRecord,
    ProcessedDocument,
    TaxType,
)
from payroll_recon.parsers.validation import find_statement_mismatches, is_extraction_complete
from payroll_recon.services.cache import ExtractionCache, fingerprint
from payroll_recon.services.dedup import group_statements_by_files
from payroll_recon.services.extraction import BulkProgressCallback, ExtractionOrchestrator

logger = logging.getLogger(__name__)


def _filename(path: str | None) -> str | None:
    return PurePosixPath(path).name if path else None


def _result_for_month(
    result: ExtractionResult, request: ExtractionRequest, statement: BankStatementRecord
) -> ExtractionResult:
    """
    Copy of a shared statement result carrying this statement's month balance.

    The closing balance comes from the classified entry for the statement's
    own month. A month with no entry gets None and a quality issue, except
    for the month the extraction targeted, which the orchestrator already
    resolved.
    """
    if not result.success:
        return result.model_copy(deep=True)

    month, year = statement.statement_month, statement.statement_year
    if (month, year) == (request.target_month, request.target_year):
        return result.model_copy(deep=True)

    entry = next((e for e in result.monthly_balances if (e.month, e.year) == (month, year)), None)
    closing_balance = entry.closing_balance if entry is not None else None

    issues = list(result.quality_issues)
    mismatches = find_statement_mismatches(result.fields, cycle_month=month, cycle_year=year)
    if "Statement period mismatch" in mismatches:
        issues.append(f"Statement period '{result.fields.get('statement_period')}' does not cover {month}/{year}")
    elif entry is None:
        issues.append(f"No closing balance extracted for {month}/{year}")

    fields = {**result.fields, "closing_balance": closing_balance}
    return result.model_copy(update={"fields": fields, "quality_issues": issues}, deep=True)


def _cacheable(processed: list[ProcessedDocument], cancel_event: asyncio.Event | None) -> bool:
    """Only complete runs are cached: not cancelled and every document extracted."""
    if cancel_event is not None and cancel_event.is_set():
        return False
    return bool(processed) and all(doc.result.success for doc in processed)


async def extract_bank_statements(
    orchestrator: ExtractionOrchestrator,
    statements: list[BankStatementRecord],
    *,
    period: str,
    cache: ExtractionCache | None = None,
    namespace: str | None = None,
    on_progress: BulkProgressCallback | None = None,
    cancel_event: asyncio.Event | None = None,
    batch_id: str | None = None,
    max_retries: int | None = None,
    retry_delay: float | None = None,
) -> list[ProcessedDocument]:
    """
    Extract a selection of bank statements.

    Statements sharing the same PDF/Excel pair are extracted once and the
    result is fanned out to each of them, with the closing balance picked
    for each statement's own month. A repeated selection is served from
    `cache` without touching the model.

    Returns:
        One ProcessedDocument per statement that has files
    """
    key = fingerprint(period, [s.id for s in statements], ExtractionMode.BANK_STATEMENT, namespace)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            logger.info("Using cached statement extraction for %s", key)
            return cached

    groups = group_statements_by_files(statements)
    requests = []
    for file_key, members in groups.items():
        lead = members[0]
        path = lead.statement_pdf or lead.statement_excel
        password = next((member.password for member in members if member.password), None)
        requests.append(
            ExtractionRequest(
                document_id=file_key,
                mode=ExtractionMode.BANK_STATEMENT,
                path=path,
                filename=_filename(path),
                password=password,
                label=lead.company_name,
                target_month=lead.statement_month,
                target_year=lead.statement_year,
            )
        )

    results = await orchestrator.process_bulk(
        requests,
        on_progress,
        cancel_event=cancel_event,
        batch_id=batch_id,
        max_retries=max_retries,
        retry_delay=retry_delay,
    )

    processed = []
    for (members, request), result in zip(zip(groups.values(), requests), results):
        for statement in members:
            processed.append(
                ProcessedDocument(
                    record_id=statement.id,
                    company_name=statement.company_name,
                    document_type=ExtractionMode.BANK_STATEMENT.value,
                    path=request.path,
                    result=_result_for_month(result, request, statement),
                )
            )

    if cache is not None and _cacheable(processed, cancel_event):
        cache.put(key, processed)
    return processed


def select_receipt_documents(
    records: list[PayrollRecord],
    mode: BatchMode,
    tax_types: list[TaxType] | None = None,
) -> list[tuple[PayrollRecord, TaxType, str]]:
    """
    Receipts to extract for a batch mode.

    `missing` skips receipts that already have an extraction; `failed` skips
    receipts whose extraction is complete (so it also picks up missing ones).
    """
    selected = []
    for record in records:
        for tax in tax_types or TAX_TYPES:
            path = record.documents.get(tax.receipt_type)
            if not path:
                continue
            existing = record.extractions.get(tax.receipt_type)
            if mode == BatchMode.MISSING and existing:
                continue
            if mode == BatchMode.FAILED and is_extraction_complete(existing):
                continue
            selected.append((record, tax, path))
    return selected


async def extract_payment_receipts(
    orchestrator: ExtractionOrchestrator,
    records: list[PayrollRecord],
    *,
    period: str,
    mode: BatchMode = BatchMode.ALL,
    cache: ExtractionCache | None = None,
    namespace: str | None = None,
    tax_types: list[TaxType] | None = None,
    on_progress: BulkProgressCallback | None = None,
    cancel_event: asyncio.Event | None = None,
    batch_id: str | None = None,
    max_retries: int | None = None,
    retry_delay: float | None = None,
) -> list[ProcessedDocument]:
    """Extract the tax payment receipts of a payroll selection."""
    key = fingerprint(period, [record.id for record in records], mode.value, namespace)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            logger.info("Using cached receipt extraction for %s", key)
            return cached

    selected = select_receipt_documents(records, mode, tax_types)
    if not selected:
        logger.info("No receipts to extract for %d records in %s mode", len(records), mode.value)
        return []

    requests = [
        ExtractionRequest(
            document_id=f"{record.id}:{tax.receipt_type}",
            mode=ExtractionMode.PAYMENT_RECEIPT,
            path=path,
            filename=_filename(path),
            label=f"{record.company_name} {tax.label}",
        )
        for record, tax, path in selected
    ]

    results = await orchestrator.process_bulk(
        requests,
        on_progress,
        cancel_event=cancel_event,
        batch_id=batch_id,
        max_retries=max_retries,
        retry_delay=retry_delay,
    )

    processed = [
        ProcessedDocument(
            record_id=record.id,
            company_name=record.company_name,
            document_type=tax.receipt_type,
            path=path,
            result=result,
        )
        for (record, tax, path), result in zip(selected, results)
    ]

    if cache is not None and _cacheable(processed, cancel_event):
        cache.put(key, processed)
    return processed
