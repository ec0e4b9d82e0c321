"""Extraction orchestration: document in, normalized ExtractionResult out."""

import asyncio
import calendar
import logging
import uuid
from collections.abc import Callable
from typing import Any

from payroll_recon.config import Settings, settings
from payroll_recon.db.blob_store import DocumentStore
from payroll_recon.db.vector import ChunkIndex
from payroll_recon.exceptions import DocumentError, PasswordProtected, ReconError
from payroll_recon.models import (
    RECEIPT_FIELDS,
    Confidence,
    ExtractionMode,
    ExtractionRequest,
    ExtractionResult,
    PaymentMode,
)
from payroll_recon.parsers.date_range import parse_statement_period, period_from_months
from payroll_recon.parsers.document_types import RawReceiptExtraction, RawStatementExtraction
from payroll_recon.parsers.llm_client import image_message, llm_extract_json, text_message
from payroll_recon.parsers.pdf_text import (
    build_document_text,
    chunk_text,
    detect_file_type,
    extract_page_texts,
    image_media_type,
)
from payroll_recon.parsers.prompts import build_receipt_prompt, build_statement_prompt
from payroll_recon.parsers.validation import (
    normalize_currency_code,
    normalize_payment_mode,
    validate_extraction,
    validate_file_contents,
)
from payroll_recon.services.balance_scenarios import classify_monthly_balances
from payroll_recon.services.key_pool import KeyPool
from payroll_recon.services.progress import start_batch, update_progress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]
BulkProgressCallback = Callable[[int, int, ExtractionResult], None]


def _noop(message: str) -> None:
    pass


class ExtractionOrchestrator:
    """
    Runs extraction for single documents and batches.

    The key pool, document store and chunk index are injected so tests and
    concurrent sessions can use their own.
    """

    def __init__(
        self,
        key_pool: KeyPool,
        *,
        document_store: DocumentStore | None = None,
        chunk_index: ChunkIndex | None = None,
        config: Settings | None = None,
    ):
        self._key_pool = key_pool
        self._store = document_store
        self._chunk_index = chunk_index
        self._config = config or settings

    async def extract(self, request: ExtractionRequest, on_progress: ProgressCallback | None = None) -> ExtractionResult:
        """
        Extract one document.

        Failures come back as a result with `success=False` and a message;
        a password problem sets `requires_password` and is never retried.
        """
        return await self._run(request, on_progress or _noop, max_retries=0, retry_delay=0.0)

    async def process_bulk(
        self,
        requests: list[ExtractionRequest],
        on_progress: BulkProgressCallback | None = None,
        *,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        concurrency: int | None = None,
        cancel_event: asyncio.Event | None = None,
        batch_id: str | None = None,
    ) -> list[ExtractionResult]:
        """
        Extract many documents, one result per request in request order.

        Sequential unless `concurrency` > 1. A failing document never stops
        the batch and this method never raises. Recoverable failures are
        retried up to `max_retries` times with exponential backoff starting
        at `retry_delay` seconds. Once `cancel_event` is set, documents not
        yet started come back as "cancelled" failures.

        Args:
            requests: Documents to extract
            on_progress: Called as (completed, total, result) after each document
            max_retries: Retries per document (defaults to Settings.bulk_max_retries)
            retry_delay: Base backoff delay in seconds (defaults to Settings.bulk_retry_delay_seconds)
            concurrency: Documents processed at once (defaults to Settings.bulk_concurrency)
            cancel_event: Set to abandon queued documents
            batch_id: Progress-tracking id (generated if omitted)

        Returns:
            List of ExtractionResult aligned with `requests`
        """
        max_retries = self._config.bulk_max_retries if max_retries is None else max_retries
        retry_delay = self._config.bulk_retry_delay_seconds if retry_delay is None else retry_delay
        concurrency = max(1, self._config.bulk_concurrency if concurrency is None else concurrency)
        batch_id = batch_id or uuid.uuid4().hex
        total = len(requests)

        start_batch(batch_id, total)
        results: list[ExtractionResult | None] = [None] * total
        counts = {"completed": 0, "failed": 0}

        async def process(index: int, request: ExtractionRequest) -> None:
            if cancel_event is not None and cancel_event.is_set():
                result = ExtractionResult.failure(request.document_id, "Extraction cancelled", "cancelled", attempts=0)
            else:

                def report(message: str) -> None:
                    update_progress(batch_id, f"[{index + 1}/{total}] {message}", document=request.display_name)

                result = await self._run(
                    request, report, max_retries=max_retries, retry_delay=retry_delay, cancel_event=cancel_event
                )

            results[index] = result
            counts["completed"] += 1
            if not result.success:
                counts["failed"] += 1
            update_progress(
                batch_id,
                f"{'Extracted' if result.success else 'Failed'} {request.display_name}",
                document=request.display_name,
                completed=counts["completed"],
                failed=counts["failed"],
            )
            if on_progress is not None:
                try:
                    on_progress(counts["completed"], total, result)
                except Exception:
                    logger.exception("Progress callback raised")

        if concurrency == 1:
            for index, request in enumerate(requests):
                await process(index, request)
        else:
            semaphore = asyncio.Semaphore(concurrency)

            async def bounded(index: int, request: ExtractionRequest) -> None:
                async with semaphore:
                    await process(index, request)

            await asyncio.gather(*(bounded(index, request) for index, request in enumerate(requests)))

        cancelled = cancel_event is not None and cancel_event.is_set()
        update_progress(
            batch_id,
            f"{'Cancelled' if cancelled else 'Finished'}: {total - counts['failed']}/{total} succeeded",
            status="cancelled" if cancelled else "complete",
        )
        return [result for result in results if result is not None]

    async def _run(
        self,
        request: ExtractionRequest,
        report: ProgressCallback,
        *,
        max_retries: int,
        retry_delay: float,
        cancel_event: asyncio.Event | None = None,
    ) -> ExtractionResult:
        """Extract with retries, turning every ReconError into a failure result."""
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._extract(request, report)
                result.attempts = attempt
                return result
            except PasswordProtected as e:
                report(f"{request.display_name}: {e.message}")
                return ExtractionResult.failure(
                    request.document_id, e.message, e.kind, requires_password=True, attempts=attempt
                )
            except ReconError as e:
                retry = e.recoverable and attempt <= max_retries
                if retry and cancel_event is not None and cancel_event.is_set():
                    retry = False
                logger.warning(
                    "Extraction of %s failed (attempt %d/%d): %s",
                    request.display_name,
                    attempt,
                    max_retries + 1,
                    e.message,
                )
                if not retry:
                    return ExtractionResult.failure(request.document_id, e.message, e.kind, attempts=attempt)
                wait = retry_delay * (2 ** (attempt - 1))
                report(f"Retrying {request.display_name} in {wait:.0f}s ({e.message})")
                await asyncio.sleep(wait)
            except Exception as e:
                logger.exception("Unexpected failure extracting %s", request.display_name)
                return ExtractionResult.failure(
                    request.document_id, f"Unexpected error: {e}", "unexpected", attempts=attempt
                )

    async def _load_contents(self, request: ExtractionRequest) -> bytes:
        if request.content is not None:
            return request.content
        if self._store is None:
            raise DocumentError("No document store configured to fetch " + str(request.path), source=request.path)
        try:
            return await self._store.download(request.path)
        except ReconError:
            raise
        except Exception as e:
            raise DocumentError(f"Failed to download {request.path}: {e}", source=request.path, recoverable=True) from e

    async def _embed(self, document_id: str, page_texts: dict[int, str], report: ProgressCallback) -> str | None:
        """Index page chunks for grounding. Failures only degrade the prompt."""
        if self._chunk_index is None or not self._config.enable_embeddings:
            return None
        chunks = chunk_text(page_texts, self._config.embedding_chunk_chars)
        report(f"Generating embeddings for {len(chunks)} chunks")
        try:
            summary = await self._chunk_index.index_document(document_id, chunks)
        except Exception as e:
            logger.warning("Embedding %s failed, continuing without it: %s", document_id, e)
            return "Failed to generate"
        return summary.describe()

    async def _balance_excerpts(self, request: ExtractionRequest) -> list[str]:
        """Indexed chunks of this document most likely to hold the month-end balance."""
        if self._chunk_index is None or not self._config.enable_embeddings:
            return []
        if request.target_month and request.target_year:
            query = f"closing balance {calendar.month_name[request.target_month]} {request.target_year}"
        else:
            query = "closing balance at month end"
        try:
            hits = await self._chunk_index.search(query, document_id=request.document_id, n_results=2)
        except Exception as e:
            logger.warning("Chunk search for %s failed: %s", request.document_id, e)
            return []
        return [hit["document"] for hit in hits if hit["document"]]

    async def _extract(self, request: ExtractionRequest, report: ProgressCallback) -> ExtractionResult:
        name = request.display_name
        report(f"Loading {name}")
        contents = await self._load_contents(request)
        validate_file_contents(contents)

        file_type = detect_file_type(request.filename or request.path, contents)
        document_text = None
        embedding_status = None
        excerpts: list[str] = []
        if file_type == "pdf":
            report(f"Reading pages of {name}")
            page_texts = extract_page_texts(contents, request.password, source=name)
            document_text = build_document_text(page_texts)
            embedding_status = await self._embed(request.document_id, page_texts, report)
            if request.mode == ExtractionMode.BANK_STATEMENT and embedding_status:
                excerpts = await self._balance_excerpts(request)

        if request.mode == ExtractionMode.BANK_STATEMENT:
            prompt = build_statement_prompt(
                document_text,
                target_month=request.target_month,
                target_year=request.target_year,
                embedding_status=embedding_status,
                excerpts=excerpts,
                incomplete_threshold_days=self._config.incomplete_month_threshold_days,
            )
        else:
            prompt = build_receipt_prompt(request.fields or RECEIPT_FIELDS, document_text)

        if document_text is None:
            messages = image_message(prompt, contents, image_media_type(request.filename or request.path, contents))
        else:
            messages = text_message(prompt)

        report(f"Analyzing {name}")
        if request.mode == ExtractionMode.BANK_STATEMENT:
            raw = await llm_extract_json(messages, RawStatementExtraction, self._key_pool)
            result = self._normalize_statement(request, raw)
        else:
            raw = await llm_extract_json(messages, RawReceiptExtraction, self._key_pool)
            result = self._normalize_receipt(request, raw)

        report(f"Extracted {name}")
        return result

    def _normalize_statement(self, request: ExtractionRequest, raw: RawStatementExtraction) -> ExtractionResult:
        issues = list(raw.data_quality_issues)
        period_text = raw.effective_period
        period = parse_statement_period(period_text)
        if period_text and period is None:
            issues.append(f"Could not parse statement period '{period_text}'")

        balances = classify_monthly_balances(
            raw.monthly_balances,
            period,
            raw.last_transaction_date,
            incomplete_threshold_days=self._config.incomplete_month_threshold_days,
        )

        if period is None and balances:
            period = period_from_months([(entry.month, entry.year) for entry in balances])
            if period is not None:
                period_text = period.raw
                issues.append("Statement period synthesized from monthly balances")

        closing_balance = raw.closing_balance
        if request.target_month and request.target_year:
            if period is not None and not period.contains(request.target_month, request.target_year):
                issues.append(
                    f"Statement period '{period_text}' does not include {request.target_month}/{request.target_year}"
                )
            target = next(
                (e for e in balances if (e.month, e.year) == (request.target_month, request.target_year)), None
            )
            if target is not None:
                closing_balance = target.closing_balance
        elif balances:
            closing_balance = balances[-1].closing_balance

        fields: dict[str, Any] = {
            "bank_name": raw.bank_name,
            "account_number": raw.account_number,
            "company_name": raw.company_name,
            "currency": normalize_currency_code(raw.currency) if raw.currency else None,
            "statement_period": period_text,
            "period_adjustment_reason": raw.period_adjustment_reason,
            "opening_balance": raw.opening_balance,
            "closing_balance": closing_balance,
            "last_transaction_date": raw.last_transaction_date.isoformat() if raw.last_transaction_date else None,
            "total_pages_analyzed": raw.total_pages_analyzed,
        }

        return ExtractionResult(
            document_id=request.document_id,
            success=True,
            fields=fields,
            confidence=raw.extraction_confidence,
            quality_issues=issues,
            monthly_balances=balances,
            statement_period=period,
        )

    def _normalize_receipt(self, request: ExtractionRequest, raw: RawReceiptExtraction) -> ExtractionResult:
        schema = request.fields or RECEIPT_FIELDS
        extracted = raw.fields()
        fields: dict[str, Any] = {spec.name: extracted.get(spec.name) for spec in schema}

        if "payment_mode" in fields:
            fields["payment_mode"] = normalize_payment_mode(fields["payment_mode"])
            if fields["payment_mode"] == PaymentMode.MPESA.value and not fields.get("bank_name"):
                fields["bank_name"] = "N/A"

        issues = [f"Required field '{spec.name}' not found" for spec in schema if spec.required and not fields[spec.name]]
        report = validate_extraction(fields)
        for message in report.messages:
            if message not in issues:
                issues.append(message)

        return ExtractionResult(
            document_id=request.document_id,
            success=True,
            fields=fields,
            confidence=raw.extraction_confidence if report.is_valid else Confidence.LOW,
            quality_issues=issues,
            validation_errors=report.messages,
        )
