"""FastAPI application for the payroll reconciliation engine."""

import logging
import uuid

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from payroll_recon.config import settings
from payroll_recon.db.blob_store import LocalDocumentStore
from payroll_recon.db.sqlite import RecordStore
from payroll_recon.db.vector import ChunkIndex
from payroll_recon.exceptions import DocumentError, ValidationFailure
from payroll_recon.models import (
    ExtractionMode,
    ExtractionRequest,
    ExtractionResult,
    PeriodParseRequest,
    PeriodParseResponse,
    ProcessedDocument,
    ReceiptBatchRequest,
    SaveReviewRequest,
    StatementBatchRequest,
    ValidationReport,
)
from payroll_recon.parsers.date_range import parse_statement_period, validate_statement_period_range
from payroll_recon.parsers.month_range import generate_period_months
from payroll_recon.parsers.validation import validate_extraction
from payroll_recon.services.batch import extract_bank_statements, extract_payment_receipts
from payroll_recon.services.cache import ExtractionCache
from payroll_recon.services.extraction import ExtractionOrchestrator
from payroll_recon.services.key_pool import KeyPool
from payroll_recon.services.progress import clear_progress, get_active_batches, get_progress
from payroll_recon.services.review import save_review

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Payroll Recon",
    description="Extraction and reconciliation of payroll receipts and bank statements",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    """Build the shared key pool, stores and orchestrator."""
    settings.ensure_directories()
    settings.log_config()

    key_pool = KeyPool.from_settings()
    document_store = LocalDocumentStore()
    app.state.key_pool = key_pool
    app.state.records = RecordStore()
    app.state.cache = ExtractionCache()
    app.state.chunk_index = ChunkIndex(key_pool) if settings.enable_embeddings else None
    app.state.orchestrator = ExtractionOrchestrator(
        key_pool,
        document_store=document_store,
        chunk_index=app.state.chunk_index,
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "api_keys": len(app.state.key_pool),
        "active_batches": len(get_active_batches()),
        "cache": app.state.cache.stats()["size"],
        "indexed_chunks": app.state.chunk_index.get_collection_count() if app.state.chunk_index else 0,
    }


@app.post("/periods/parse", response_model=PeriodParseResponse)
async def parse_period(request: PeriodParseRequest):
    """Parse a statement period and optionally check it covers a cycle month."""
    period = parse_statement_period(request.text)
    months = [(entry.month, entry.year) for entry in generate_period_months(period)]

    if request.month and request.year:
        is_valid, message, _ = validate_statement_period_range(request.text, request.month, request.year)
        return PeriodParseResponse(period=period, months=months, is_valid=is_valid, message=message)
    return PeriodParseResponse(period=period, months=months)


@app.post("/receipts/validate", response_model=ValidationReport)
async def validate_receipt(fields: dict):
    """Validate receipt fields without saving them."""
    return validate_extraction(fields)


@app.post("/extract", response_model=ExtractionResult)
async def extract_document(
    file: UploadFile = File(...),
    mode: ExtractionMode = Form(ExtractionMode.PAYMENT_RECEIPT),
    password: str | None = Form(None),
    target_month: int | None = Form(None),
    target_year: int | None = Form(None),
):
    """Extract a single uploaded receipt or statement."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="No filename provided")

    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=400, detail="Empty file")

    try:
        request = ExtractionRequest(
            document_id=uuid.uuid4().hex,
            mode=mode,
            content=contents,
            filename=file.filename,
            password=password,
            target_month=target_month,
            target_year=target_year,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return await app.state.orchestrator.extract(request)


@app.post("/extract/bank-statements", response_model=list[ProcessedDocument])
async def extract_statements(request: StatementBatchRequest):
    """Extract the selected bank statements, deduplicating shared files."""
    statements = [app.state.records.get_bank_statement(statement_id) for statement_id in request.statement_ids]
    missing = [sid for sid, statement in zip(request.statement_ids, statements) if statement is None]
    if missing:
        raise HTTPException(status_code=404, detail=f"Unknown bank statements: {', '.join(missing)}")

    return await extract_bank_statements(
        app.state.orchestrator,
        statements,
        period=request.period,
        cache=app.state.cache,
        namespace=request.namespace,
        batch_id=request.batch_id,
    )


@app.post("/extract/receipts", response_model=list[ProcessedDocument])
async def extract_receipts(request: ReceiptBatchRequest):
    """Extract tax payment receipts for the selected payroll records."""
    records = [app.state.records.get_payroll_record(record_id) for record_id in request.record_ids]
    missing = [rid for rid, record in zip(request.record_ids, records) if record is None]
    if missing:
        raise HTTPException(status_code=404, detail=f"Unknown payroll records: {', '.join(missing)}")

    return await extract_payment_receipts(
        app.state.orchestrator,
        records,
        period=request.period,
        mode=request.mode,
        cache=app.state.cache,
        namespace=request.namespace,
        batch_id=request.batch_id,
    )


@app.get("/progress/{batch_id}")
async def batch_progress(batch_id: str):
    """Progress of a running or recently finished batch."""
    progress = get_progress(batch_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Unknown batch")
    return progress


@app.delete("/progress/{batch_id}")
async def dismiss_progress(batch_id: str):
    """Forget a finished batch."""
    if get_progress(batch_id) is None:
        raise HTTPException(status_code=404, detail="Unknown batch")
    clear_progress(batch_id)
    return {"status": "cleared"}


@app.post("/review/save", response_model=ValidationReport)
async def save_reviewed_fields(request: SaveReviewRequest):
    """Merge reviewed fields into a record's stored extractions."""
    try:
        report = save_review(
            app.state.records,
            request.kind,
            request.record_id,
            request.fields,
            document_type=request.document_type,
            block_invalid=request.block_invalid,
        )
    except DocumentError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ValidationFailure as e:
        raise HTTPException(status_code=422, detail={"message": e.message, "errors": e.errors})

    app.state.cache.invalidate_record(request.record_id)
    return report


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "payroll_recon.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.dev_mode,
    )
