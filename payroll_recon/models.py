"""Data models for the payroll reconciliation engine."""

import calendar
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ExtractionMode(str, Enum):
    """Kind of document being extracted."""

    PAYMENT_RECEIPT = "payment_receipt"
    BANK_STATEMENT = "bank_statement"


class BatchMode(str, Enum):
    """Which documents a bulk run picks up."""

    ALL = "all"
    MISSING = "missing"  # No extraction saved yet
    FAILED = "failed"  # Saved extraction is incomplete


class BalanceScenario(str, Enum):
    """How far a month's closing balance can be trusted."""

    COMPLETE_MONTH = "COMPLETE_MONTH"
    INCOMPLETE_MONTH = "INCOMPLETE_MONTH"
    EARLY_END = "EARLY_END"
    LAST_TRANSACTION = "LAST_TRANSACTION"


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class PaymentMode(str, Enum):
    """Closed set of payment modes on tax receipts."""

    MPESA = "Mpesa"
    BANK_TRANSFER = "Bank Transfer"


class StatementType(str, Enum):
    MONTHLY = "monthly"
    RANGE = "range"


class TaxType(BaseModel):
    """A statutory deduction with its own payment receipt."""

    id: str
    label: str

    @property
    def receipt_type(self) -> str:
        return f"{self.id}_receipt"


TAX_TYPES = [
    TaxType(id="paye", label="PAYE"),
    TaxType(id="housing_levy", label="Hs. Levy"),
    TaxType(id="nita", label="NITA"),
    TaxType(id="shif", label="SHIF"),
    TaxType(id="nssf", label="NSSF"),
]


class StatementPeriod(BaseModel):
    """A parsed statement period, always ordered start <= end."""

    model_config = ConfigDict(frozen=True)

    raw: str
    start_month: int = Field(ge=1, le=12)
    start_year: int = Field(gt=1900)
    end_month: int = Field(ge=1, le=12)
    end_year: int = Field(gt=1900)
    # Only known when the source string carries day precision
    start_date: date | None = None
    end_date: date | None = None

    @model_validator(mode="before")
    @classmethod
    def _swap_reversed(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        try:
            start = int(data["start_year"]) * 12 + int(data["start_month"])
            end = int(data["end_year"]) * 12 + int(data["end_month"])
        except (KeyError, TypeError, ValueError):
            return data
        if end < start:
            data = dict(data)
            data["start_month"], data["end_month"] = data["end_month"], data["start_month"]
            data["start_year"], data["end_year"] = data["end_year"], data["start_year"]
            data["start_date"], data["end_date"] = data.get("end_date"), data.get("start_date")
        return data

    @property
    def start_index(self) -> int:
        return self.start_year * 12 + self.start_month

    @property
    def end_index(self) -> int:
        return self.end_year * 12 + self.end_month

    @property
    def month_count(self) -> int:
        return self.end_index - self.start_index + 1

    @property
    def period_start(self) -> date:
        return self.start_date or date(self.start_year, self.start_month, 1)

    @property
    def period_end(self) -> date:
        """Stated end of the period, defaulting to the end month's last day."""
        if self.end_date:
            return self.end_date
        last_day = calendar.monthrange(self.end_year, self.end_month)[1]
        return date(self.end_year, self.end_month, last_day)

    def contains(self, month: int, year: int) -> bool:
        return self.start_index <= year * 12 + month <= self.end_index

    def is_final_month(self, month: int, year: int) -> bool:
        return (month, year) == (self.end_month, self.end_year)


class MonthEntry(BaseModel):
    """One month of a statement with its classified closing balance."""

    model_config = ConfigDict(frozen=True)

    month: int = Field(ge=1, le=12)
    year: int
    opening_balance: Decimal | None = None
    closing_balance: Decimal | None = None
    is_complete: bool = False
    scenario: BalanceScenario | None = None
    notes: str | None = None
    closing_date: date | None = None
    statement_page: int | None = None

    @model_validator(mode="after")
    def _incomplete_month_has_no_closing_balance(self) -> "MonthEntry":
        if self.scenario == BalanceScenario.INCOMPLETE_MONTH and (
            self.closing_balance is not None or self.is_complete
        ):
            raise ValueError("INCOMPLETE_MONTH entries must have no closing balance and is_complete=False")
        return self

    @property
    def key(self) -> tuple[int, int]:
        return (self.year, self.month)


class FieldSpec(BaseModel):
    """A field the model is asked to extract."""

    name: str
    type: str = "string"  # string | number | date
    required: bool = False


RECEIPT_FIELDS = [
    FieldSpec(name="amount", type="string", required=True),
    FieldSpec(name="payment_date", type="date", required=True),
    FieldSpec(name="payment_mode", type="string", required=True),
    FieldSpec(name="bank_name", type="string", required=False),
]


class ExtractionRequest(BaseModel):
    """One document to extract. Either `path` or `content` must be set."""

    document_id: str
    mode: ExtractionMode
    path: str | None = None
    content: bytes | None = None
    filename: str | None = None
    password: str | None = None
    fields: list[FieldSpec] = Field(default_factory=list)
    label: str | None = None
    # Cycle month the caller is reconciling, 1-12
    target_month: int | None = Field(default=None, ge=1, le=12)
    target_year: int | None = None

    @model_validator(mode="after")
    def _has_source(self) -> "ExtractionRequest":
        if self.path is None and self.content is None:
            raise ValueError("ExtractionRequest needs a storage path or raw content")
        return self

    @property
    def display_name(self) -> str:
        return self.filename or self.path or self.document_id


class FieldError(BaseModel):
    field: str
    error: str


class ValidationReport(BaseModel):
    """Outcome of validating an extraction; never blocks on its own."""

    is_valid: bool
    errors: list[FieldError] = Field(default_factory=list)

    @property
    def messages(self) -> list[str]:
        return [error.error for error in self.errors]


class ExtractionResult(BaseModel):
    """Normalized outcome of one ExtractionRequest."""

    document_id: str
    success: bool
    fields: dict[str, Any] = Field(default_factory=dict)
    confidence: Confidence = Confidence.LOW
    quality_issues: list[str] = Field(default_factory=list)
    requires_password: bool = False
    monthly_balances: list[MonthEntry] = Field(default_factory=list)
    statement_period: StatementPeriod | None = None
    validation_errors: list[str] = Field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    attempts: int = 1

    @classmethod
    def failure(
        cls,
        document_id: str,
        error: str,
        kind: str,
        *,
        requires_password: bool = False,
        attempts: int = 1,
    ) -> "ExtractionResult":
        return cls(
            document_id=document_id,
            success=False,
            error=error,
            error_kind=kind,
            requires_password=requires_password,
            quality_issues=[error],
            attempts=attempts,
        )


class PayrollRecord(BaseModel):
    """A company's payroll cycle with its uploaded tax receipts."""

    id: str
    company_name: str = "Unknown"
    period: str = ""  # YYYY-MM
    documents: dict[str, str | None] = Field(default_factory=dict)
    extractions: dict[str, dict[str, Any]] = Field(default_factory=dict)


class BankStatementRecord(BaseModel):
    """A bank statement assigned to one calendar month."""

    id: str
    company_name: str = "Unknown"
    statement_month: int = Field(ge=1, le=12)
    statement_year: int
    statement_type: StatementType = StatementType.MONTHLY
    statement_pdf: str | None = None
    statement_excel: str | None = None
    password: str | None = None
    extractions: dict[str, Any] = Field(default_factory=dict)

    @property
    def file_key(self) -> tuple[str | None, str | None]:
        return (self.statement_pdf, self.statement_excel)


class ProcessedDocument(BaseModel):
    """An extraction result tied back to the record that owns the document."""

    record_id: str
    company_name: str
    document_type: str
    path: str | None = None
    result: ExtractionResult


# API request models


class PeriodParseRequest(BaseModel):
    text: str
    month: int | None = Field(default=None, ge=1, le=12)
    year: int | None = None


class PeriodParseResponse(BaseModel):
    period: StatementPeriod | None
    months: list[tuple[int, int]] = Field(default_factory=list)
    is_valid: bool | None = None
    message: str | None = None


class StatementBatchRequest(BaseModel):
    period: str  # YYYY-MM
    statement_ids: list[str]
    namespace: str | None = None
    batch_id: str | None = None


class ReceiptBatchRequest(BaseModel):
    period: str  # YYYY-MM
    record_ids: list[str]
    mode: BatchMode = BatchMode.ALL
    namespace: str | None = None
    batch_id: str | None = None


class SaveReviewRequest(BaseModel):
    kind: Literal["payroll", "bank_statement"] = "payroll"
    record_id: str
    document_type: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    block_invalid: bool = False
