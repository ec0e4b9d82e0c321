"""Pydantic adapters for model JSON output.

Model responses are loosely typed: numbers arrive as "1,234.00", months as
"03" or "March", dates in several formats. These models coerce what they can
and turn the rest into None, so nothing unvalidated leaves the model adapter.
"""

from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from payroll_recon.models import BalanceScenario, Confidence
from payroll_recon.parsers.date_range import get_month_number
from payroll_recon.parsers.validation import parse_amount_safe, parse_date_safe


def _to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    return get_month_number(text)


def _to_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "n/a"):
        return None
    return text


class RawMonthlyBalance(BaseModel):
    """One month's balance candidate as reported by the model."""

    model_config = ConfigDict(extra="ignore")

    month: int | None = None
    year: int | None = None
    opening_balance: Decimal | None = None
    closing_balance: Decimal | None = None
    last_transaction_balance: Decimal | None = None
    closing_date: date | None = None
    scenario: BalanceScenario | None = Field(
        default=None, validation_alias=AliasChoices("balance_scenario", "scenario")
    )
    is_complete: bool | None = None
    statement_page: int | None = None
    notes: str | None = None

    @field_validator("month", "year", "statement_page", mode="before")
    @classmethod
    def _coerce_int(cls, value: Any) -> int | None:
        return _to_int(value)

    @field_validator("opening_balance", "closing_balance", "last_transaction_balance", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal | None:
        amount, _ = parse_amount_safe(value)
        return amount

    @field_validator("closing_date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> date | None:
        return parse_date_safe(value)

    @field_validator("scenario", mode="before")
    @classmethod
    def _coerce_scenario(cls, value: Any) -> str | None:
        text = _to_str(value)
        if text is None:
            return None
        text = text.upper().replace(" ", "_")
        return text if text in BalanceScenario.__members__ else None

    @field_validator("is_complete", mode="before")
    @classmethod
    def _coerce_bool(cls, value: Any) -> bool | None:
        if value is None or isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("true", "yes", "1")

    @field_validator("notes", mode="before")
    @classmethod
    def _coerce_notes(cls, value: Any) -> str | None:
        return _to_str(value)

    @property
    def completeness(self) -> int:
        """How many balance facts this candidate carries."""
        return sum(
            value is not None
            for value in (self.opening_balance, self.closing_balance, self.last_transaction_balance, self.closing_date)
        )


class RawStatementExtraction(BaseModel):
    """Bank statement fields as reported by the model."""

    model_config = ConfigDict(extra="ignore")

    bank_name: str | None = None
    account_number: str | None = None
    company_name: str | None = None
    currency: str | None = None
    statement_period: str | None = None
    statement_period_adjusted: str | None = None
    period_adjustment_reason: str | None = None
    opening_balance: Decimal | None = None
    closing_balance: Decimal | None = None
    last_transaction_date: date | None = None
    monthly_balances: list[RawMonthlyBalance] = Field(default_factory=list)
    extraction_confidence: Confidence = Confidence.MEDIUM
    data_quality_issues: list[str] = Field(default_factory=list)
    total_pages_analyzed: int | None = None

    @field_validator(
        "bank_name",
        "account_number",
        "company_name",
        "currency",
        "statement_period",
        "statement_period_adjusted",
        "period_adjustment_reason",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return _to_str(value)

    @field_validator("opening_balance", "closing_balance", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal | None:
        amount, _ = parse_amount_safe(value)
        return amount

    @field_validator("last_transaction_date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> date | None:
        return parse_date_safe(value)

    @field_validator("monthly_balances", mode="before")
    @classmethod
    def _coerce_balances(cls, value: Any) -> list:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @field_validator("extraction_confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> str:
        text = (_to_str(value) or "").upper()
        return text if text in Confidence.__members__ else Confidence.MEDIUM.value

    @field_validator("data_quality_issues", mode="before")
    @classmethod
    def _coerce_issues(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value if item]

    @field_validator("total_pages_analyzed", mode="before")
    @classmethod
    def _coerce_pages(cls, value: Any) -> int | None:
        return _to_int(value)

    @property
    def effective_period(self) -> str | None:
        return self.statement_period_adjusted or self.statement_period


class RawReceiptExtraction(BaseModel):
    """Payment receipt fields as reported by the model.

    Extra keys requested through a custom field schema are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    amount: str | None = None
    payment_date: str | None = None
    payment_mode: str | None = None
    bank_name: str | None = None
    extraction_confidence: Confidence = Confidence.MEDIUM

    @field_validator("amount", "payment_date", "payment_mode", "bank_name", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return _to_str(value)

    @field_validator("extraction_confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> str:
        text = (_to_str(value) or "").upper()
        return text if text in Confidence.__members__ else Confidence.MEDIUM.value

    def fields(self) -> dict[str, Any]:
        """Extracted values without the confidence marker."""
        return self.model_dump(exclude={"extraction_confidence"})
