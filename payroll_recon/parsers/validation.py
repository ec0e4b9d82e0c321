"""Validation utilities for extracted receipt and statement fields."""

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from payroll_recon.exceptions import DocumentError
from payroll_recon.models import FieldError, PaymentMode, ValidationReport
from payroll_recon.parsers.date_range import is_period_contained

# Configure logging for parsers
logger = logging.getLogger("payroll_recon.parsers")

PAYMENT_MODES = [mode.value for mode in PaymentMode]

_CURRENCY_TOKEN = re.compile(r"(?i)\b(?:k\.?shs?|kes|usd|eur|gbp|sh)\b\.?|[$€£]")

_DATE_FORMATS = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d-%b-%Y",
    "%d/%m/%y",
]

_CURRENCY_ALIASES = {
    "EURO": "EUR",
    "EUROS": "EUR",
    "US DOLLAR": "USD",
    "US DOLLARS": "USD",
    "USDOLLAR": "USD",
    "US$": "USD",
    "$": "USD",
    "POUND": "GBP",
    "POUNDS": "GBP",
    "STERLING": "GBP",
    "KENYA SHILLING": "KES",
    "KENYA SHILLINGS": "KES",
    "KENYAN SHILLING": "KES",
    "KENYAN SHILLINGS": "KES",
    "KSH": "KES",
    "K.SH": "KES",
    "KSHS": "KES",
    "K.SHS": "KES",
    "SH": "KES",
}

_MOBILE_MONEY_HINTS = ("mpesa", "m-pesa", "safaricom", "mobile money")
_BANK_HINTS = ("bank", "transfer", "deposit", "cheque", "swift", "rtgs", "eft")


def validate_file_contents(contents: bytes, min_size: int = 10) -> None:
    """
    Validate file contents before extraction.

    Args:
        contents: Raw file bytes
        min_size: Minimum expected file size in bytes

    Raises:
        DocumentError: If the file is empty or truncated
    """
    if not contents:
        raise DocumentError("File is empty")

    if len(contents) < min_size:
        raise DocumentError(f"File too small ({len(contents)} bytes), minimum {min_size} bytes expected")


def validate_amount(amount: Decimal | None, min_val: int = -10**12, max_val: int = 10**12) -> bool:
    """Check that an amount is finite and within sane bounds."""
    if amount is None:
        return False

    if not amount.is_finite():
        return False

    return min_val <= amount <= max_val


def clean_amount_string(amount_str: str) -> str:
    """
    Clean an amount string for parsing.

    Strips currency codes and symbols, whitespace and thousands separators.
    Parentheses and trailing minus signs become a leading minus.
    """
    if not amount_str:
        return ""

    cleaned = _CURRENCY_TOKEN.sub("", amount_str)
    cleaned = cleaned.replace(" ", "").replace(",", "").strip()

    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = "-" + cleaned[1:-1]

    if cleaned.endswith("-"):
        cleaned = "-" + cleaned[:-1]

    return cleaned


def parse_amount_safe(value: Any, default: Decimal | None = None) -> tuple[Decimal | None, bool]:
    """
    Safely parse an amount coming from the model.

    Args:
        value: Raw amount (string, int, float or Decimal)
        default: Value returned when parsing fails

    Returns:
        Tuple of (parsed amount, success flag)
    """
    if value is None or isinstance(value, bool):
        return default, False

    try:
        if isinstance(value, (int, float, Decimal)):
            amount = Decimal(str(value))
        else:
            cleaned = clean_amount_string(str(value))
            if not cleaned or cleaned == "-":
                return default, False
            amount = Decimal(cleaned)
    except (InvalidOperation, ValueError):
        return default, False

    if not validate_amount(amount):
        return default, False

    return amount, True


def parse_date_safe(value: Any) -> date | None:
    """Parse a date in any of the formats statements and receipts use."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = " ".join(str(value).split())
    if not text:
        return None

    # ISO timestamps ("2024-05-01T00:00:00Z")
    if re.match(r"^\d{4}-\d{2}-\d{2}T", text):
        text = text[:10]

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_currency_code(code: str | None, default: str = "KES") -> str:
    """Map free-form currency labels (KSH, Kshs, US Dollars...) to ISO codes."""
    if not code:
        return default
    upper = " ".join(code.upper().split())
    return _CURRENCY_ALIASES.get(upper, upper)


def determine_payment_mode(text: str | None) -> str | None:
    """Guess the payment mode from receipt text. Returns None when unclear."""
    if not text:
        return None
    lowered = text.lower()
    if any(hint in lowered for hint in _MOBILE_MONEY_HINTS):
        return PaymentMode.MPESA.value
    if any(hint in lowered for hint in _BANK_HINTS):
        return PaymentMode.BANK_TRANSFER.value
    return None


def normalize_payment_mode(value: Any) -> str | None:
    """Coerce model spellings ("MPESA", "bank", "bank transfer") onto PaymentMode values."""
    if value is None:
        return None
    text = str(value).strip()
    if text in PAYMENT_MODES:
        return text
    return determine_payment_mode(text) or text or None


def validate_extraction(fields: dict[str, Any]) -> ValidationReport:
    """
    Validate an extracted payment receipt.

    The input mapping is never modified; callers decide whether a failing
    report blocks a save or is only shown as a warning.

    Args:
        fields: Extracted fields (amount, payment_date, payment_mode, bank_name)

    Returns:
        ValidationReport with one FieldError per failing field
    """
    errors: list[FieldError] = []

    amount = fields.get("amount")
    if amount is None or (isinstance(amount, str) and not amount.strip()):
        errors.append(FieldError(field="amount", error="Amount is required"))
    else:
        _, ok = parse_amount_safe(amount)
        if not ok:
            errors.append(FieldError(field="amount", error=f"Amount '{amount}' is not a valid number"))

    payment_date = fields.get("payment_date")
    if payment_date is None or (isinstance(payment_date, str) and not payment_date.strip()):
        errors.append(FieldError(field="payment_date", error="Payment date is required"))
    elif parse_date_safe(payment_date) is None:
        errors.append(FieldError(field="payment_date", error=f"Payment date '{payment_date}' is not a valid date"))

    payment_mode = fields.get("payment_mode")
    if not payment_mode:
        errors.append(FieldError(field="payment_mode", error="Payment mode is required"))
    elif payment_mode not in PAYMENT_MODES:
        errors.append(
            FieldError(
                field="payment_mode",
                error=f"Payment mode must be one of {', '.join(PAYMENT_MODES)}",
            )
        )

    if payment_mode == PaymentMode.BANK_TRANSFER.value:
        bank_name = fields.get("bank_name")
        if not bank_name or not str(bank_name).strip():
            errors.append(FieldError(field="bank_name", error="Bank name is required for Bank Transfer payments"))

    if errors:
        logger.debug("Extraction failed validation: %s", [error.field for error in errors])

    return ValidationReport(is_valid=not errors, errors=errors)


def is_extraction_complete(fields: dict[str, Any] | None) -> bool:
    """True when amount, payment date and payment mode are all present."""
    if not fields:
        return False
    return all(fields.get(name) for name in ("amount", "payment_date", "payment_mode"))


def find_statement_mismatches(
    fields: dict[str, Any],
    *,
    expected_currency: str | None = None,
    cycle_month: int | None = None,
    cycle_year: int | None = None,
) -> list[str]:
    """Compare an extracted bank statement against the account it was filed under."""
    mismatches = []

    currency = fields.get("currency")
    if currency and expected_currency:
        if normalize_currency_code(currency) != normalize_currency_code(expected_currency):
            mismatches.append("Currency mismatch")

    period = fields.get("statement_period")
    if period and cycle_month and cycle_year:
        if not is_period_contained(period, cycle_month, cycle_year):
            mismatches.append("Statement period mismatch")

    return mismatches
