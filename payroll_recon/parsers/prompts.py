"""Prompt templates for statement and receipt extraction."""

import calendar

from payroll_recon.models import FieldSpec, PaymentMode


def build_statement_prompt(
    document_text: str | None,
    *,
    target_month: int | None = None,
    target_year: int | None = None,
    embedding_status: str | None = None,
    excerpts: list[str] | None = None,
    incomplete_threshold_days: int = 5,
) -> str:
    """
    Prompt asking for one JSON object describing a bank statement.

    `excerpts` are the indexed chunks closest to the month-end balance and
    are placed ahead of the full document text.
    """
    if target_month and target_year:
        focus = f"The statement is filed under {calendar.month_name[target_month]} {target_year}."
    else:
        focus = "The statement may cover one or several months."

    source = (
        f"**Document Text:**\n{document_text}"
        if document_text
        else "**Document:** the attached image of the statement."
    )
    embeddings = f"\n**Embeddings Status:** {embedding_status}\n" if embedding_status else ""
    highlighted = ""
    if excerpts:
        joined = "\n...\n".join(excerpts)
        highlighted = f"\n**Most Relevant Excerpts (closing balance):**\n{joined}\n"

    return f"""You are a bank statement analyzer. Extract the information below from the statement.
{focus}

**CLOSING BALANCE SCENARIOS:**

1. Complete month: the period ends on the last day of the month and has transactions on or near that date.
   Extract the final closing balance.
2. Incomplete month: the last transaction is more than {incomplete_threshold_days} days before the period end.
   Set closing_balance to null and balance_scenario to "INCOMPLETE_MONTH".
3. Early period end: the period ends on the 30th but the last transaction is on the 25th.
   Report the balance after the last transaction as last_transaction_balance and note the discrepancy.
4. Multiple months: report each month's opening and closing balance separately.
5. No printed month-end balance: leave closing_balance null and give last_transaction_balance.

**JSON Response Format (respond with ONLY valid JSON):**
{{
  "bank_name": "string | null",
  "account_number": "string | null",
  "company_name": "string | null",
  "currency": "string | null",
  "statement_period": "DD/MM/YYYY - DD/MM/YYYY",
  "statement_period_adjusted": "string | null",
  "period_adjustment_reason": "string | null",
  "opening_balance": "number | null",
  "closing_balance": "number | null",
  "last_transaction_date": "DD/MM/YYYY | null",
  "monthly_balances": [
    {{
      "month": "number (1-12)",
      "year": "number",
      "opening_balance": "number | null",
      "closing_balance": "number | null",
      "last_transaction_balance": "number | null",
      "closing_date": "DD/MM/YYYY | null",
      "balance_scenario": "COMPLETE_MONTH | INCOMPLETE_MONTH | EARLY_END | LAST_TRANSACTION | null",
      "is_complete": true,
      "statement_page": "number",
      "notes": "string | null"
    }}
  ],
  "extraction_confidence": "HIGH | MEDIUM | LOW",
  "data_quality_issues": ["strings describing any issues"],
  "total_pages_analyzed": "number"
}}

**RULES:**
- Numbers without currency symbols or thousands separators.
- Prefer actual transaction dates over the stated period end.
- If a month is incomplete, its closing_balance MUST be null.
{embeddings}{highlighted}
{source}
"""


def build_receipt_prompt(fields: list[FieldSpec], document_text: str | None = None) -> str:
    """Prompt asking for the requested receipt fields as one JSON object."""
    modes = " | ".join(f'"{mode.value}"' for mode in PaymentMode)
    lines = []
    for spec in fields:
        hint = {"number": "number as text", "date": "YYYY-MM-DD"}.get(spec.type, "string")
        if spec.name == "payment_mode":
            hint = modes
        required = "" if spec.required else " | null"
        lines.append(f'  "{spec.name}": "{hint}{required}"')
    schema = ",\n".join(lines + ['  "extraction_confidence": "HIGH | MEDIUM | LOW"'])

    source = f"Receipt text:\n{document_text}" if document_text else "The receipt is attached as an image."

    return f"""Extract payment details from this tax payment receipt.

Respond with ONLY a JSON object:
{{
{schema}
}}

Rules:
- amount: the total amount paid, digits only (thousands separators allowed).
- payment_mode: "Mpesa" for M-PESA / mobile money payments, otherwise "Bank Transfer".
- bank_name: the paying bank for bank transfers; "N/A" for Mpesa.
- Use null for anything not shown on the receipt.

{source}
"""
