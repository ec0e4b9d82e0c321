"""SQLite record store for payroll cycles and bank statements."""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Literal

from pydantic_core import to_jsonable_python

from payroll_recon.config import settings
from payroll_recon.models import BankStatementRecord, PayrollRecord, StatementType

logger = logging.getLogger(__name__)

RecordKind = Literal["payroll", "bank_statement"]

_TABLES: dict[str, str] = {"payroll": "payroll_records", "bank_statement": "bank_statements"}

# SQL schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS payroll_records (
    id TEXT PRIMARY KEY,
    company_name TEXT NOT NULL,
    period TEXT NOT NULL,
    documents TEXT NOT NULL DEFAULT '{}',
    extractions TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_payroll_records_period ON payroll_records(period);

CREATE TABLE IF NOT EXISTS bank_statements (
    id TEXT PRIMARY KEY,
    company_name TEXT NOT NULL,
    statement_month INTEGER NOT NULL,
    statement_year INTEGER NOT NULL,
    statement_type TEXT NOT NULL DEFAULT 'monthly',
    statement_pdf TEXT,
    statement_excel TEXT,
    password TEXT,
    extractions TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_bank_statements_cycle ON bank_statements(statement_year, statement_month);
"""


def _dump(value: dict[str, Any]) -> str:
    return json.dumps(to_jsonable_python(value))


def _load(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring corrupt JSON column value")
        return {}
    return data if isinstance(data, dict) else {}


class RecordStore:
    """
    SQLite-backed store of payroll and bank statement records.

    The `extractions` column is always read and written as one whole JSON
    object; merging happens in memory before `write_extractions`.
    """

    def __init__(self, db_path: Path | None = None):
        if db_path is None:
            settings.ensure_directories()
        self.db_path = db_path or settings.db_path
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def upsert_payroll_record(self, record: PayrollRecord) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO payroll_records (id, company_name, period, documents, extractions)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    company_name = excluded.company_name,
                    period = excluded.period,
                    documents = excluded.documents,
                    extractions = excluded.extractions,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (record.id, record.company_name, record.period, _dump(record.documents), _dump(record.extractions)),
            )
            conn.commit()

    def get_payroll_record(self, record_id: str) -> PayrollRecord | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM payroll_records WHERE id = ?", (record_id,)).fetchone()
            return self._row_to_payroll_record(row) if row else None

    def list_payroll_records(self, period: str | None = None) -> list[PayrollRecord]:
        """Records for a "YYYY-MM" period, or all records."""
        with self._get_connection() as conn:
            if period:
                rows = conn.execute(
                    "SELECT * FROM payroll_records WHERE period = ? ORDER BY company_name", (period,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM payroll_records ORDER BY period, company_name").fetchall()
            return [self._row_to_payroll_record(row) for row in rows]

    def upsert_bank_statement(self, statement: BankStatementRecord) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO bank_statements (id, company_name, statement_month, statement_year,
                statement_type, statement_pdf, statement_excel, password, extractions)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    company_name = excluded.company_name,
                    statement_month = excluded.statement_month,
                    statement_year = excluded.statement_year,
                    statement_type = excluded.statement_type,
                    statement_pdf = excluded.statement_pdf,
                    statement_excel = excluded.statement_excel,
                    password = excluded.password,
                    extractions = excluded.extractions,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    statement.id,
                    statement.company_name,
                    statement.statement_month,
                    statement.statement_year,
                    statement.statement_type.value,
                    statement.statement_pdf,
                    statement.statement_excel,
                    statement.password,
                    _dump(statement.extractions),
                ),
            )
            conn.commit()

    def get_bank_statement(self, statement_id: str) -> BankStatementRecord | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM bank_statements WHERE id = ?", (statement_id,)).fetchone()
            return self._row_to_bank_statement(row) if row else None

    def list_bank_statements(self, month: int | None = None, year: int | None = None) -> list[BankStatementRecord]:
        query = "SELECT * FROM bank_statements"
        conditions, params = [], []
        if month is not None:
            conditions.append("statement_month = ?")
            params.append(month)
        if year is not None:
            conditions.append("statement_year = ?")
            params.append(year)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY statement_year, statement_month, company_name"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_bank_statement(row) for row in rows]

    def read_extractions(self, kind: RecordKind, record_id: str) -> dict[str, Any]:
        """Whole `extractions` object of a record ({} if the record is unknown)."""
        with self._get_connection() as conn:
            row = conn.execute(f"SELECT extractions FROM {_TABLES[kind]} WHERE id = ?", (record_id,)).fetchone()
            return _load(row["extractions"]) if row else {}

    def write_extractions(self, kind: RecordKind, record_id: str, extractions: dict[str, Any]) -> bool:
        """Replace the whole `extractions` object. Returns False if the record does not exist."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE {_TABLES[kind]} SET extractions = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (_dump(extractions), record_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                logger.warning("No %s record %s to write extractions to", kind, record_id)
                return False
            return True

    def _row_to_payroll_record(self, row: sqlite3.Row) -> PayrollRecord:
        return PayrollRecord(
            id=row["id"],
            company_name=row["company_name"],
            period=row["period"],
            documents=_load(row["documents"]),
            extractions=_load(row["extractions"]),
        )

    def _row_to_bank_statement(self, row: sqlite3.Row) -> BankStatementRecord:
        return BankStatementRecord(
            id=row["id"],
            company_name=row["company_name"],
            statement_month=row["statement_month"],
            statement_year=row["statement_year"],
            statement_type=StatementType(row["statement_type"]),
            statement_pdf=row["statement_pdf"],
            statement_excel=row["statement_excel"],
            password=row["password"],
            extractions=_load(row["extractions"]),
        )
