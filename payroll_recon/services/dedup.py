"""Deduplication of extraction work across statements and uploads."""

import hashlib
import logging
from collections import OrderedDict

from payroll_recon.models import BankStatementRecord

logger = logging.getLogger(__name__)


def compute_file_hash(contents: bytes) -> str:
    """Compute SHA256 hash of file contents."""
    return hashlib.sha256(contents).hexdigest()


def statement_file_key(statement: BankStatementRecord) -> str:
    """
    Key identifying the underlying files of a statement.

    Statements filed under different months can point at the same PDF/Excel
    pair (a range statement uploaded once). They share one key.
    """
    return f"{statement.statement_pdf or 'no-pdf'}_{statement.statement_excel or 'no-excel'}"


def group_statements_by_files(
    statements: list[BankStatementRecord],
) -> OrderedDict[str, list[BankStatementRecord]]:
    """
    Group statements that reference identical document paths.

    Each group is one unit of extraction work; its result is fanned out to
    every member. Groups keep the order in which their first member appeared.
    Statements with no files at all are left out.
    """
    groups: OrderedDict[str, list[BankStatementRecord]] = OrderedDict()
    for statement in statements:
        if not statement.statement_pdf and not statement.statement_excel:
            logger.debug("Statement %s has no files, skipping", statement.id)
            continue
        groups.setdefault(statement_file_key(statement), []).append(statement)

    shared = sum(len(members) - 1 for members in groups.values())
    if shared:
        logger.info("Deduplicated %d statements into %d extraction units", len(statements), len(groups))
    return groups
