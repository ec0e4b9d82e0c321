"""Review of extraction results before they are saved.

A review session is an immutable snapshot. Every user action goes through
`reduce_review`, which returns a new snapshot and leaves the old one intact.
"""

import logging
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

from payroll_recon.db.sqlite import RecordKind, RecordStore
from payroll_recon.exceptions import DocumentError, ValidationFailure
from payroll_recon.models import ProcessedDocument, ValidationReport
from payroll_recon.parsers.validation import validate_extraction

logger = logging.getLogger(__name__)


class ReviewDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_id: str
    document_type: str
    path: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    dirty: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.record_id, self.document_type)

    @property
    def is_receipt(self) -> bool:
        return self.document_type.endswith("_receipt")

    def validate_fields(self) -> ValidationReport:
        if not self.is_receipt:
            return ValidationReport(is_valid=True)
        return validate_extraction(self.fields)


class ReviewSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    documents: tuple[ReviewDocument, ...] = ()
    version: int = 0

    @classmethod
    def from_processed(cls, processed: list[ProcessedDocument]) -> "ReviewSession":
        """Start a session from batch output; failed extractions start with empty fields."""
        return cls(
            documents=tuple(
                ReviewDocument(
                    record_id=doc.record_id,
                    document_type=doc.document_type,
                    path=doc.path,
                    fields=dict(doc.result.fields) if doc.result.success else {},
                )
                for doc in processed
            )
        )

    def get(self, record_id: str, document_type: str) -> ReviewDocument | None:
        return next((doc for doc in self.documents if doc.key == (record_id, document_type)), None)

    @property
    def dirty_documents(self) -> list[ReviewDocument]:
        return [doc for doc in self.documents if doc.dirty]


class EditField(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_id: str
    document_type: str
    field: str
    value: Any = None


class ReplaceDocument(BaseModel):
    """Swap in a newly uploaded file and its fresh extraction."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    document_type: str
    path: str
    fields: dict[str, Any] = Field(default_factory=dict)


class MarkSaved(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_id: str
    document_type: str


ReviewAction = Union[EditField, ReplaceDocument, MarkSaved]


def _replace(state: ReviewSession, key: tuple[str, str], update: dict[str, Any]) -> ReviewSession:
    documents = []
    found = False
    for doc in state.documents:
        if doc.key == key:
            documents.append(doc.model_copy(update=update))
            found = True
        else:
            documents.append(doc)
    if not found:
        logger.warning("Review action for unknown document %s/%s ignored", *key)
        return state
    return state.model_copy(update={"documents": tuple(documents), "version": state.version + 1})


def reduce_review(state: ReviewSession, action: ReviewAction) -> ReviewSession:
    """Apply one action and return the new session state."""
    if not isinstance(action, (EditField, ReplaceDocument, MarkSaved)):
        raise TypeError(f"Unknown review action: {type(action).__name__}")
    key = (action.record_id, action.document_type)

    if isinstance(action, EditField):
        current = state.get(*key)
        if current is None:
            logger.warning("Edit for unknown document %s/%s ignored", *key)
            return state
        return _replace(state, key, {"fields": {**current.fields, action.field: action.value}, "dirty": True})

    if isinstance(action, ReplaceDocument):
        return _replace(state, key, {"path": action.path, "fields": dict(action.fields), "dirty": True})

    return _replace(state, key, {"dirty": False})


def merge_extractions(existing: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """
    Merge updates into a stored extractions object without mutating either.

    Nested objects (one per document type) are merged key by key; any other
    value is replaced.
    """
    merged = dict(existing)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def save_review(
    store: RecordStore,
    kind: RecordKind,
    record_id: str,
    fields: dict[str, Any],
    document_type: str | None = None,
    block_invalid: bool = False,
) -> ValidationReport:
    """
    Persist reviewed fields for one record.

    Reads the record's whole extractions object, merges in memory and writes
    it back whole. Receipt fields are validated. A failing report is logged
    and returned unless block_invalid is set, in which case nothing is written.

    Raises:
        DocumentError: If the record does not exist
        ValidationFailure: If block_invalid is set and the fields fail validation
    """
    if document_type and document_type.endswith("_receipt"):
        report = validate_extraction(fields)
    else:
        report = ValidationReport(is_valid=True)

    if block_invalid and not report.is_valid:
        raise ValidationFailure(f"Fields for {record_id}/{document_type} failed validation", errors=report.messages)

    updates = {document_type: fields} if document_type else fields
    merged = merge_extractions(store.read_extractions(kind, record_id), updates)
    if not store.write_extractions(kind, record_id, merged):
        raise DocumentError(f"{kind} record {record_id} not found", source=record_id)

    if not report.is_valid:
        logger.warning("Saved %s/%s with validation errors: %s", record_id, document_type, report.messages)
    return report


def save_session(
    store: RecordStore, state: ReviewSession, kind: RecordKind
) -> tuple[ReviewSession, dict[tuple[str, str], ValidationReport]]:
    """Save every dirty document of a session and mark it saved."""
    reports = {}
    for doc in state.dirty_documents:
        reports[doc.key] = save_review(
            store,
            kind,
            doc.record_id,
            doc.fields,
            document_type=doc.document_type if kind == "payroll" else None,
        )
        state = reduce_review(state, MarkSaved(record_id=doc.record_id, document_type=doc.document_type))
    return state, reports
