"""Progress tracking for extraction batches.

Bulk runs report per-document progress here so the HTTP layer can poll it.
Entries expire after a TTL so abandoned batches do not pile up.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

_batch_progress: dict[str, dict[str, Any]] = {}
_progress_lock = threading.Lock()

# Entries older than this are dropped (15 minutes)
PROGRESS_TTL_SECONDS = 900


def _cleanup_stale_entries(now: float) -> None:
    stale = [
        batch_id
        for batch_id, data in _batch_progress.items()
        if now - data.get("_created_at", 0) > PROGRESS_TTL_SECONDS
    ]
    for batch_id in stale:
        del _batch_progress[batch_id]
        logger.debug("Dropped stale progress for batch %s", batch_id)


def start_batch(batch_id: str, total: int) -> None:
    """Register a new batch of `total` documents."""
    now = time.time()
    with _progress_lock:
        _cleanup_stale_entries(now)
        _batch_progress[batch_id] = {
            "status": "processing",
            "total": total,
            "completed": 0,
            "failed": 0,
            "progress": 0,
            "message": f"Queued {total} documents",
            "current_document": None,
            "details": {},
            "timestamp": datetime.now().isoformat(),
            "_created_at": now,
        }
    logger.info("[PROGRESS] batch %s started with %d documents", batch_id, total)


def update_progress(
    batch_id: str,
    message: str,
    *,
    document: str | None = None,
    completed: int | None = None,
    failed: int | None = None,
    status: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Record a progress message for a batch.

    Args:
        batch_id: Identifier returned to the caller when the batch started
        message: Human-readable status message
        document: Document currently being processed
        completed: Number of documents finished so far
        failed: Number of documents that ended in failure
        status: "processing", "complete", "cancelled" or "error"
        details: Optional extra data
    """
    with _progress_lock:
        entry = _batch_progress.setdefault(
            batch_id,
            {"status": "processing", "total": 0, "completed": 0, "failed": 0, "_created_at": time.time()},
        )
        if completed is not None:
            entry["completed"] = completed
        if failed is not None:
            entry["failed"] = failed
        if status is not None:
            entry["status"] = status
        if document is not None:
            entry["current_document"] = document
        if details:
            entry["details"] = {**entry.get("details", {}), **details}
        total = entry.get("total") or 0
        entry["progress"] = int(entry["completed"] * 100 / total) if total else 0
        entry["message"] = message
        entry["timestamp"] = datetime.now().isoformat()
        progress = entry["progress"]

    logger.info("[PROGRESS] %s -> %d%% - %s", batch_id, progress, message)


def get_progress(batch_id: str) -> dict[str, Any] | None:
    """Current progress of a batch without internal fields, or None if unknown."""
    with _progress_lock:
        data = _batch_progress.get(batch_id)
        if data is None:
            return None
        return {k: v for k, v in data.items() if not k.startswith("_")}


def clear_progress(batch_id: str) -> None:
    with _progress_lock:
        if _batch_progress.pop(batch_id, None) is not None:
            logger.debug("Cleared progress for batch %s", batch_id)


def get_active_batches() -> list[str]:
    """Batches still processing."""
    with _progress_lock:
        return [batch_id for batch_id, data in _batch_progress.items() if data.get("status") == "processing"]
