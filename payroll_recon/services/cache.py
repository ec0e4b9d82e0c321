"""Session cache of batch extraction results.

A review session that re-runs "extract all" over the same selection gets the
stored results back instead of paying for the model calls again. Entries
live as long as the cache object and are never expired automatically.
"""

import json
import logging
import threading
from typing import Any

from payroll_recon.models import ExtractionMode, ProcessedDocument

logger = logging.getLogger(__name__)


def fingerprint(
    period: str,
    record_ids: list[str],
    mode: ExtractionMode | str,
    namespace: str | None = None,
) -> str:
    """
    Deterministic cache key for a batch request.

    Record order does not matter. `namespace` separates sessions that share
    one cache instance. The key is a JSON array, so ids containing commas or
    dashes cannot collide with a different selection.
    """
    mode_value = mode.value if isinstance(mode, ExtractionMode) else str(mode)
    return json.dumps([namespace, period, sorted(record_ids), mode_value])


class ExtractionCache:
    """In-memory mapping of fingerprint to processed documents."""

    def __init__(self) -> None:
        self._entries: dict[str, list[ProcessedDocument]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> list[ProcessedDocument] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            logger.debug("Cache hit for %s", key)
            return [doc.model_copy(deep=True) for doc in entry]

    def put(self, key: str, results: list[ProcessedDocument]) -> None:
        with self._lock:
            self._entries[key] = [doc.model_copy(deep=True) for doc in results]
        logger.debug("Cached %d results under %s", len(results), key)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Returns whether it existed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_record(self, record_id: str) -> int:
        """Drop every entry whose results mention `record_id` (after a save)."""
        with self._lock:
            stale = [
                key
                for key, results in self._entries.items()
                if any(result.record_id == record_id for result in results)
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "keys": list(self._entries),
                "hits": self._hits,
                "misses": self._misses,
            }
