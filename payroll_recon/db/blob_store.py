"""Document storage behind a path-based interface.

The engine never cares where documents live; it only needs the four calls
on `DocumentStore`. `LocalDocumentStore` keeps files under the data
directory and is what the API server and the tests use.
"""

import asyncio
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from payroll_recon.config import settings
from payroll_recon.exceptions import DocumentError

logger = logging.getLogger(__name__)


@runtime_checkable
class DocumentStore(Protocol):
    async def get_public_url(self, path: str) -> str: ...

    async def download(self, path: str) -> bytes: ...

    async def upload(self, path: str, contents: bytes) -> str: ...

    async def remove(self, paths: list[str]) -> None: ...


class LocalDocumentStore:
    """Filesystem-backed DocumentStore rooted at `root`."""

    def __init__(self, root: Path | None = None):
        self._root = (root or settings.uploads_path).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self._root / path.lstrip("/")).resolve()
        if not target.is_relative_to(self._root):
            raise DocumentError(f"Path escapes document store: {path}", source=path)
        return target

    async def get_public_url(self, path: str) -> str:
        return self._resolve(path).as_uri()

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise DocumentError(f"Document not found: {path}", source=path)
        return await asyncio.to_thread(target.read_bytes)

    async def upload(self, path: str, contents: bytes) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, contents)
        logger.info("Stored %s (%d bytes)", path, len(contents))
        return path

    async def remove(self, paths: list[str]) -> None:
        for path in paths:
            target = self._resolve(path)
            if target.exists():
                target.unlink()
                logger.info("Removed %s", path)
