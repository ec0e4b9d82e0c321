"""Page text extraction and chunking for uploaded documents."""

import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Literal

import pdfplumber
from pdfminer.pdfdocument import PDFPasswordIncorrect

from payroll_recon.config import settings
from payroll_recon.exceptions import DocumentError, PasswordProtected

logger = logging.getLogger(__name__)

IMAGE_MEDIA_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}


@dataclass
class TextChunk:
    """A slice of document text sized for one embedding call."""

    index: int
    text: str
    pages: list[int] = field(default_factory=list)


def detect_file_type(filename: str | None, contents: bytes) -> Literal["pdf", "image"]:
    """Detect whether a document is a PDF or an image receipt."""
    if contents.startswith(b"%PDF"):
        return "pdf"
    if contents.startswith(b"\x89PNG") or contents.startswith(b"\xff\xd8"):
        return "image"

    name = (filename or "").lower()
    if name.endswith(".pdf"):
        return "pdf"
    if any(name.endswith(ext) for ext in IMAGE_MEDIA_TYPES):
        return "image"
    raise DocumentError(f"Unsupported document type: {filename or 'unnamed file'}", source=filename)


def image_media_type(filename: str | None, contents: bytes) -> str:
    if contents.startswith(b"\x89PNG"):
        return "image/png"
    if contents.startswith(b"\xff\xd8"):
        return "image/jpeg"
    name = (filename or "").lower()
    for ext, media_type in IMAGE_MEDIA_TYPES.items():
        if name.endswith(ext):
            return media_type
    return "image/jpeg"


def _is_password_error(error: BaseException) -> bool:
    """pdfplumber wraps pdfminer errors, so look through the cause chain and args."""
    seen = set()
    pending = [error]
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, PDFPasswordIncorrect):
            return True
        if "password" in str(current).lower():
            return True
        pending.extend(arg for arg in current.args if isinstance(arg, BaseException))
        for linked in (current.__cause__, current.__context__):
            if linked is not None:
                pending.append(linked)
    return False


def words_to_lines(words: list[dict[str, Any]], tolerance: float = 5.0) -> list[str]:
    """
    Rebuild reading-order lines from positioned words.

    Words are sorted top-to-bottom then left-to-right. A word joins the
    current line when its top is within `tolerance` units of the line's top.

    Args:
        words: Word dicts with at least "text", "x0" and "top"
        tolerance: Maximum vertical delta for words on the same line

    Returns:
        Line strings in reading order
    """
    ordered = sorted(words, key=lambda word: (round(float(word["top"]), 1), float(word["x0"])))

    lines: list[list[dict[str, Any]]] = []
    line_top = None
    for word in ordered:
        top = float(word["top"])
        if lines and line_top is not None and abs(top - line_top) < tolerance:
            lines[-1].append(word)
        else:
            lines.append([word])
            line_top = top

    return [" ".join(str(word["text"]) for word in sorted(line, key=lambda w: float(w["x0"]))) for line in lines]


def extract_page_texts(
    contents: bytes,
    password: str | None = None,
    *,
    tolerance: float | None = None,
    source: str | None = None,
) -> dict[int, str]:
    """
    Extract text per page, preserving reading order.

    Args:
        contents: PDF bytes
        password: Password for encrypted statements
        tolerance: Line-merge tolerance (defaults to the configured value)
        source: Document name used in error messages

    Returns:
        Mapping of 1-based page number to page text

    Raises:
        PasswordProtected: If the PDF is encrypted and the password is missing or wrong
        DocumentError: If the PDF cannot be read or holds no text
    """
    tolerance = settings.line_merge_tolerance if tolerance is None else tolerance
    page_texts: dict[int, str] = {}

    try:
        with pdfplumber.open(BytesIO(contents), password=password or "") as pdf:
            for number, page in enumerate(pdf.pages, start=1):
                words = page.extract_words(keep_blank_chars=False, use_text_flow=False)
                page_texts[number] = "\n".join(words_to_lines(words, tolerance))
    except PasswordProtected:
        raise
    except Exception as e:
        if _is_password_error(e):
            message = "Incorrect PDF password" if password else "PDF is password protected"
            raise PasswordProtected(message, source=source) from e
        logger.error("PDF extraction failed for %s: %s", source or "document", e)
        raise DocumentError(f"Failed to read PDF: {e}", source=source) from e

    if not any(text.strip() for text in page_texts.values()):
        raise DocumentError("PDF appears to be empty or scanned without a text layer", source=source)

    logger.info("Extracted text from %d pages of %s", len(page_texts), source or "document")
    return page_texts


def build_document_text(page_texts: dict[int, str]) -> str:
    """Join pages with "--- PAGE n ---" separators for the prompt."""
    return "\n".join(f"--- PAGE {number} ---\n{text}\n" for number, text in sorted(page_texts.items()))


def chunk_text(page_texts: dict[int, str], max_chars: int | None = None) -> list[TextChunk]:
    """
    Split document text into chunks no longer than `max_chars`.

    Chunks break on page boundaries; a single page longer than the limit is
    split into consecutive slices.
    """
    max_chars = max_chars or settings.embedding_chunk_chars
    chunks: list[TextChunk] = []
    buffer = ""
    buffer_pages: list[int] = []

    def flush() -> None:
        nonlocal buffer, buffer_pages
        if buffer.strip():
            chunks.append(TextChunk(index=len(chunks), text=buffer, pages=buffer_pages))
        buffer, buffer_pages = "", []

    for number, text in sorted(page_texts.items()):
        section = f"--- PAGE {number} ---\n{text}\n"

        if len(section) > max_chars:
            flush()
            for start in range(0, len(section), max_chars):
                chunks.append(TextChunk(index=len(chunks), text=section[start : start + max_chars], pages=[number]))
            continue

        if buffer and len(buffer) + len(section) > max_chars:
            flush()
        buffer += section
        buffer_pages.append(number)

    flush()
    return chunks
