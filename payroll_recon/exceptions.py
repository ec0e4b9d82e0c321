"""Exception hierarchy for the extraction engine.

Adapters (PDF reader, model client) raise these; batch loops catch them and
turn them into failure results so one bad document never aborts a batch.
"""

from typing import Any, Optional


class ReconError(Exception):
    """Base exception for all extraction engine errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context.
        recoverable: Whether retrying the same call may succeed.
    """

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable!r})"
        )


class PasswordProtected(ReconError):
    """Document is encrypted and no (or the wrong) password was supplied.

    Needs user input; retrying with the same arguments never helps.
    """

    kind = "password_protected"

    def __init__(self, message: str = "PDF is password protected", *, source: Optional[str] = None) -> None:
        super().__init__(message, details={"source": source} if source else None, recoverable=False)
        self.source = source


class MalformedResponse(ReconError):
    """Model output could not be parsed into the expected JSON object."""

    kind = "malformed_response"

    def __init__(self, message: str, *, preview: Optional[str] = None) -> None:
        details = {"preview": preview[:200]} if preview else None
        super().__init__(message, details=details, recoverable=True)
        self.preview = preview


class ParseFailure(ReconError):
    """A period or date string could not be parsed."""

    kind = "parse_failure"

    def __init__(self, message: str, *, value: Optional[str] = None) -> None:
        super().__init__(message, details={"value": value} if value else None, recoverable=False)
        self.value = value


class RateLimited(ReconError):
    """The model API rejected a call with a quota / 429 error."""

    kind = "rate_limited"

    def __init__(self, message: str, *, api_error: Optional[str] = None) -> None:
        super().__init__(message, details={"api_error": api_error} if api_error else None, recoverable=True)


class ModelCallError(ReconError):
    """Model or network call failed for a reason other than rate limiting."""

    kind = "model_error"

    def __init__(self, message: str, *, api_error: Optional[str] = None) -> None:
        super().__init__(message, details={"api_error": api_error} if api_error else None, recoverable=True)


class DocumentError(ReconError):
    """Document could not be fetched or read."""

    kind = "document_error"

    def __init__(self, message: str, *, source: Optional[str] = None, recoverable: bool = False) -> None:
        super().__init__(message, details={"source": source} if source else None, recoverable=recoverable)
        self.source = source


class ValidationFailure(ReconError):
    """Extracted fields failed validation.

    Only raised by callers that choose to block on a ValidationReport; the
    engine itself reports validation problems without raising.
    """

    kind = "validation_failure"

    def __init__(self, message: str, *, errors: Optional[list[str]] = None) -> None:
        super().__init__(message, details={"errors": errors or []}, recoverable=True)
        self.errors = errors or []


__all__ = [
    "ReconError",
    "PasswordProtected",
    "MalformedResponse",
    "ParseFailure",
    "RateLimited",
    "ModelCallError",
    "DocumentError",
    "ValidationFailure",
]
