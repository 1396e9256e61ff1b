"""Error taxonomy for the storyboard video pipeline.

Every error carries a human-readable message suitable for showing to the
user as-is (it ends up in the terminal ``GenerationStatus.message``).
"""

from __future__ import annotations

from typing import Any


class StoryboardVideoError(Exception):
    """Base class for all pipeline errors."""


class InvalidRequestError(StoryboardVideoError):
    """Raised before any remote call when a request cannot be actioned."""


class SubmissionError(StoryboardVideoError):
    """Raised when the remote API rejects a create or status call.

    ``http_status`` is ``None`` when the request never got a response
    (connection failure, timeout).
    """

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        provider_message: str | None = None,
    ) -> None:
        self.http_status = http_status
        self.provider_message = provider_message
        super().__init__(message)


class ProtocolError(StoryboardVideoError):
    """Raised when a response does not have the expected shape."""

    def __init__(self, message: str, body: Any = None) -> None:
        self.body = body
        super().__init__(message)


class MissingResultError(ProtocolError):
    """Raised when a completed operation carries no result locator."""


class PollTimeoutError(StoryboardVideoError):
    """Raised when the poll attempt ceiling is reached."""

    def __init__(self, message: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(message)


class OperationError(StoryboardVideoError):
    """Raised when the remote operation itself reports a failure."""

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)


class DownloadError(StoryboardVideoError):
    """Raised when fetching the final binary fails."""

    def __init__(self, message: str, http_status: int | None = None) -> None:
        self.http_status = http_status
        super().__init__(message)


class DecodeError(StoryboardVideoError):
    """Raised when a binary payload cannot be decoded."""


class StorageError(StoryboardVideoError):
    """Raised when the local blob store cannot be read or written."""


class InvalidDocumentError(StoryboardVideoError):
    """Raised when a backup document is malformed."""


class UnrestorableReferenceError(StoryboardVideoError):
    """Raised for a reference that is only meaningful in another session."""
