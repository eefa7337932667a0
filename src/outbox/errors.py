"""Exceptions raised by outbox."""

from __future__ import annotations


class OutboxError(Exception):
    """Base class for outbox errors."""


class ApiUnavailableError(OutboxError):
    """Raised when a task needs the API collaborator and none is configured."""

    def __init__(self, message: str = "API not available"):
        super().__init__(message)


class NoModelSelectedError(OutboxError):
    """Raised when a task needs a selected model and none is set."""

    def __init__(self, message: str = "No model selected"):
        super().__init__(message)


class UploadFailedError(OutboxError):
    """Raised when an attachment upload ends in the failed state."""

    def __init__(self, file_name: str, reason: str | None = None):
        self.file_name = file_name
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Upload failed for {file_name}{detail}")


class UploadTimeoutError(OutboxError):
    """Raised when an upload does not finish before the bridge timeout."""

    def __init__(self, file_name: str, timeout: float):
        self.file_name = file_name
        self.timeout = timeout
        super().__init__(f"Upload of {file_name} timed out after {timeout:.0f}s")


class ApiResponseError(OutboxError):
    """Raised when the server answers with a shape we cannot use."""
