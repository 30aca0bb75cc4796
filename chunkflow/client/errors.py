"""Exceptions raised by the transfer client.

Every terminal failure carries a ``hint`` the caller can show to a user.
Cancellation is not a ``ChunkflowError``: it is an outcome, not a failure.
"""

import asyncio
from typing import Optional

import httpx

# HTTP status codes that mean "try again later" rather than "this request is wrong"
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ChunkflowError(Exception):
    """Base class for client errors."""

    default_hint = "Please try again."

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint or self.default_hint


class TransientHttpError(ChunkflowError):
    """Server answered with a retryable status (5xx, 408, 429)."""

    default_hint = "The server is busy. Please try again in a moment."

    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code


class MalformedResponse(ChunkflowError):
    """Response body could not be parsed into the expected shape."""

    default_hint = "The server sent an unexpected response. Please try again."


class PermanentUploadError(ChunkflowError):
    """Server rejected the request; repeating it cannot succeed."""

    default_hint = "This file cannot be uploaded. Check the file type and size."

    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code


class TransferFailed(ChunkflowError):
    """A chunk could not be delivered after all retries.

    Confirmed chunks are kept, so retrying the upload resumes it.
    """

    default_hint = "The connection is unstable. Switch to a more stable network and retry; the upload will resume."

    def __init__(self, message: str, chunk_index: Optional[int] = None, hint: Optional[str] = None):
        super().__init__(message, hint)
        self.chunk_index = chunk_index


class UploadSessionExpired(ChunkflowError):
    """The server no longer knows this upload; it has to start over."""

    default_hint = "The upload session expired. Please upload the file again."


class JobSessionExpired(ChunkflowError):
    """The job is unknown to the server, usually because it expired."""

    default_hint = "This job is no longer available. Please upload the file again."

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class UploadCancelled(Exception):
    """The caller cancelled the transfer."""


def is_retryable(exc: BaseException) -> bool:
    """True for failures that a later attempt may not repeat."""
    return isinstance(
        exc, (TransientHttpError, MalformedResponse, httpx.TransportError, asyncio.TimeoutError)
    )
