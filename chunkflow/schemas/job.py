"""Job schemas shared by the API, the worker and the transfer client."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from chunkflow.schemas.base import WireModel


class JobStatus(str, Enum):
    """Lifecycle states of a processing job."""
    QUEUED = "queued"          # Waiting for a worker
    PROCESSING = "processing"  # Picked up by a worker
    COMPLETED = "completed"    # Terminal, result may be attached
    FAILED = "failed"          # Terminal, error attached


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord(BaseModel):
    """Server-side record of a job, stored as JSON in Redis."""
    job_id: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0  # 0-100, never decreases while not terminal
    tool_type: str
    file_name: str
    file_size: int = 0
    object_name: str  # assembled upload in the uploads bucket
    upload_id: Optional[str] = None  # set for chunked uploads
    options: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    result_object: Optional[str] = None  # processed output in the results bucket
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobCreated(WireModel):
    """Response of every upload path: the handle of the created job."""
    job_id: str
    status: str = JobStatus.QUEUED.value


class JobStatusResponse(WireModel):
    """Polled job status.

    ``status`` is a plain string: values outside :class:`JobStatus` are
    passed through so clients can treat them as still in progress.
    """
    status: str
    progress: int = 0
    queue_position: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
