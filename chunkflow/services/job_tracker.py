"""Job tracking service using Redis.

Each job is a JSON document under ``job:{job_id}`` with a TTL. Two index
structures back queue positions and worker crash recovery:

- ``jobs:queued``: sorted set of queued job ids scored by enqueue time
- ``jobs:processing``: hash of picked-up job ids to the worker node running them
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from chunkflow.config import get_settings
from chunkflow.schemas.job import JobRecord, JobStatus, JobStatusResponse
from chunkflow.services.redis_manager import get_sync_client

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "job:"
QUEUED_KEY = "jobs:queued"
PROCESSING_KEY = "jobs:processing"


def _job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


def _save(r, record: JobRecord) -> None:
    record.updated_at = datetime.now(timezone.utc)
    r.setex(_job_key(record.job_id), get_settings().job_ttl_seconds, record.model_dump_json())


def create_job(
    tool_type: str,
    file_name: str,
    object_name: str,
    file_size: int = 0,
    upload_id: Optional[str] = None,
    options: Optional[dict[str, Any]] = None,
    job_id: Optional[str] = None,
) -> JobRecord:
    """Create a queued job and register it in the queue index."""
    record = JobRecord(
        job_id=job_id or str(uuid4()),
        tool_type=tool_type,
        file_name=file_name,
        file_size=file_size,
        object_name=object_name,
        upload_id=upload_id,
        options=options or {},
        message="Waiting for a worker...",
    )

    r = get_sync_client()
    _save(r, record)
    r.zadd(QUEUED_KEY, {record.job_id: time.time()})

    logger.info(f"Created job {record.job_id} ({tool_type}, {file_name}, {file_size} bytes)")
    return record


def get_job(job_id: str) -> Optional[JobRecord]:
    """Get a job record, or None once it is unknown or expired."""
    r = get_sync_client()
    data = r.get(_job_key(job_id))

    if not data:
        return None

    return JobRecord.model_validate_json(data)


def update_job(
    job_id: str,
    status: Optional[JobStatus] = None,
    progress: Optional[int] = None,
    message: Optional[str] = None,
    result: Optional[dict[str, Any]] = None,
    result_object: Optional[str] = None,
    error: Optional[str] = None,
    worker: Optional[str] = None,
) -> Optional[JobRecord]:
    """Update a job. Terminal jobs are immutable and progress never goes down.

    ``worker`` names the node taking the job when moving it to processing.
    """
    r = get_sync_client()
    record = get_job(job_id)
    if record is None:
        return None

    if record.is_terminal:
        logger.debug(f"Ignoring update for terminal job {job_id} ({record.status.value})")
        return record

    if progress is not None:
        record.progress = max(record.progress, min(100, max(0, progress)))
    if message is not None:
        record.message = message
    if result is not None:
        record.result = result
    if result_object is not None:
        record.result_object = result_object
    if error is not None:
        record.error = error

    if status is not None and status != record.status:
        record.status = status
        if status == JobStatus.PROCESSING:
            r.zrem(QUEUED_KEY, job_id)
            r.hset(PROCESSING_KEY, job_id, worker or "")
        elif record.is_terminal:
            r.zrem(QUEUED_KEY, job_id)
            r.hdel(PROCESSING_KEY, job_id)
            if status == JobStatus.COMPLETED:
                record.progress = 100

    _save(r, record)
    return record


def queue_position(job_id: str) -> Optional[int]:
    """Number of queued jobs ahead of this one, or None if it is not queued."""
    r = get_sync_client()
    return r.zrank(QUEUED_KEY, job_id)


def queue_depth() -> int:
    """Jobs waiting plus jobs in flight, after dropping index entries older than the job TTL."""
    r = get_sync_client()
    r.zremrangebyscore(QUEUED_KEY, "-inf", time.time() - get_settings().job_ttl_seconds)
    return r.zcard(QUEUED_KEY) + r.hlen(PROCESSING_KEY)


def to_status_response(record: JobRecord) -> JobStatusResponse:
    """Project a job record onto the polled wire shape."""
    position = None
    if record.status == JobStatus.QUEUED:
        position = queue_position(record.job_id)

    return JobStatusResponse(
        status=record.status.value,
        progress=record.progress,
        queue_position=position,
        result=record.result if record.status == JobStatus.COMPLETED else None,
        error=record.error if record.status == JobStatus.FAILED else None,
    )


def fail_orphaned_jobs(worker: str, reason: str) -> list[str]:
    """Mark jobs left processing on ``worker`` as failed.

    Called when a worker node starts: a job still recorded against its own
    name was running in the process it replaces. Jobs held by other nodes
    are left alone.
    """
    r = get_sync_client()
    failed = []
    for job_id, owner in r.hgetall(PROCESSING_KEY).items():
        if owner != worker:
            continue
        record = update_job(job_id, status=JobStatus.FAILED, error=reason, message=reason)
        if record is None:
            r.hdel(PROCESSING_KEY, job_id)
            continue
        failed.append(job_id)
        logger.warning(f"Marked orphaned job {job_id} on {worker} as failed")
    return failed


def delete_job(job_id: str) -> None:
    """Delete a job and its index entries."""
    r = get_sync_client()
    r.delete(_job_key(job_id))
    r.zrem(QUEUED_KEY, job_id)
    r.hdel(PROCESSING_KEY, job_id)
