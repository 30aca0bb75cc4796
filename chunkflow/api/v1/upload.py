"""Upload endpoints: single-request upload and chunked init/chunk/complete."""

import asyncio
import json
import logging
from functools import partial
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile, status

from chunkflow.config import get_settings
from chunkflow.rate_limit import limiter
from chunkflow.schemas.job import JobCreated, JobRecord, JobStatus
from chunkflow.schemas.upload import (
    ChunkAccepted,
    UploadCompleteRequest,
    UploadInitRequest,
    UploadInitResponse,
)
from chunkflow.services import job_tracker, upload_sessions
from chunkflow.services.job_queue import accepting_uploads, enqueue_job
from chunkflow.services.storage import get_storage_service
from chunkflow.services.upload_sessions import UploadValidationError, safe_filename

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", tags=["upload"])
settings = get_settings()


def _ensure_capacity() -> None:
    if not accepting_uploads():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="High demand right now. Please retry shortly.",
        )


def _object_name(job_id: str, filename: str) -> str:
    return f"uploads/{job_id}/{filename}"


def _store_assembled(path: Path, object_name: str) -> None:
    """Move an assembled upload into object storage (runs in a thread)."""
    try:
        get_storage_service().upload_path(settings.minio_bucket_uploads, object_name, path)
    finally:
        path.unlink(missing_ok=True)


@router.post("", response_model=JobCreated, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(settings.upload_rate_limit)
async def upload_single(
    request: Request,
    file: UploadFile = File(...),
    tool_type: str = Form(...),
    options: Optional[str] = Form(None),
) -> JobCreated:
    """
    Upload a whole file in one multipart request.

    Form fields:
    - file: the file body
    - tool_type: which processor the worker should run
    - options: optional JSON object passed through to the processor

    An Idempotency-Key header makes resends of the same upload return the
    job created by the first one.
    """
    idempotency_key = request.headers.get("idempotency-key")
    if idempotency_key:
        try:
            upload_sessions.validate_idempotency_key(idempotency_key)
        except UploadValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        existing = upload_sessions.existing_job_for_key(idempotency_key)
        if existing:
            return _existing_job(existing)

    _ensure_capacity()

    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded")

    try:
        parsed_options = json.loads(options) if options else {}
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="options must be a JSON object")
    if not isinstance(parsed_options, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="options must be a JSON object")

    file.file.seek(0, 2)
    size = file.file.tell()
    file.file.seek(0)

    if size == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    if size > settings.max_upload_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size ({size / (1024 * 1024):.1f} MB) exceeds maximum ({settings.max_upload_size_mb} MB)",
        )

    filename = safe_filename(file.filename)

    # Record first, then reserve the key; a caller that loses the reservation deletes its record
    proposed = str(uuid4())
    record = job_tracker.create_job(
        tool_type=tool_type,
        file_name=filename,
        file_size=size,
        object_name=_object_name(proposed, filename),
        options=parsed_options,
        job_id=proposed,
    )

    if idempotency_key:
        job_id = upload_sessions.reserve_job_for_key(idempotency_key, proposed)
        if job_id != proposed:
            job_tracker.delete_job(proposed)
            return _existing_job(job_id)

    try:
        await asyncio.to_thread(
            get_storage_service().upload_file,
            settings.minio_bucket_uploads,
            record.object_name,
            file.file,
            size,
        )
        enqueue_job(record)
    except Exception as e:
        logger.exception(f"Queueing upload {filename} failed: {e}")
        release = None
        if idempotency_key:
            release = partial(upload_sessions.release_job_for_key, idempotency_key, proposed)
        await _abandon_job(record, release)
        raise _retry_later()

    return JobCreated(job_id=record.job_id, status=record.status.value)


@router.post("/init", response_model=UploadInitResponse)
@limiter.limit(settings.upload_rate_limit)
async def init_upload(request: Request, body: UploadInitRequest) -> UploadInitResponse:
    """Open a chunked upload and return the canonical chunk plan."""
    _ensure_capacity()

    try:
        meta = upload_sessions.create_session(
            filename=body.filename,
            total_size=body.total_size,
            total_chunks=body.total_chunks,
            tool_type=body.tool_type,
            chunk_size=body.chunk_size,
            options=body.options,
        )
    except UploadValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return UploadInitResponse(
        upload_id=meta.upload_id,
        chunk_size=meta.chunk_size,
        total_chunks=meta.total_chunks,
    )


@router.post("/chunk", response_model=ChunkAccepted)
async def upload_chunk(request: Request) -> ChunkAccepted:
    """
    Accept the raw bytes of one chunk.

    Headers:
    - X-Upload-Id: the id returned by /upload/init
    - X-Chunk-Index: zero-based chunk position
    """
    upload_id = request.headers.get("x-upload-id")
    raw_index = request.headers.get("x-chunk-index", "")
    if not upload_id or not raw_index.isdigit():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="x-upload-id and x-chunk-index required",
        )
    index = int(raw_index)

    meta = upload_sessions.get_session(upload_id)
    if meta is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Upload session not found or expired",
        )

    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > settings.max_chunk_size_bytes:
        raise _chunk_too_large()

    body = await request.body()
    if len(body) > settings.max_chunk_size_bytes:
        raise _chunk_too_large()
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Chunk body required (raw binary)")

    try:
        await asyncio.to_thread(upload_sessions.store_chunk, meta, index, body)
    except UploadValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return ChunkAccepted(index=index)


@router.post("/complete", response_model=JobCreated, status_code=status.HTTP_202_ACCEPTED)
async def complete_upload(body: UploadCompleteRequest) -> JobCreated:
    """
    Assemble a chunked upload and create its job.

    Safe to call repeatedly: once a job is queued, every later call returns
    it. A call that fails to queue its job leaves the chunks in place and
    answers 503 so the client can complete again.
    """
    upload_id = body.upload_id

    existing = upload_sessions.existing_job_for(upload_id)
    if existing:
        return _existing_job(existing)

    meta = upload_sessions.get_session(upload_id)
    if meta is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Upload session not found or expired",
        )

    missing = upload_sessions.missing_chunks(meta)
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing chunk {missing[0]} ({len(missing)} of {meta.total_chunks} missing)",
        )

    # Record first, then reserve; a caller that loses the reservation deletes its record
    proposed = str(uuid4())
    object_name = _object_name(proposed, meta.filename)
    record = job_tracker.create_job(
        tool_type=meta.tool_type,
        file_name=meta.filename,
        file_size=meta.total_size,
        object_name=object_name,
        upload_id=upload_id,
        options=meta.options,
        job_id=proposed,
    )

    job_id = upload_sessions.reserve_job(upload_id, proposed)
    if job_id != proposed:
        job_tracker.delete_job(proposed)
        return _existing_job(job_id)

    try:
        assembled = await asyncio.to_thread(upload_sessions.assemble, meta)
        await asyncio.to_thread(_store_assembled, assembled, object_name)
    except Exception as e:
        logger.exception(f"Assembling upload {upload_id} failed: {e}")
        job_tracker.update_job(
            job_id,
            status=JobStatus.FAILED,
            error="The uploaded file could not be assembled. Please upload it again.",
        )
        return JobCreated(job_id=job_id, status=JobStatus.FAILED.value)

    try:
        enqueue_job(record)
    except Exception as e:
        # Chunks are still on disk, so the next completion can start over
        logger.exception(f"Queueing upload {upload_id} failed: {e}")
        await _abandon_job(record, partial(upload_sessions.release_job, upload_id, job_id))
        raise _retry_later()

    upload_sessions.discard(upload_id)

    return JobCreated(job_id=record.job_id, status=record.status.value)


def _existing_job(job_id: str) -> JobCreated:
    record = job_tracker.get_job(job_id)
    job_status = record.status.value if record else JobStatus.QUEUED.value
    return JobCreated(job_id=job_id, status=job_status)


def _chunk_too_large() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        detail=f"Chunk exceeds maximum of {settings.max_chunk_size_bytes} bytes",
    )


def _retry_later() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Could not queue the upload. Please retry shortly.",
    )


async def _abandon_job(record: JobRecord, release: Optional[Callable[[], None]] = None) -> None:
    """Forget a job that never reached the worker so a retry creates it afresh."""
    job_tracker.delete_job(record.job_id)
    if release is not None:
        release()
    try:
        await asyncio.to_thread(
            get_storage_service().delete_object,
            settings.minio_bucket_uploads,
            record.object_name,
        )
    except Exception as e:
        logger.warning(f"Could not remove stored upload {record.object_name}: {e}")
