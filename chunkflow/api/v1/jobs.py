"""Job status and result download endpoints."""

import logging

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import RedirectResponse

from chunkflow.config import get_settings
from chunkflow.schemas.job import JobStatus, JobStatusResponse
from chunkflow.services import job_tracker
from chunkflow.services.storage import get_storage_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["jobs"])
settings = get_settings()


@router.get(
    "/job/{job_id}",
    response_model=JobStatusResponse,
    response_model_exclude_none=True,
)
async def get_job_status(job_id: str) -> JobStatusResponse:
    """
    Poll a job.

    404 means the job is unknown or has expired; it says nothing about
    whether processing failed.
    """
    record = job_tracker.get_job(job_id)

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )

    return job_tracker.to_status_response(record)


@router.get("/download/{job_id}")
async def download_result(job_id: str) -> RedirectResponse:
    """Redirect to a short-lived presigned URL for a completed job's output."""
    record = job_tracker.get_job(job_id)

    if record is None or record.status != JobStatus.COMPLETED or not record.result_object:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No result available for job {job_id}",
        )

    url = get_storage_service().get_presigned_url(
        settings.minio_bucket_results,
        record.result_object,
        expires_seconds=settings.result_url_expiry_seconds,
    )
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
