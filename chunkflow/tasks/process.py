"""Job processing Celery task with progress tracking.

What a job does with its file is decided by the processor registered for the
job's ``tool_type``. Unregistered tool types fall back to a pass-through that
publishes the upload unchanged as the result.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable

from celery_app import celery_app
from chunkflow.config import get_settings
from chunkflow.schemas.job import JobStatus
from chunkflow.services import job_tracker
from chunkflow.services.storage import get_storage_service

settings = get_settings()
logger = logging.getLogger(__name__)

# (input_path, work_dir, options, report) -> output_path
Processor = Callable[[Path, Path, dict[str, Any], Callable[[int, str], None]], Path]

_PROCESSORS: dict[str, Processor] = {}

# Processor progress (0-100) is mapped into this band of overall job progress
_PROCESS_START = 10
_PROCESS_END = 90


def register_processor(tool_type: str) -> Callable[[Processor], Processor]:
    """Decorator registering a processor for a tool type."""
    def decorator(func: Processor) -> Processor:
        _PROCESSORS[tool_type] = func
        return func
    return decorator


def get_processor(tool_type: str) -> Processor:
    return _PROCESSORS.get(tool_type, passthrough)


def passthrough(
    input_path: Path,
    work_dir: Path,
    options: dict[str, Any],
    report: Callable[[int, str], None],
) -> Path:
    """Publish the upload unchanged."""
    report(50, "Processing file...")
    output_path = work_dir / "output" / input_path.name
    output_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(input_path, output_path)
    report(100, "Finalizing...")
    return output_path


@celery_app.task(bind=True, name="chunkflow.tasks.process.process_job_task")
def process_job_task(self, job_id: str) -> dict:
    """
    Process one uploaded file.

    Progress is tracked on the job record: 5 while downloading, 10-90 while
    the processor runs, 92 while uploading the result, 100 when completed.
    """
    record = job_tracker.get_job(job_id)
    if record is None:
        logger.warning(f"Job {job_id} no longer exists, skipping")
        return {"job_id": job_id, "status": "missing"}
    if record.is_terminal:
        logger.info(f"Job {job_id} already {record.status.value}, skipping")
        return {"job_id": job_id, "status": record.status.value}

    job_tracker.update_job(
        job_id,
        status=JobStatus.PROCESSING,
        progress=5,
        message="Downloading upload...",
        worker=self.request.hostname,
    )
    storage = get_storage_service()

    def report(pct: int, message: str) -> None:
        pct = max(0, min(100, pct))
        overall = _PROCESS_START + (_PROCESS_END - _PROCESS_START) * pct // 100
        job_tracker.update_job(job_id, progress=overall, message=message)

    try:
        with tempfile.TemporaryDirectory(prefix=f"chunkflow-job-{job_id}-") as work:
            work_dir = Path(work)
            input_path = work_dir / record.file_name
            storage.download_to_file(settings.minio_bucket_uploads, record.object_name, input_path)

            job_tracker.update_job(job_id, progress=_PROCESS_START, message="Processing file...")
            processor = get_processor(record.tool_type)
            output_path = processor(input_path, work_dir, record.options, report)

            job_tracker.update_job(job_id, progress=92, message="Uploading result...")
            result_object = f"results/{job_id}/{output_path.name}"
            storage.upload_path(settings.minio_bucket_results, result_object, output_path)
            result_size = output_path.stat().st_size

        job_tracker.update_job(
            job_id,
            status=JobStatus.COMPLETED,
            message="Done",
            result_object=result_object,
            result={
                "downloadUrl": f"{settings.api_v1_prefix}/download/{job_id}",
                "fileName": output_path.name,
                "size": result_size,
            },
        )
        logger.info(f"Job {job_id} completed, result at {result_object}")

    except Exception as e:
        logger.exception(f"Job {job_id} failed: {e}")
        job_tracker.update_job(
            job_id,
            status=JobStatus.FAILED,
            message="Processing failed",
            error=str(e) or "Processing failed",
        )
        return {"job_id": job_id, "status": JobStatus.FAILED.value}

    try:
        storage.delete_object(settings.minio_bucket_uploads, record.object_name)
    except Exception as e:
        logger.warning(f"Could not delete processed upload {record.object_name}: {e}")

    return {"job_id": job_id, "status": JobStatus.COMPLETED.value}
