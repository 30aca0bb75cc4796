"""Queue backpressure and hand-off of jobs to the Celery worker."""

import logging

from chunkflow.config import get_settings
from chunkflow.schemas.job import JobRecord
from chunkflow.services.job_tracker import queue_depth

logger = logging.getLogger(__name__)


def is_queue_at_hard_limit(depth: int) -> bool:
    return depth >= get_settings().queue_hard_limit


def is_queue_at_soft_limit(depth: int) -> bool:
    return depth >= get_settings().queue_soft_limit


def accepting_uploads() -> bool:
    """False when the queue is full and new uploads must be turned away."""
    depth = queue_depth()
    if is_queue_at_hard_limit(depth):
        logger.warning(f"Queue at hard limit ({depth} jobs), rejecting upload")
        return False
    if is_queue_at_soft_limit(depth):
        logger.info(f"Queue above soft limit ({depth} jobs)")
    return True


def enqueue_job(record: JobRecord) -> None:
    """Send a job to the worker. The Celery task id is the job id."""
    # Import here to avoid loading the worker module in every API import
    from chunkflow.tasks.process import process_job_task

    process_job_task.apply_async(args=[record.job_id], task_id=record.job_id)
    logger.info(f"Enqueued job {record.job_id}")
