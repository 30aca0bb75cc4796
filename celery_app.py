"""Celery application configuration."""

from celery import Celery
from celery.signals import worker_ready, worker_shutdown, worker_shutting_down

from chunkflow.config import get_settings

settings = get_settings()

celery_app = Celery(
    "chunkflow_worker",
    broker=settings.get_celery_broker_url(),
    backend=settings.get_celery_result_backend(),
    include=[
        "chunkflow.tasks.process",
        "chunkflow.tasks.cleanup",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution settings
    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=True,  # Requeue if worker dies
    worker_prefetch_multiplier=1,  # One job per worker slot at a time
    worker_concurrency=settings.worker_concurrency,
    # Job state lives in the job tracker; Celery results only need to outlive the job
    result_expires=settings.job_ttl_seconds,
    task_default_queue="default",
    # Fresh worker process every 100 jobs
    worker_max_tasks_per_child=100,
    beat_schedule={
        "cleanup-stale-uploads": {
            "task": "chunkflow.tasks.cleanup.cleanup_stale_uploads",
            "schedule": float(settings.cleanup_interval_seconds),
        },
    },
)


@worker_ready.connect
def cleanup_orphaned_jobs(sender=None, **kwargs):
    """
    On worker startup, mark jobs this node left in processing as failed.

    This handles the case where a previous worker on the same node was
    killed mid-job, leaving jobs stuck as 'processing' with no process to
    finish them. Jobs held by other nodes keep running.
    """
    import logging

    from chunkflow.services.job_tracker import fail_orphaned_jobs

    logger = logging.getLogger(__name__)

    try:
        hostname = getattr(sender, "hostname", None)
        if not hostname:
            return
        failed = fail_orphaned_jobs(
            hostname,
            "Worker was terminated while processing this job. Please upload again.",
        )
        if failed:
            logger.warning(f"Cleaned up {len(failed)} orphaned processing job(s)")
    except Exception as e:
        logger.error(f"Failed to clean up orphaned jobs: {e}")


@worker_shutting_down.connect
def graceful_shutdown(sender=None, sig=None, how=None, exitcode=None, **kwargs):
    """Log warm shutdown; Celery waits for running jobs before worker_shutdown."""
    import logging

    logger = logging.getLogger(__name__)
    logger.info(
        f"Worker shutting down (signal={sig}, how={how}). "
        "Waiting for current jobs to complete..."
    )


@worker_shutdown.connect
def cleanup_on_shutdown(sender=None, **kwargs):
    """Close shared Redis connection pool on worker shutdown."""
    import logging

    logger = logging.getLogger(__name__)
    try:
        from chunkflow.services.redis_manager import close_pool
        close_pool()
        logger.info("Redis connection pool closed on worker shutdown")
    except Exception as e:
        logger.warning(f"Error closing Redis pool on shutdown: {e}")


if __name__ == "__main__":
    celery_app.start()
