"""Health check endpoints.

``/health/live`` doubles as the connection probe target for transfer
clients, so it must stay cheap and never touch external services.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from chunkflow.config import get_settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])
settings = get_settings()


class ServiceStatus(BaseModel):
    """Status of an individual service."""
    name: str
    status: str  # "healthy", "unhealthy"
    message: Optional[str] = None


class HealthCheck(BaseModel):
    """Overall health check response."""
    status: str  # "healthy", "degraded", "unhealthy"
    version: str
    redis: str
    minio: str
    scratch: str


async def check_redis() -> ServiceStatus:
    """Check Redis connectivity."""
    try:
        from chunkflow.services.redis_manager import get_sync_client
        await asyncio.to_thread(get_sync_client().ping)
        return ServiceStatus(name="redis", status="healthy")
    except Exception as e:
        logger.debug(f"Redis health check failed: {e}")
        return ServiceStatus(name="redis", status="unhealthy", message=str(e))


async def check_minio() -> ServiceStatus:
    """Check MinIO connectivity."""
    try:
        from chunkflow.services.storage import get_storage_service
        storage = get_storage_service()
        if await asyncio.to_thread(storage.is_available):
            return ServiceStatus(name="minio", status="healthy")
        return ServiceStatus(name="minio", status="unhealthy", message="Connection failed")
    except Exception as e:
        logger.debug(f"MinIO health check failed: {e}")
        return ServiceStatus(name="minio", status="unhealthy", message=str(e))


async def check_scratch() -> ServiceStatus:
    """Check that the chunk scratch directory is writable."""
    try:
        scratch = Path(settings.upload_tmp_dir)
        scratch.mkdir(parents=True, exist_ok=True)
        probe = scratch / ".healthcheck"
        probe.write_bytes(b"ok")
        probe.unlink()
        return ServiceStatus(name="scratch", status="healthy")
    except OSError as e:
        logger.warning(f"Scratch directory check failed: {e}")
        return ServiceStatus(name="scratch", status="unhealthy", message=str(e))


@router.get("", response_model=HealthCheck)
async def health_check() -> HealthCheck:
    """
    Check health of all services.

    Redis is required for every upload path; MinIO and the scratch
    directory degrade only some of them.
    """
    redis_status = await check_redis()
    minio_status = await check_minio()
    scratch_status = await check_scratch()

    statuses = [redis_status, minio_status, scratch_status]
    healthy_count = sum(1 for s in statuses if s.status == "healthy")

    if healthy_count == len(statuses):
        overall = "healthy"
    elif redis_status.status == "healthy":
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthCheck(
        status=overall,
        version=settings.app_version,
        redis=redis_status.status,
        minio=minio_status.status,
        scratch=scratch_status.status,
    )


@router.get("/live")
async def liveness() -> dict:
    """Liveness probe and client latency probe. No dependency checks."""
    return {"status": "alive"}


@router.get("/ready")
async def readiness() -> dict:
    """Readiness probe: 503 until Redis is reachable."""
    redis_status = await check_redis()

    if redis_status.status != "healthy":
        raise HTTPException(
            status_code=503,
            detail=f"Redis not ready: {redis_status.message}",
        )

    return {"status": "ready"}
