"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from chunkflow.api.v1.router import api_router
from chunkflow.config import get_settings
from chunkflow.rate_limit import limiter
from chunkflow.services.redis_manager import close_pool, get_sync_client

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Prepare the chunk scratch directory and check Redis; close the pool on exit."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    scratch = Path(settings.upload_tmp_dir, "chunks")
    try:
        scratch.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Chunk scratch directory {scratch} is not usable: {e}")

    try:
        get_sync_client().ping()
        logger.info("Redis available")
    except Exception as e:
        logger.warning(f"Redis not reachable yet, uploads will fail until it is: {e}")

    yield

    logger.info("Shutting down, closing Redis pool")
    close_pool()


def create_app() -> FastAPI:
    """Build the API app: rate limiting, CORS for the chunk headers, v1 routes."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Resumable chunked uploads with asynchronous job tracking.",
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Idempotency-Key", "X-Upload-Id", "X-Chunk-Index"],
    )

    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/")
    async def root() -> dict:
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "api": settings.api_v1_prefix,
        }

    return app


app = create_app()
