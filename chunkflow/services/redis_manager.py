"""Shared Redis connection pool.

Every caller (API endpoints, job tracker, upload sessions, Celery tasks) goes
through one process-wide ConnectionPool instead of creating a client per call.

Usage:
    from chunkflow.services.redis_manager import get_sync_client
    r = get_sync_client()
    r.set("key", "value")
"""

import logging
import threading
from typing import Optional

import redis

from chunkflow.config import get_settings

logger = logging.getLogger(__name__)

_pool: Optional[redis.ConnectionPool] = None
_pool_lock = threading.Lock()


def _get_pool() -> redis.ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:  # double-check after acquiring lock
                settings = get_settings()
                _pool = redis.ConnectionPool.from_url(
                    settings.redis_url,
                    max_connections=50,
                    decode_responses=True,
                    socket_keepalive=True,
                    socket_connect_timeout=5,
                    health_check_interval=30,
                )
    return _pool


def get_sync_client() -> redis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    return redis.Redis(connection_pool=_get_pool())


def close_pool() -> None:
    """Disconnect every pooled connection (app and worker shutdown)."""
    global _pool
    with _pool_lock:
        if _pool is not None:
            try:
                _pool.disconnect()
            except Exception as e:
                logger.warning(f"Error closing Redis pool: {e}")
            _pool = None
