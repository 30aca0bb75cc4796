"""MinIO object storage for assembled uploads and job results.

Two buckets are used: ``minio_bucket_uploads`` holds assembled uploads until
the worker has processed them, ``minio_bucket_results`` holds job outputs that
``/download`` hands out through presigned URLs.
"""

import functools
import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO, Callable, Optional, TypeVar

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError, MaxRetryError, TimeoutError as Urllib3TimeoutError

from chunkflow.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (ConnectionError, OSError, HTTPError, MaxRetryError, Urllib3TimeoutError)


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, S3Error):
        status = getattr(exc.response, "status", None)
        return status is not None and status >= 500
    return isinstance(exc, _TRANSIENT_ERRORS)


def _retry_on_transient(
    max_attempts: int = 4,
    initial_delay: float = 1.0,
    max_delay: float = 15.0,
    description: str = "operation",
) -> Callable:
    """Retry a MinIO call on connection errors, timeouts and 5xx responses.

    Anything else (404 NoSuchKey, 403, programming errors) is raised at once.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not _is_transient(e):
                        raise
                    if attempt == max_attempts:
                        logger.error(f"MinIO {description} gave up after {max_attempts} attempts: {e}")
                        raise
                    logger.warning(
                        f"MinIO {description} attempt {attempt}/{max_attempts} failed: {e}. "
                        f"Retrying in {delay:.1f}s"
                    )
                time.sleep(delay)
                delay = min(delay * 2, max_delay)
        return wrapper
    return decorator


class StorageService:
    """MinIO client wrapper; buckets are created on first successful contact."""

    def __init__(self, max_retries: int = 5, retry_delay: float = 2.0):
        self._settings = get_settings()
        self.client = Minio(
            self._settings.minio_endpoint,
            access_key=self._settings.minio_access_key,
            secret_key=self._settings.minio_secret_key,
            secure=self._settings.minio_secure,
        )
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._buckets_ensured = False

        # MinIO may still be starting; a failure here is retried on first use
        self._ensure_buckets()

    @property
    def buckets(self) -> tuple[str, str]:
        return self._settings.minio_bucket_uploads, self._settings.minio_bucket_results

    def _ensure_buckets(self) -> bool:
        if self._buckets_ensured:
            return True

        delay = self._retry_delay
        attempt = 0
        while True:
            attempt += 1
            try:
                for bucket in self.buckets:
                    if not self.client.bucket_exists(bucket):
                        self.client.make_bucket(bucket)
                        logger.info(f"Created MinIO bucket {bucket}")
            except Exception as e:
                if attempt >= self._max_retries:
                    logger.warning(f"MinIO buckets unavailable after {attempt} attempts: {e}")
                    return False
                logger.debug(f"Waiting for MinIO (attempt {attempt}/{self._max_retries}): {e}")
                time.sleep(delay)
                delay = min(delay * 1.5, 10.0)
                continue

            self._buckets_ensured = True
            return True

    def _ensure_ready(self) -> None:
        if not self._ensure_buckets():
            raise RuntimeError("MinIO storage is not available")

    @_retry_on_transient(description="upload")
    def upload_file(
        self,
        bucket: str,
        object_name: str,
        file_data: BinaryIO,
        length: int,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Stream a file-like object into a bucket and return the object name."""
        self._ensure_ready()
        # Every attempt starts from the beginning of the stream
        if hasattr(file_data, "seek"):
            file_data.seek(0)
        self.client.put_object(bucket, object_name, file_data, length, content_type=content_type)
        return object_name

    def upload_path(self, bucket: str, object_name: str, path: Path) -> str:
        with open(path, "rb") as f:
            return self.upload_file(bucket, object_name, f, path.stat().st_size)

    @_retry_on_transient(description="download")
    def download_to_file(self, bucket: str, object_name: str, file_path: Path) -> None:
        self._ensure_ready()
        self.client.fget_object(bucket, object_name, str(file_path))

    def delete_object(self, bucket: str, object_name: str) -> None:
        self._ensure_ready()
        self.client.remove_object(bucket, object_name)

    def get_presigned_url(self, bucket: str, object_name: str, expires_seconds: int = 3600) -> str:
        """Presigned GET URL for a stored object."""
        self._ensure_ready()
        return self.client.presigned_get_object(
            bucket,
            object_name,
            expires=timedelta(seconds=expires_seconds),
        )

    def is_available(self) -> bool:
        try:
            self.client.list_buckets()
        except Exception:
            return False
        return True


# ─── Singleton Management ───────────────────────────────────────────────────

_storage_service: Optional[StorageService] = None


def get_storage_service() -> StorageService:
    """Shared storage service, created on first use."""
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService()
    return _storage_service


def reset_storage_service() -> None:
    """Drop the shared instance so the next call builds a new one."""
    global _storage_service
    _storage_service = None
