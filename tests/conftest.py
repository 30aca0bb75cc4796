"""
Shared pytest fixtures for Chunkflow tests.

Provides:
- Mock services (FakeRedis, in-memory MinIO storage)
- Isolated upload scratch directory per test
- FastAPI test client with the worker hand-off captured instead of sent
"""

import os
import shutil
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment variables BEFORE importing app modules
# Only set defaults if not already set (allows overriding via environment)
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("REDIS_PORT", "6379")
os.environ.setdefault("MINIO_HOST", "localhost")
os.environ.setdefault("MINIO_PORT", "9000")
os.environ.setdefault("MINIO_ACCESS_KEY", "test")
os.environ.setdefault("MINIO_SECRET_KEY", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ENVIRONMENT", "test")

from chunkflow.config import get_settings


# ─── Mock Storage Service ────────────────────────────────────────────────────


class MockStorageService:
    """In-memory mock for MinIO storage service."""

    def __init__(self):
        self._objects: dict[str, dict[str, bytes]] = {}
        self._available = True

    def upload_file(
        self,
        bucket: str,
        object_name: str,
        file_data,
        length: int,
        content_type: str = "application/octet-stream",
    ) -> str:
        if bucket not in self._objects:
            self._objects[bucket] = {}
        if hasattr(file_data, "read"):
            self._objects[bucket][object_name] = file_data.read()
        else:
            self._objects[bucket][object_name] = file_data
        return object_name

    def upload_path(self, bucket: str, object_name: str, path: Path) -> str:
        with open(path, "rb") as f:
            return self.upload_file(bucket, object_name, f, path.stat().st_size)

    def download_file(self, bucket: str, object_name: str) -> bytes:
        if bucket not in self._objects or object_name not in self._objects[bucket]:
            raise FileNotFoundError(f"Object {object_name} not found in bucket {bucket}")
        return self._objects[bucket][object_name]

    def download_to_file(self, bucket: str, object_name: str, file_path: Path) -> None:
        data = self.download_file(bucket, object_name)
        Path(file_path).write_bytes(data)

    def delete_object(self, bucket: str, object_name: str) -> None:
        if bucket in self._objects and object_name in self._objects[bucket]:
            del self._objects[bucket][object_name]

    def object_exists(self, bucket: str, object_name: str) -> bool:
        return bucket in self._objects and object_name in self._objects[bucket]

    def get_presigned_url(
        self,
        bucket: str,
        object_name: str,
        expires_seconds: int = 3600,
    ) -> str:
        return f"http://localhost:9000/{bucket}/{object_name}?expires={expires_seconds}"

    def is_available(self) -> bool:
        return self._available

    def set_available(self, available: bool) -> None:
        self._available = available

    def clear(self) -> None:
        self._objects.clear()


@pytest.fixture
def mock_storage() -> MockStorageService:
    """Provide a mock storage service wired into every caller."""
    storage = MockStorageService()
    with patch("chunkflow.services.storage.get_storage_service", return_value=storage), \
            patch("chunkflow.api.v1.upload.get_storage_service", return_value=storage), \
            patch("chunkflow.api.v1.jobs.get_storage_service", return_value=storage), \
            patch("chunkflow.tasks.process.get_storage_service", return_value=storage):
        yield storage


# ─── Mock Redis (FakeRedis) ──────────────────────────────────────────────────


@pytest.fixture
def fake_redis():
    """Provide a FakeRedis instance wired into every Redis caller."""
    import fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)
    with patch("chunkflow.services.redis_manager.get_sync_client", return_value=client), \
            patch("chunkflow.services.job_tracker.get_sync_client", return_value=client), \
            patch("chunkflow.services.upload_sessions.get_sync_client", return_value=client):
        yield client
    client.flushall()


# ─── Scratch Directory ───────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def upload_tmp_dir(tmp_path: Path, monkeypatch) -> Path:
    """Point the chunk scratch directory at a per-test temp dir."""
    scratch = tmp_path / "chunkflow-scratch"
    scratch.mkdir()
    monkeypatch.setattr(get_settings(), "upload_tmp_dir", str(scratch))
    yield scratch
    shutil.rmtree(scratch, ignore_errors=True)


# ─── FastAPI Test Client ─────────────────────────────────────────────────────


@pytest.fixture
def enqueued_jobs() -> list:
    """Job records handed to the worker during a test."""
    return []


@pytest_asyncio.fixture
async def test_client(
    fake_redis,
    mock_storage: MockStorageService,
    enqueued_jobs: list,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with Redis, MinIO and Celery replaced."""
    from chunkflow.main import app
    from chunkflow.rate_limit import limiter

    limiter.enabled = False
    try:
        with patch("chunkflow.api.v1.upload.enqueue_job", side_effect=enqueued_jobs.append):
            async with AsyncClient(
                transport=ASGITransport(app=app),
                base_url="http://test",
            ) as client:
                yield client
    finally:
        limiter.enabled = True


# ─── Helpers ─────────────────────────────────────────────────────────────────


@pytest.fixture
def make_payload():
    """Factory for deterministic test bytes of a given size."""
    def _make(size: int) -> bytes:
        return bytes((i * 31 + 7) % 251 for i in range(size))
    return _make
