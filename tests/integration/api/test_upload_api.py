"""Integration tests for the upload endpoints.

Covers the single-request path and the chunked init/chunk/complete protocol,
including idempotent chunk re-sends and idempotent completion.
"""

import json
import math

import pytest
from httpx import AsyncClient
from unittest.mock import patch

from chunkflow.config import get_settings
from chunkflow.services import job_tracker, upload_sessions

settings = get_settings()


async def _init(client: AsyncClient, total_size: int, chunk_size: int, **extra) -> dict:
    body = {
        "filename": "video.mp4",
        "totalSize": total_size,
        "totalChunks": math.ceil(total_size / chunk_size),
        "chunkSize": chunk_size,
        "toolType": "transcode",
    }
    body.update(extra)
    response = await client.post("/api/v1/upload/init", json=body)
    assert response.status_code == 200, response.text
    return response.json()


async def _send(client: AsyncClient, upload_id: str, index: int, data: bytes):
    return await client.post(
        "/api/v1/upload/chunk",
        content=data,
        headers={"X-Upload-Id": upload_id, "X-Chunk-Index": str(index)},
    )


async def _upload_all(client: AsyncClient, payload: bytes, chunk_size: int) -> str:
    init = await _init(client, len(payload), chunk_size)
    for i in range(init["totalChunks"]):
        response = await _send(client, init["uploadId"], i, payload[i * chunk_size:(i + 1) * chunk_size])
        assert response.status_code == 200, response.text
    return init["uploadId"]


def _fail_first_enqueue(enqueued_jobs: list):
    """Side effect for enqueue_job that loses the first job and keeps the rest."""
    calls = []

    def _enqueue(record):
        calls.append(record)
        if len(calls) == 1:
            raise ConnectionError("Broker connection lost")
        enqueued_jobs.append(record)

    return _enqueue


class TestSingleUpload:
    """Tests for POST /upload."""

    @pytest.mark.asyncio
    async def test_single_upload_creates_queued_job(
        self, test_client: AsyncClient, mock_storage, enqueued_jobs, make_payload,
    ):
        """Test that a multipart upload stores the file and queues one job."""
        payload = make_payload(4096)

        response = await test_client.post(
            "/api/v1/upload",
            data={"tool_type": "transcode", "options": json.dumps({"format": "webm"})},
            files={"file": ("clip.mp4", payload, "video/mp4")},
        )

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "queued"
        job_id = data["jobId"]

        record = job_tracker.get_job(job_id)
        assert record.file_size == 4096
        assert record.options == {"format": "webm"}
        assert mock_storage.download_file(settings.minio_bucket_uploads, record.object_name) == payload
        assert [r.job_id for r in enqueued_jobs] == [job_id]

    @pytest.mark.asyncio
    async def test_single_upload_rejects_empty_file(self, test_client: AsyncClient):
        """Test that an empty file is a 400."""
        response = await test_client.post(
            "/api/v1/upload",
            data={"tool_type": "transcode"},
            files={"file": ("empty.bin", b"", "application/octet-stream")},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_single_upload_rejects_bad_options(self, test_client: AsyncClient):
        """Test that options must be a JSON object."""
        response = await test_client.post(
            "/api/v1/upload",
            data={"tool_type": "transcode", "options": "[1, 2]"},
            files={"file": ("clip.mp4", b"abc", "video/mp4")},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_single_upload_503_when_queue_full(self, test_client: AsyncClient):
        """Test that backpressure turns uploads away with a retryable 503."""
        with patch("chunkflow.services.job_queue.queue_depth", return_value=settings.queue_hard_limit):
            response = await test_client.post(
                "/api/v1/upload",
                data={"tool_type": "transcode"},
                files={"file": ("clip.mp4", b"abc", "video/mp4")},
            )

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_single_upload_same_idempotency_key_returns_same_job(
        self, test_client: AsyncClient, enqueued_jobs, make_payload,
    ):
        """Test that a resent upload with the same key does not create a second job."""
        payload = make_payload(512)

        async def send():
            return await test_client.post(
                "/api/v1/upload",
                data={"tool_type": "transcode"},
                files={"file": ("clip.mp4", payload, "video/mp4")},
                headers={"Idempotency-Key": "attempt-1"},
            )

        first = await send()
        second = await send()

        assert first.status_code == 202
        assert second.status_code == 202
        assert first.json()["jobId"] == second.json()["jobId"]
        assert len(enqueued_jobs) == 1
        assert job_tracker.queue_depth() == 1

    @pytest.mark.asyncio
    async def test_single_upload_resend_answered_while_queue_full(
        self, test_client: AsyncClient, enqueued_jobs, make_payload,
    ):
        """Test that a resend of an accepted upload gets its job even under backpressure."""
        payload = make_payload(256)

        async def send():
            return await test_client.post(
                "/api/v1/upload",
                data={"tool_type": "transcode"},
                files={"file": ("clip.mp4", payload, "video/mp4")},
                headers={"Idempotency-Key": "attempt-3"},
            )

        first = await send()
        with patch("chunkflow.services.job_queue.queue_depth", return_value=settings.queue_hard_limit):
            resend = await send()

        assert resend.status_code == 202
        assert resend.json()["jobId"] == first.json()["jobId"]
        assert len(enqueued_jobs) == 1

    @pytest.mark.asyncio
    async def test_single_upload_rejects_malformed_idempotency_key(self, test_client: AsyncClient):
        """Test that an unusable key is a 400."""
        response = await test_client.post(
            "/api/v1/upload",
            data={"tool_type": "transcode"},
            files={"file": ("clip.mp4", b"abc", "video/mp4")},
            headers={"Idempotency-Key": "not a key!"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_single_upload_enqueue_failure_can_be_retried(
        self, test_client: AsyncClient, mock_storage, enqueued_jobs, make_payload,
    ):
        """Test that a job the worker never received is undone and a retry queues a fresh one."""
        payload = make_payload(512)

        async def send():
            return await test_client.post(
                "/api/v1/upload",
                data={"tool_type": "transcode"},
                files={"file": ("clip.mp4", payload, "video/mp4")},
                headers={"Idempotency-Key": "attempt-2"},
            )

        with patch("chunkflow.api.v1.upload.enqueue_job", side_effect=_fail_first_enqueue(enqueued_jobs)):
            failed = await send()
            retried = await send()

        assert failed.status_code == 503
        assert retried.status_code == 202
        job_id = retried.json()["jobId"]
        assert [r.job_id for r in enqueued_jobs] == [job_id]
        assert job_tracker.queue_depth() == 1
        assert mock_storage._objects[settings.minio_bucket_uploads] == {
            job_tracker.get_job(job_id).object_name: payload,
        }


class TestUploadInit:
    """Tests for POST /upload/init."""

    @pytest.mark.asyncio
    async def test_init_returns_canonical_plan(self, test_client: AsyncClient):
        """Test that init echoes a consistent plan and opens a session."""
        data = await _init(test_client, total_size=1000, chunk_size=256)

        assert data["chunkSize"] == 256
        assert data["totalChunks"] == 4
        assert upload_sessions.get_session(data["uploadId"]) is not None

    @pytest.mark.asyncio
    async def test_init_derives_chunk_size_when_omitted(self, test_client: AsyncClient):
        """Test that a missing chunkSize is derived from the chunk count."""
        response = await test_client.post(
            "/api/v1/upload/init",
            json={"filename": "a.bin", "totalSize": 1000, "totalChunks": 4, "toolType": "t"},
        )

        assert response.status_code == 200
        assert response.json()["chunkSize"] == 250

    @pytest.mark.asyncio
    async def test_init_rejects_inconsistent_plan(self, test_client: AsyncClient):
        """Test that totalChunks must equal ceil(totalSize / chunkSize)."""
        response = await test_client.post(
            "/api/v1/upload/init",
            json={"filename": "a.bin", "totalSize": 1000, "totalChunks": 3, "chunkSize": 256, "toolType": "t"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_init_rejects_chunk_above_ceiling(self, test_client: AsyncClient):
        """Test that the server chunk ceiling is enforced."""
        chunk = settings.max_chunk_size_bytes + 1
        response = await test_client.post(
            "/api/v1/upload/init",
            json={"filename": "a.bin", "totalSize": chunk * 2, "totalChunks": 2, "chunkSize": chunk, "toolType": "t"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_init_rejects_missing_fields(self, test_client: AsyncClient):
        """Test that validation errors are permanent 4xx responses."""
        response = await test_client.post("/api/v1/upload/init", json={"filename": "a.bin"})

        assert response.status_code == 422


class TestUploadChunk:
    """Tests for POST /upload/chunk."""

    @pytest.mark.asyncio
    async def test_chunk_accepted(self, test_client: AsyncClient, make_payload):
        """Test that a chunk is acknowledged with its index."""
        init = await _init(test_client, total_size=1000, chunk_size=256)

        response = await _send(test_client, init["uploadId"], 1, make_payload(256))

        assert response.status_code == 200
        assert response.json() == {"ok": True, "index": 1}

    @pytest.mark.asyncio
    async def test_resending_accepted_chunk_is_idempotent(self, test_client: AsyncClient, make_payload):
        """Test that re-sending an accepted index is accepted again."""
        init = await _init(test_client, total_size=1000, chunk_size=256)
        chunk = make_payload(256)

        first = await _send(test_client, init["uploadId"], 0, chunk)
        second = await _send(test_client, init["uploadId"], 0, chunk)

        assert first.status_code == 200
        assert second.status_code == 200
        meta = upload_sessions.get_session(init["uploadId"])
        assert upload_sessions.missing_chunks(meta) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_short_last_chunk_accepted(self, test_client: AsyncClient, make_payload):
        """Test that only the last chunk may be shorter than chunkSize."""
        init = await _init(test_client, total_size=1000, chunk_size=256)

        last = await _send(test_client, init["uploadId"], 3, make_payload(1000 - 3 * 256))
        short_middle = await _send(test_client, init["uploadId"], 2, make_payload(100))

        assert last.status_code == 200
        assert short_middle.status_code == 400

    @pytest.mark.asyncio
    async def test_chunk_index_out_of_range(self, test_client: AsyncClient, make_payload):
        """Test that an index past the plan is rejected."""
        init = await _init(test_client, total_size=1000, chunk_size=256)

        response = await _send(test_client, init["uploadId"], 4, make_payload(256))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_chunk_for_unknown_upload_is_404(self, test_client: AsyncClient):
        """Test that an unknown or expired session is a 404."""
        response = await _send(test_client, "does-not-exist", 0, b"abc")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_chunk_requires_headers(self, test_client: AsyncClient):
        """Test that the addressing headers are required."""
        response = await test_client.post("/api/v1/upload/chunk", content=b"abc")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_chunk_above_ceiling_rejected_from_headers(
        self, test_client: AsyncClient, make_payload, monkeypatch,
    ):
        """Test that an oversized chunk is refused on its Content-Length."""
        init = await _init(test_client, total_size=256, chunk_size=64)
        monkeypatch.setattr(settings, "max_chunk_size_bytes", 100)

        with patch("chunkflow.api.v1.upload.upload_sessions.store_chunk") as store_chunk:
            response = await _send(test_client, init["uploadId"], 0, make_payload(150))

        assert response.status_code == 413
        store_chunk.assert_not_called()


class TestUploadComplete:
    """Tests for POST /upload/complete."""

    @pytest.mark.asyncio
    async def test_complete_assembles_and_queues(
        self, test_client: AsyncClient, mock_storage, enqueued_jobs, make_payload, upload_tmp_dir,
    ):
        """Test that completion stores the assembled file and queues a job."""
        payload = make_payload(1000)
        upload_id = await _upload_all(test_client, payload, 256)

        response = await test_client.post("/api/v1/upload/complete", json={"uploadId": upload_id})

        assert response.status_code == 202
        job_id = response.json()["jobId"]
        record = job_tracker.get_job(job_id)
        assert record.upload_id == upload_id
        assert record.file_size == 1000
        assert mock_storage.download_file(settings.minio_bucket_uploads, record.object_name) == payload
        assert len(enqueued_jobs) == 1
        # Session and chunk files are gone
        assert upload_sessions.get_session(upload_id) is None
        assert not (upload_tmp_dir / "chunks" / upload_id).exists()

    @pytest.mark.asyncio
    async def test_complete_twice_returns_same_job(
        self, test_client: AsyncClient, enqueued_jobs, make_payload,
    ):
        """Test that a repeated completion returns the first job, not a new one."""
        upload_id = await _upload_all(test_client, make_payload(600), 256)

        first = await test_client.post("/api/v1/upload/complete", json={"uploadId": upload_id})
        second = await test_client.post("/api/v1/upload/complete", json={"uploadId": upload_id})

        assert first.status_code == 202
        assert second.status_code == 202
        assert first.json()["jobId"] == second.json()["jobId"]
        assert len(enqueued_jobs) == 1

    @pytest.mark.asyncio
    async def test_complete_losing_reservation_returns_winner(
        self, test_client: AsyncClient, enqueued_jobs, make_payload, fake_redis,
    ):
        """Test that a completion racing another one hands out the winner's job."""
        upload_id = await _upload_all(test_client, make_payload(600), 256)
        winner = job_tracker.create_job("transcode", "video.mp4", "uploads/x/video.mp4")

        with patch("chunkflow.api.v1.upload.upload_sessions.existing_job_for", return_value=None):
            fake_redis.set(f"{upload_sessions.COMPLETE_KEY_PREFIX}{upload_id}", winner.job_id)
            response = await test_client.post("/api/v1/upload/complete", json={"uploadId": upload_id})

        assert response.json()["jobId"] == winner.job_id
        assert enqueued_jobs == []
        # Only the winner remains in the queue index
        assert job_tracker.queue_depth() == 1

    @pytest.mark.asyncio
    async def test_complete_with_missing_chunks_is_400(self, test_client: AsyncClient, make_payload):
        """Test that completion refuses an upload with missing chunks."""
        init = await _init(test_client, total_size=1000, chunk_size=256)
        await _send(test_client, init["uploadId"], 0, make_payload(256))

        response = await test_client.post("/api/v1/upload/complete", json={"uploadId": init["uploadId"]})

        assert response.status_code == 400
        assert "Missing chunk 1" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_complete_unknown_upload_is_404(self, test_client: AsyncClient):
        """Test that completing an unknown upload is a 404."""
        response = await test_client.post("/api/v1/upload/complete", json={"uploadId": "nope"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_complete_storage_failure_marks_job_failed(
        self, test_client: AsyncClient, mock_storage, enqueued_jobs, make_payload,
    ):
        """Test that an assembly failure yields a failed job instead of a 500."""
        upload_id = await _upload_all(test_client, make_payload(600), 256)

        with patch.object(mock_storage, "upload_path", side_effect=RuntimeError("MinIO storage is not available")):
            response = await test_client.post("/api/v1/upload/complete", json={"uploadId": upload_id})

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "failed"
        assert job_tracker.get_job(data["jobId"]).error
        assert enqueued_jobs == []

    @pytest.mark.asyncio
    async def test_complete_enqueue_failure_can_be_retried(
        self, test_client: AsyncClient, enqueued_jobs, make_payload, fake_redis,
    ):
        """Test that a completion whose job never reached the worker is not handed out again."""
        payload = make_payload(600)
        upload_id = await _upload_all(test_client, payload, 256)

        with patch("chunkflow.api.v1.upload.enqueue_job", side_effect=_fail_first_enqueue(enqueued_jobs)):
            failed = await test_client.post("/api/v1/upload/complete", json={"uploadId": upload_id})
            assert failed.status_code == 503
            assert fake_redis.get(f"{upload_sessions.COMPLETE_KEY_PREFIX}{upload_id}") is None
            assert job_tracker.queue_depth() == 0

            retried = await test_client.post("/api/v1/upload/complete", json={"uploadId": upload_id})

        assert retried.status_code == 202
        job_id = retried.json()["jobId"]
        assert [r.job_id for r in enqueued_jobs] == [job_id]
        assert job_tracker.get_job(job_id).upload_id == upload_id
        again = await test_client.post("/api/v1/upload/complete", json={"uploadId": upload_id})
        assert again.json()["jobId"] == job_id
