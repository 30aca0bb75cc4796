"""Tests for the job processing task.

The task is called directly, which runs it synchronously in the test
process with Redis and MinIO replaced by fakes.
"""

import io

import pytest

from chunkflow.config import get_settings
from chunkflow.schemas.job import JobStatus
from chunkflow.services import job_tracker
from chunkflow.tasks import process
from chunkflow.tasks.process import process_job_task

settings = get_settings()


@pytest.fixture
def uploaded_job(fake_redis, mock_storage):
    """A queued job whose upload is already in object storage."""
    record = job_tracker.create_job("transcode", "clip.mp4", "uploads/j1/clip.mp4", file_size=5)
    mock_storage.upload_file(settings.minio_bucket_uploads, record.object_name, io.BytesIO(b"hello"), 5)
    return record


class TestProcessJobTask:
    """Tests for process_job_task."""

    def test_passthrough_completes_with_result(self, uploaded_job, mock_storage):
        """Test that the default processor publishes the upload as the result."""
        outcome = process_job_task(uploaded_job.job_id)

        assert outcome["status"] == "completed"
        record = job_tracker.get_job(uploaded_job.job_id)
        assert record.status == JobStatus.COMPLETED
        assert record.progress == 100
        assert record.result == {
            "downloadUrl": f"{settings.api_v1_prefix}/download/{uploaded_job.job_id}",
            "fileName": "clip.mp4",
            "size": 5,
        }
        assert mock_storage.download_file(settings.minio_bucket_results, record.result_object) == b"hello"

    def test_processed_upload_is_deleted(self, uploaded_job, mock_storage):
        """Test that the input object is removed after success."""
        process_job_task(uploaded_job.job_id)

        assert not mock_storage.object_exists(settings.minio_bucket_uploads, uploaded_job.object_name)

    def test_registered_processor_is_used(self, uploaded_job, mock_storage, monkeypatch):
        """Test that the processor registered for the tool type runs."""
        def shout(input_path, work_dir, options, report):
            report(50, "Shouting...")
            out = work_dir / "shout.txt"
            out.write_bytes(input_path.read_bytes().upper())
            return out

        monkeypatch.setitem(process._PROCESSORS, "transcode", shout)

        process_job_task(uploaded_job.job_id)

        record = job_tracker.get_job(uploaded_job.job_id)
        assert record.result["fileName"] == "shout.txt"
        assert mock_storage.download_file(settings.minio_bucket_results, record.result_object) == b"HELLO"

    def test_processor_progress_never_goes_back(self, uploaded_job, monkeypatch):
        """Test that a processor reporting lower progress cannot regress the job."""
        seen = []

        def wobbly(input_path, work_dir, options, report):
            report(80, "almost")
            report(20, "oops")
            seen.append(job_tracker.get_job(uploaded_job.job_id).progress)
            return input_path

        monkeypatch.setitem(process._PROCESSORS, "transcode", wobbly)

        process_job_task(uploaded_job.job_id)

        assert seen == [74]

    def test_missing_upload_fails_job(self, fake_redis, mock_storage):
        """Test that a processing error marks the job failed with a message."""
        record = job_tracker.create_job("transcode", "gone.mp4", "uploads/none/gone.mp4")

        outcome = process_job_task(record.job_id)

        assert outcome["status"] == "failed"
        failed = job_tracker.get_job(record.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.error

    def test_terminal_job_is_skipped(self, uploaded_job, mock_storage):
        """Test that a redelivered task does not touch a finished job."""
        job_tracker.update_job(uploaded_job.job_id, status=JobStatus.FAILED, error="cancelled")

        outcome = process_job_task(uploaded_job.job_id)

        assert outcome["status"] == "failed"
        assert mock_storage.object_exists(settings.minio_bucket_uploads, uploaded_job.object_name)

    def test_unknown_job_is_skipped(self, fake_redis, mock_storage):
        """Test that an expired job is skipped."""
        assert process_job_task("missing")["status"] == "missing"
