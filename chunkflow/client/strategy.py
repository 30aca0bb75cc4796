"""Upload strategy: one multipart request for small files, resumable chunks otherwise."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from chunkflow.client.api import JobHandle, ProgressCallback, UploadApi
from chunkflow.client.errors import TransferFailed, UploadSessionExpired, is_retryable
from chunkflow.client.planner import plan_chunks
from chunkflow.client.prober import ConnectionProber, SpeedClass
from chunkflow.client.retry import CancellationToken, retry_async
from chunkflow.client.session_store import UploadSession, UploadSessionStore
from chunkflow.client.transfer import ChunkTransferEngine, UploadSource
from chunkflow.config import ClientSettings, get_client_settings

logger = logging.getLogger(__name__)


class Uploader:
    """Turns a file into exactly one job on the server.

    A chunked upload interrupted by a crash, a cancellation or a
    ``TransferFailed`` resumes on the next ``upload()`` of the same file;
    ``abandon()`` forgets it instead.

    ``on_job`` is called with the new job before the chunked session is
    cleared. If it raises, the session keeps the job id and the next
    ``upload()`` of the same file hands that job back without re-sending.
    """

    def __init__(
        self,
        api: UploadApi,
        sessions: UploadSessionStore,
        settings: Optional[ClientSettings] = None,
        prober: Optional[ConnectionProber] = None,
        is_mobile: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_client_settings()
        self._api = api
        self._sessions = sessions
        self._is_mobile = self.settings.is_mobile if is_mobile is None else is_mobile
        self._sleep = sleep
        self._prober = prober or ConnectionProber(
            api.ping,
            timeout=self.settings.probe_timeout_seconds,
            ttl=self.settings.probe_ttl_seconds,
            fast_threshold_ms=self.settings.probe_fast_threshold_ms,
            medium_threshold_ms=self.settings.probe_medium_threshold_ms,
        )
        self._engine = ChunkTransferEngine(
            api,
            sessions,
            max_attempts=self.settings.chunk_max_attempts,
            base_delay=self.settings.chunk_retry_base_delay,
            max_delay=self.settings.chunk_retry_max_delay,
            chunk_timeout=self.settings.chunk_timeout_seconds,
            sleep=sleep,
        )

    async def upload(
        self,
        source: UploadSource,
        tool_type: str,
        options: Optional[dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_job: Optional[Callable[[JobHandle], None]] = None,
    ) -> JobHandle:
        if source.size < self.settings.single_upload_threshold_bytes:
            handle = await self._upload_single(source, tool_type, options, cancel_token, on_progress)
            if on_job is not None:
                on_job(handle)
            return handle
        return await self._upload_chunked(source, tool_type, options, cancel_token, on_progress, on_job)

    def abandon(self) -> None:
        """Forget the persisted chunked upload, if any."""
        self._sessions.clear()

    # ─── Single request ─────────────────────────────────────────────────────

    async def _upload_single(
        self,
        source: UploadSource,
        tool_type: str,
        options: Optional[dict[str, Any]],
        cancel_token: Optional[CancellationToken],
        on_progress: Optional[ProgressCallback],
    ) -> JobHandle:
        # One key for every attempt, so a resend after a lost response is not a second job
        idempotency_key = uuid4().hex

        async def attempt() -> JobHandle:
            with source.open() as f:
                return await self._api.upload_single(
                    source.name,
                    f,
                    source.size,
                    tool_type,
                    options,
                    on_progress,
                    idempotency_key=idempotency_key,
                )

        try:
            handle = await self._retry(
                attempt,
                self.settings.single_upload_max_attempts,
                cancel_token,
                f"Upload of {source.name}",
            )
        except Exception as e:
            if is_retryable(e):
                raise TransferFailed(f"Upload of {source.name} failed: {e}") from e
            raise

        if cancel_token is not None and cancel_token.cancelled:
            logger.info(f"Upload of {source.name} was cancelled, dropping job {handle.job_id}")
            cancel_token.raise_if_cancelled()

        logger.info(f"Uploaded {source.name} in one request, job {handle.job_id}")
        return handle

    # ─── Chunked ────────────────────────────────────────────────────────────

    async def _upload_chunked(
        self,
        source: UploadSource,
        tool_type: str,
        options: Optional[dict[str, Any]],
        cancel_token: Optional[CancellationToken],
        on_progress: Optional[ProgressCallback],
        on_job: Optional[Callable[[JobHandle], None]],
    ) -> JobHandle:
        session = self._sessions.load_for(source.name, source.size)

        if session is not None and session.job_id:
            logger.info(f"Upload {session.upload_id} already completed as job {session.job_id}")
            handle = JobHandle(job_id=session.job_id)
            self._finish(session, handle, on_job)
            return handle

        if session is None:
            session = await self._start_session(source, tool_type, options, cancel_token)
        else:
            logger.info(
                f"Resuming upload {session.upload_id}: "
                f"{len(session.uploaded_chunk_indices)}/{session.total_chunks} chunks confirmed"
            )

        try:
            await self._engine.send(source, session, session.parallelism, cancel_token, on_progress)
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            handle = await self._complete(session, cancel_token)
        except UploadSessionExpired:
            logger.warning(f"Server no longer knows upload {session.upload_id}, discarding it")
            self._sessions.clear()
            raise

        session.job_id = handle.job_id
        self._sessions.save(session)
        self._finish(session, handle, on_job)

        logger.info(f"Upload {session.upload_id} completed, job {handle.job_id}")
        return handle

    def _finish(
        self,
        session: UploadSession,
        handle: JobHandle,
        on_job: Optional[Callable[[JobHandle], None]],
    ) -> None:
        if on_job is not None:
            on_job(handle)
        self._sessions.clear()

    async def _start_session(
        self,
        source: UploadSource,
        tool_type: str,
        options: Optional[dict[str, Any]],
        cancel_token: Optional[CancellationToken],
    ) -> UploadSession:
        # Mobile plans ignore the speed class, so skip the probe
        speed = SpeedClass.SLOW if self._is_mobile else await self._prober.measure()
        plan = plan_chunks(
            source.size,
            self._is_mobile,
            speed,
            small_chunk_size=self.settings.small_chunk_size_bytes,
            medium_chunk_size=self.settings.medium_chunk_size_bytes,
            max_chunk_size=self.settings.max_chunk_size_bytes,
        )

        init = await self._retry(
            lambda: self._api.init_upload(
                source.name,
                source.size,
                plan.total_chunks,
                plan.chunk_size,
                tool_type,
                options,
            ),
            self.settings.chunk_max_attempts,
            cancel_token,
            f"Starting upload of {source.name}",
        )

        # The server's plan is canonical
        session = UploadSession(
            upload_id=init.upload_id,
            file_name=source.name,
            file_size=source.size,
            total_chunks=init.total_chunks,
            chunk_size=init.chunk_size,
            parallelism=plan.parallelism,
        )
        self._sessions.save(session)

        logger.info(
            f"Started upload {session.upload_id} ({speed.value} connection): "
            f"{session.total_chunks} x {session.chunk_size} bytes, parallelism {session.parallelism}"
        )
        return session

    async def _complete(
        self,
        session: UploadSession,
        cancel_token: Optional[CancellationToken],
    ) -> JobHandle:
        """Finalize the upload. The server returns the same job for repeated calls."""
        try:
            return await self._retry(
                lambda: self._api.complete_upload(session.upload_id),
                self.settings.chunk_max_attempts,
                cancel_token,
                f"Completing upload {session.upload_id}",
            )
        except Exception as e:
            if is_retryable(e):
                raise TransferFailed(f"Could not complete upload {session.upload_id}: {e}") from e
            raise

    def _retry(self, operation, attempts: int, cancel_token, description: str):
        return retry_async(
            operation,
            attempts=attempts,
            base_delay=self.settings.chunk_retry_base_delay,
            max_delay=self.settings.chunk_retry_max_delay,
            cancel_token=cancel_token,
            description=description,
            sleep=self._sleep,
        )
