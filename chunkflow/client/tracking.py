"""Submit, resume and track jobs against a route."""

import logging
from pathlib import Path
from typing import Any, Optional

import httpx

from chunkflow.client.api import JobHandle, ProgressCallback, UploadApi
from chunkflow.client.correlator import JobSessionCorrelator, NavigableLocation
from chunkflow.client.lifecycle import JobTransition
from chunkflow.client.poller import ExpiredCallback, JobPoller, TransitionCallback
from chunkflow.client.retry import CancellationToken
from chunkflow.client.session_store import JsonFileStore, UploadSessionStore
from chunkflow.client.strategy import Uploader
from chunkflow.client.transfer import UploadSource
from chunkflow.config import ClientSettings, get_client_settings
from chunkflow.schemas.job import JobStatusResponse

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "session.json"


class JobTrackingSession:
    """One route's view of its job: upload, remember, poll, forget.

    The job pointer is cleared once the job is terminal or has expired, so
    a later ``resume`` does not re-attach to it.
    """

    def __init__(
        self,
        uploader: Uploader,
        correlator: JobSessionCorrelator,
        poller: JobPoller,
        api: Optional[UploadApi] = None,
    ):
        self.uploader = uploader
        self.correlator = correlator
        self.poller = poller
        self.api = api

    @classmethod
    def from_settings(
        cls,
        location: NavigableLocation,
        settings: Optional[ClientSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "JobTrackingSession":
        """Wire a session from client settings.

        The upload session and the job pointers share one state file under
        ``settings.state_dir``.
        """
        settings = settings or get_client_settings()
        api = UploadApi(settings.base_url, client=client)
        store = JsonFileStore(Path(settings.state_dir) / STATE_FILE_NAME)
        uploader = Uploader(api, UploadSessionStore(store), settings)
        poller = JobPoller(api.get_job_status, interval=settings.poll_interval_seconds)
        return cls(uploader, JobSessionCorrelator(location, store), poller, api=api)

    async def submit(
        self,
        source: UploadSource,
        route: str,
        tool_type: str,
        options: Optional[dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> JobHandle:
        """Upload ``source`` and remember its job under ``route``.

        The job pointer is persisted before the upload session is cleared.
        """
        return await self.uploader.upload(
            source,
            tool_type,
            options,
            cancel_token,
            on_progress,
            on_job=lambda handle: self.correlator.persist(route, handle.job_id),
        )

    def resume(self, route: str) -> Optional[str]:
        """Job id left by an earlier submit on this route, if any."""
        return self.correlator.read(route)

    def track(
        self,
        job_id: str,
        route: str,
        on_transition: TransitionCallback,
        on_expired: Optional[ExpiredCallback] = None,
    ) -> None:
        """Start polling. Await ``poller.wait()`` to block until it ends."""
        def handle_transition(result: JobTransition, snapshot: JobStatusResponse) -> None:
            if result.is_terminal:
                self.correlator.clear(route)
            on_transition(result, snapshot)

        def handle_expired(expired_job_id: str) -> None:
            logger.info(f"Job {expired_job_id} on {route} expired, clearing pointer")
            self.correlator.clear(route)
            if on_expired is not None:
                on_expired(expired_job_id)

        self.poller.start(job_id, handle_transition, handle_expired)

    def stop(self) -> None:
        self.poller.stop()

    async def aclose(self) -> None:
        self.stop()
        await self.poller.wait()
        if self.api is not None:
            await self.api.aclose()
