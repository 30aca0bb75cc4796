"""Fixed-interval job status polling."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from chunkflow.client.errors import ChunkflowError, JobSessionExpired
from chunkflow.client.lifecycle import JobTransition, transition
from chunkflow.schemas.job import JobStatusResponse

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[JobTransition, JobStatusResponse], None]
ExpiredCallback = Callable[[str], None]


class JobPoller:
    """Polls one job until it is terminal, expires, or ``stop()`` is called.

    A failed poll is not a failed job: transport errors and unexpected
    responses are logged and the next tick tries again. A 404 calls
    ``on_expired`` once and ends polling.
    """

    def __init__(
        self,
        fetch_status: Callable[[str], Awaitable[JobStatusResponse]],
        interval: float = 1.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._fetch_status = fetch_status
        self._interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._run_token: Optional[object] = None
        self.job_id: Optional[str] = None
        self.expired = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and self._run_token is not None

    def start(
        self,
        job_id: str,
        on_transition: TransitionCallback,
        on_expired: Optional[ExpiredCallback] = None,
    ) -> None:
        if self.running:
            raise RuntimeError(f"Already polling job {self.job_id}")

        token = object()
        self._run_token = token
        self.job_id = job_id
        self.expired = False
        self._task = asyncio.create_task(self._run(token, job_id, on_transition, on_expired))

    def stop(self) -> None:
        """Stop polling. Safe to call repeatedly and from inside a callback."""
        if self._run_token is None:
            return
        self._run_token = None

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait(self) -> None:
        """Wait until polling ends. Re-raises an exception from a callback."""
        task = self._task
        if task is None:
            return
        await asyncio.wait([task])
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()

    def _active(self, token: object) -> bool:
        return self._run_token is token

    async def _run(
        self,
        token: object,
        job_id: str,
        on_transition: TransitionCallback,
        on_expired: Optional[ExpiredCallback],
    ) -> None:
        while self._active(token):
            try:
                snapshot = await self._fetch_status(job_id)
            except JobSessionExpired:
                if self._active(token):
                    logger.info(f"Job {job_id} expired on the server")
                    self.expired = True
                    self._run_token = None
                    if on_expired is not None:
                        on_expired(job_id)
                return
            except (ChunkflowError, httpx.HTTPError, asyncio.TimeoutError) as e:
                logger.warning(f"Polling job {job_id} failed, retrying: {e!r}")
            else:
                if not self._active(token):
                    return
                result = transition(snapshot)
                if result.is_terminal:
                    self._run_token = None
                on_transition(result, snapshot)
                if result.is_terminal:
                    return

            await self._sleep(self._interval)
