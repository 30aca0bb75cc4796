"""Chunk transfer engine.

Pending chunks are sent in fixed batches of ``concurrency``. A batch is a
barrier: nothing from batch N+1 is dispatched until every send of batch N
has either been confirmed or exhausted its retries.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, BinaryIO, Callable, Optional, Protocol

from chunkflow.client.api import ProgressCallback
from chunkflow.client.errors import (
    PermanentUploadError,
    TransferFailed,
    UploadCancelled,
    UploadSessionExpired,
    is_retryable,
)
from chunkflow.client.planner import chunk_range
from chunkflow.client.retry import CancellationToken, retry_async
from chunkflow.client.session_store import UploadSession, UploadSessionStore

logger = logging.getLogger(__name__)

# When several chunks of one batch fail, the most decisive error is raised
_ERROR_PRIORITY = (UploadCancelled, UploadSessionExpired, PermanentUploadError, TransferFailed)


class UploadSource(Protocol):
    """A file to upload: a name, a size and random access to its bytes."""

    name: str
    size: int

    def read_range(self, start: int, end: int) -> bytes: ...

    def open(self) -> BinaryIO: ...


class LocalFile:
    """Upload source backed by a file on disk."""

    def __init__(self, path: Path, name: Optional[str] = None):
        self.path = Path(path)
        self.name = name or self.path.name
        self.size = self.path.stat().st_size

    def read_range(self, start: int, end: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(start)
            return f.read(end - start)

    def open(self) -> BinaryIO:
        return open(self.path, "rb")


class ChunkSender(Protocol):
    def send_chunk(self, upload_id: str, index: int, data: bytes, timeout: float) -> Awaitable[None]: ...


class ChunkTransferEngine:
    """Sends the chunks of one upload session that the server has not confirmed."""

    def __init__(
        self,
        api: ChunkSender,
        sessions: UploadSessionStore,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 4.0,
        chunk_timeout: float = 120.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._api = api
        self._sessions = sessions
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._chunk_timeout = chunk_timeout
        self._sleep = sleep

    async def send(
        self,
        source: UploadSource,
        session: UploadSession,
        concurrency: int,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Send every pending chunk of ``session``.

        Raises ``TransferFailed`` once a chunk exhausts its retries. Chunks
        confirmed before that, including others in the same batch, stay
        recorded so the next attempt resumes.
        """
        pending = session.pending_indices()
        if not pending:
            return

        concurrency = max(1, concurrency)
        confirmed_bytes = sum(
            end - start
            for start, end in (
                chunk_range(session.file_size, session.chunk_size, i)
                for i in session.uploaded_chunk_indices
            )
        )
        progress = {"bytes": confirmed_bytes}

        logger.info(
            f"Upload {session.upload_id}: sending {len(pending)} of {session.total_chunks} chunks, "
            f"{concurrency} at a time"
        )

        for b in range(0, len(pending), concurrency):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            batch = pending[b:b + concurrency]
            outcomes = await asyncio.gather(
                *(
                    self._send_chunk(source, session, index, cancel_token, on_progress, progress)
                    for index in batch
                ),
                return_exceptions=True,
            )

            errors = [o for o in outcomes if isinstance(o, BaseException)]
            if errors:
                raise _most_decisive(errors)

    async def _send_chunk(
        self,
        source: UploadSource,
        session: UploadSession,
        index: int,
        cancel_token: Optional[CancellationToken],
        on_progress: Optional[ProgressCallback],
        progress: dict,
    ) -> None:
        start, end = chunk_range(session.file_size, session.chunk_size, index)
        data = await asyncio.to_thread(source.read_range, start, end)
        if len(data) != end - start:
            raise TransferFailed(
                f"Read {len(data)} bytes for chunk {index}, expected {end - start}",
                chunk_index=index,
                hint="The file changed while it was being uploaded. Select it again.",
            )

        async def attempt() -> None:
            await asyncio.wait_for(
                self._api.send_chunk(session.upload_id, index, data, self._chunk_timeout),
                timeout=self._chunk_timeout,
            )

        try:
            await retry_async(
                attempt,
                attempts=self._max_attempts,
                base_delay=self._base_delay,
                max_delay=self._max_delay,
                cancel_token=cancel_token,
                description=f"Chunk {index} of upload {session.upload_id}",
                sleep=self._sleep,
            )
        except Exception as e:
            if is_retryable(e):
                raise TransferFailed(
                    f"Chunk {index} failed after {self._max_attempts} attempts: {e}",
                    chunk_index=index,
                ) from e
            raise

        # A confirmation that lands after cancellation is not recorded
        if cancel_token is not None and cancel_token.cancelled:
            raise UploadCancelled()

        session.uploaded_chunk_indices.add(index)
        self._sessions.save(session)

        progress["bytes"] += end - start
        if on_progress is not None:
            on_progress(progress["bytes"], session.file_size)


def _most_decisive(errors: list[BaseException]) -> BaseException:
    for kind in _ERROR_PRIORITY:
        for error in errors:
            if isinstance(error, kind):
                return error
    return errors[0]
