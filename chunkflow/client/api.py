"""HTTP wire client for the upload and job endpoints.

Maps HTTP outcomes onto the client error taxonomy: retryable statuses become
``TransientHttpError``, 404s become the expiry error of whatever the caller
was addressing, every other 4xx is a ``PermanentUploadError``.
"""

import json
import logging
from typing import Any, BinaryIO, Callable, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from chunkflow.client.errors import (
    RETRYABLE_STATUS_CODES,
    JobSessionExpired,
    MalformedResponse,
    PermanentUploadError,
    TransientHttpError,
    UploadSessionExpired,
)
from chunkflow.schemas.job import JobCreated, JobStatusResponse
from chunkflow.schemas.upload import (
    ChunkAccepted,
    UploadCompleteRequest,
    UploadInitRequest,
    UploadInitResponse,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

ProgressCallback = Callable[[int, int], None]

# Handle for a created job, as returned by every upload path
JobHandle = JobCreated

DEFAULT_TIMEOUT = 30.0


class _ProgressReader:
    """File wrapper reporting bytes handed to the HTTP stream."""

    def __init__(self, fileobj: BinaryIO, total: int, on_progress: Optional[ProgressCallback]):
        self._f = fileobj
        self._total = total
        self._on_progress = on_progress
        self._reported = 0

    def read(self, size: int = -1) -> bytes:
        data = self._f.read(size)
        if data and self._on_progress is not None:
            position = min(self._f.tell(), self._total)
            # Rewinds (length probing, retries) must not move progress backwards
            if position > self._reported:
                self._reported = position
                self._on_progress(position, self._total)
        return data

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._f.seek(offset, whence)

    def tell(self) -> int:
        return self._f.tell()


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)[:200]


def _raise_for_status(
    response: httpx.Response,
    on_not_found: Optional[Callable[[], Exception]] = None,
) -> None:
    if response.is_success:
        return

    code = response.status_code
    if code in RETRYABLE_STATUS_CODES:
        raise TransientHttpError(code, _detail(response))
    if code == 404 and on_not_found is not None:
        raise on_not_found()
    raise PermanentUploadError(code, _detail(response))


def _parse(response: httpx.Response, model: Type[M]) -> M:
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise MalformedResponse(f"Unexpected response from {response.request.url}: {e}") from e


class UploadApi:
    """Async client for ``/api/v1``.

    Pass ``client`` to share a connection pool or to inject a test
    transport; otherwise the instance owns its own ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "UploadApi":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ─── Health ─────────────────────────────────────────────────────────────

    async def ping(self, timeout: float) -> None:
        """One round trip to the liveness endpoint."""
        response = await self._client.get(self._url("/health/live"), timeout=timeout)
        _raise_for_status(response)

    # ─── Uploads ────────────────────────────────────────────────────────────

    async def upload_single(
        self,
        file_name: str,
        fileobj: BinaryIO,
        size: int,
        tool_type: str,
        options: Optional[dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
        idempotency_key: Optional[str] = None,
    ) -> JobHandle:
        """Send the whole file as one multipart request.

        Resends carrying the same ``idempotency_key`` get the job of the
        first request the server accepted.
        """
        data = {"tool_type": tool_type}
        if options:
            data["options"] = json.dumps(options)

        # None would disable the timeout entirely; omit it to keep the client default
        extra = {"timeout": timeout} if timeout is not None else {}
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        reader = _ProgressReader(fileobj, size, on_progress)
        response = await self._client.post(
            self._url("/upload"),
            data=data,
            files={"file": (file_name, reader, "application/octet-stream")},
            headers=headers,
            **extra,
        )
        _raise_for_status(response)
        return _parse(response, JobCreated)

    async def init_upload(
        self,
        file_name: str,
        file_size: int,
        total_chunks: int,
        chunk_size: int,
        tool_type: str,
        options: Optional[dict[str, Any]] = None,
    ) -> UploadInitResponse:
        """Open a chunked upload; the response carries the canonical plan."""
        body = UploadInitRequest(
            filename=file_name,
            total_size=file_size,
            total_chunks=total_chunks,
            chunk_size=chunk_size,
            tool_type=tool_type,
            options=options or {},
        )
        response = await self._client.post(self._url("/upload/init"), json=body.to_wire())
        _raise_for_status(response)
        return _parse(response, UploadInitResponse)

    async def send_chunk(self, upload_id: str, index: int, data: bytes, timeout: float) -> None:
        response = await self._client.post(
            self._url("/upload/chunk"),
            content=data,
            headers={
                "Content-Type": "application/octet-stream",
                "X-Upload-Id": upload_id,
                "X-Chunk-Index": str(index),
            },
            timeout=timeout,
        )
        _raise_for_status(
            response,
            on_not_found=lambda: UploadSessionExpired(f"Upload {upload_id} not found"),
        )
        accepted = _parse(response, ChunkAccepted)
        if accepted.index != index:
            raise MalformedResponse(f"Server acknowledged chunk {accepted.index}, expected {index}")

    async def complete_upload(self, upload_id: str) -> JobHandle:
        response = await self._client.post(
            self._url("/upload/complete"),
            json=UploadCompleteRequest(upload_id=upload_id).to_wire(),
        )
        _raise_for_status(
            response,
            on_not_found=lambda: UploadSessionExpired(f"Upload {upload_id} not found"),
        )
        return _parse(response, JobCreated)

    # ─── Jobs ───────────────────────────────────────────────────────────────

    async def get_job_status(self, job_id: str) -> JobStatusResponse:
        """Fetch one status snapshot. Raises ``JobSessionExpired`` on 404."""
        response = await self._client.get(self._url(f"/job/{job_id}"))
        _raise_for_status(response, on_not_found=lambda: JobSessionExpired(job_id))
        return _parse(response, JobStatusResponse)
