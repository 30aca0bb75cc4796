"""Server-side bookkeeping for chunked uploads.

Session metadata lives in Redis (``upload_session:{upload_id}``, TTL'd);
chunk bytes live on local disk under ``{upload_tmp_dir}/chunks/{upload_id}``
until ``complete`` assembles them. ``upload_complete:{upload_id}`` maps a
completed upload to its job so a repeated completion returns the same job,
and ``upload_single:{key}`` does the same for single-request uploads sent
with an ``Idempotency-Key`` header.
"""

import logging
import math
import os
import re
import shutil
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from redis.exceptions import WatchError

from chunkflow.config import get_settings
from chunkflow.schemas.upload import UploadSessionMeta
from chunkflow.services.redis_manager import get_sync_client

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "upload_session:"
COMPLETE_KEY_PREFIX = "upload_complete:"
IDEMPOTENCY_KEY_PREFIX = "upload_single:"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_IDEMPOTENCY_KEY = re.compile(r"[A-Za-z0-9_-]{1,128}")


class UploadValidationError(ValueError):
    """Request parameters that can never succeed (mapped to HTTP 400)."""


def safe_filename(filename: str) -> str:
    """Strip directory components and unsafe characters from a client filename."""
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).strip("._")
    return name[:200] or "upload.bin"


def chunks_root() -> Path:
    return Path(get_settings().upload_tmp_dir) / "chunks"


def chunk_dir(upload_id: str) -> Path:
    return chunks_root() / upload_id


def _chunk_path(upload_id: str, index: int) -> Path:
    return chunk_dir(upload_id) / f"chunk_{index}"


def expected_chunk_length(meta: UploadSessionMeta, index: int) -> int:
    """Byte length of chunk ``index``; only the last chunk may be short."""
    if index < meta.total_chunks - 1:
        return meta.chunk_size
    return meta.total_size - meta.chunk_size * (meta.total_chunks - 1)


def create_session(
    filename: str,
    total_size: int,
    total_chunks: int,
    tool_type: str,
    chunk_size: Optional[int] = None,
    options: Optional[dict[str, Any]] = None,
) -> UploadSessionMeta:
    """Validate a chunk plan and open an upload session.

    The returned chunk size and count are canonical: the client must use
    them for every chunk of this upload.
    """
    settings = get_settings()

    if total_size > settings.max_upload_size_bytes:
        raise UploadValidationError(
            f"File size ({total_size / (1024 * 1024):.1f} MB) exceeds maximum "
            f"({settings.max_upload_size_mb} MB)"
        )

    if chunk_size is None:
        chunk_size = math.ceil(total_size / total_chunks)
    if chunk_size > settings.max_chunk_size_bytes:
        raise UploadValidationError(
            f"Chunk size {chunk_size} exceeds the maximum of {settings.max_chunk_size_bytes} bytes"
        )
    if math.ceil(total_size / chunk_size) != total_chunks:
        raise UploadValidationError(
            f"totalChunks={total_chunks} does not match ceil({total_size} / {chunk_size})"
        )

    meta = UploadSessionMeta(
        upload_id=str(uuid4()),
        filename=safe_filename(filename),
        total_size=total_size,
        total_chunks=total_chunks,
        chunk_size=chunk_size,
        tool_type=tool_type,
        options=options or {},
    )

    chunk_dir(meta.upload_id).mkdir(parents=True, exist_ok=True)
    r = get_sync_client()
    r.setex(
        f"{SESSION_KEY_PREFIX}{meta.upload_id}",
        settings.upload_session_ttl_seconds,
        meta.model_dump_json(),
    )

    logger.info(
        f"Opened upload {meta.upload_id}: {meta.filename}, {total_size} bytes "
        f"in {total_chunks} x {chunk_size}"
    )
    return meta


def get_session(upload_id: str) -> Optional[UploadSessionMeta]:
    """Get upload session metadata, or None if unknown or expired."""
    r = get_sync_client()
    data = r.get(f"{SESSION_KEY_PREFIX}{upload_id}")
    if not data:
        return None
    return UploadSessionMeta.model_validate_json(data)


def store_chunk(meta: UploadSessionMeta, index: int, data: bytes) -> None:
    """Persist one chunk.

    Re-sending an index that was already accepted overwrites it, so a client
    retry after a lost acknowledgement is harmless.
    """
    if index < 0 or index >= meta.total_chunks:
        raise UploadValidationError(
            f"Chunk index {index} out of range (0..{meta.total_chunks - 1})"
        )

    expected = expected_chunk_length(meta, index)
    if len(data) != expected:
        raise UploadValidationError(
            f"Chunk {index} is {len(data)} bytes, expected {expected}"
        )

    target = _chunk_path(meta.upload_id, index)
    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_name(f"{target.name}.{uuid4().hex}.part")
    partial.write_bytes(data)
    os.replace(partial, target)


def missing_chunks(meta: UploadSessionMeta) -> list[int]:
    return [
        i for i in range(meta.total_chunks)
        if not _chunk_path(meta.upload_id, i).exists()
    ]


def assemble(meta: UploadSessionMeta) -> Path:
    """Concatenate all chunks in index order into one file and return its path."""
    out_dir = Path(get_settings().upload_tmp_dir) / "assembled"
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / f"{meta.upload_id}-{meta.filename}"

    try:
        with open(out_path, "wb") as out:
            for i in range(meta.total_chunks):
                with open(_chunk_path(meta.upload_id, i), "rb") as chunk:
                    shutil.copyfileobj(chunk, out)

        size = out_path.stat().st_size
        if size != meta.total_size:
            raise UploadValidationError(
                f"Assembled size {size} does not match declared size {meta.total_size}"
            )
    except Exception:
        out_path.unlink(missing_ok=True)
        raise

    return out_path


def existing_job_for(upload_id: str) -> Optional[str]:
    """Job id created by an earlier successful completion of this upload."""
    r = get_sync_client()
    return r.get(f"{COMPLETE_KEY_PREFIX}{upload_id}")


def reserve_job(upload_id: str, job_id: str) -> str:
    """Atomically bind a job id to an upload.

    Returns the bound id, which is ``job_id`` for the first caller and the
    earlier id for every later one.
    """
    return _bind(f"{COMPLETE_KEY_PREFIX}{upload_id}", job_id)


def release_job(upload_id: str, job_id: str) -> None:
    """Unbind ``job_id`` from an upload so the next completion starts over."""
    _unbind(f"{COMPLETE_KEY_PREFIX}{upload_id}", job_id)


def existing_job_for_key(idempotency_key: str) -> Optional[str]:
    """Job id created by an earlier single-request upload with this key."""
    r = get_sync_client()
    return r.get(f"{IDEMPOTENCY_KEY_PREFIX}{idempotency_key}")


def reserve_job_for_key(idempotency_key: str, job_id: str) -> str:
    """Atomically bind a job id to a client idempotency key."""
    return _bind(f"{IDEMPOTENCY_KEY_PREFIX}{idempotency_key}", job_id)


def release_job_for_key(idempotency_key: str, job_id: str) -> None:
    _unbind(f"{IDEMPOTENCY_KEY_PREFIX}{idempotency_key}", job_id)


def validate_idempotency_key(idempotency_key: str) -> str:
    if not _IDEMPOTENCY_KEY.fullmatch(idempotency_key):
        raise UploadValidationError(
            "Idempotency-Key must be 1-128 letters, digits, '-' or '_'"
        )
    return idempotency_key


def _bind(key: str, job_id: str) -> str:
    r = get_sync_client()
    if r.set(key, job_id, nx=True, ex=get_settings().upload_session_ttl_seconds):
        return job_id
    return r.get(key) or job_id


def _unbind(key: str, job_id: str) -> None:
    """Delete ``key`` only while it still points at ``job_id``."""
    r = get_sync_client()
    with r.pipeline() as pipe:
        try:
            pipe.watch(key)
            if pipe.get(key) != job_id:
                return
            pipe.multi()
            pipe.delete(key)
            pipe.execute()
        except WatchError:
            logger.info(f"{key} changed while releasing job {job_id}, leaving it")


def discard(upload_id: str) -> None:
    """Drop session metadata and chunk files. The completion mapping is kept."""
    r = get_sync_client()
    r.delete(f"{SESSION_KEY_PREFIX}{upload_id}")
    shutil.rmtree(chunk_dir(upload_id), ignore_errors=True)


def stale_chunk_dirs() -> list[Path]:
    """Chunk directories whose session has expired from Redis."""
    root = chunks_root()
    if not root.exists():
        return []

    r = get_sync_client()
    return [
        d for d in root.iterdir()
        if d.is_dir() and not r.exists(f"{SESSION_KEY_PREFIX}{d.name}")
    ]
