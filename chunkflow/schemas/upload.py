"""Chunked upload wire schemas."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from chunkflow.schemas.base import WireModel


class UploadInitRequest(WireModel):
    """Body of ``POST /upload/init``."""
    filename: str = Field(min_length=1)
    total_size: int = Field(gt=0)
    total_chunks: int = Field(ge=1)
    chunk_size: Optional[int] = Field(default=None, gt=0)
    tool_type: str = Field(min_length=1)
    options: dict[str, Any] = Field(default_factory=dict)


class UploadInitResponse(WireModel):
    """Canonical chunk plan issued by the server."""
    upload_id: str
    chunk_size: int
    total_chunks: int


class ChunkAccepted(WireModel):
    ok: bool = True
    index: int


class UploadCompleteRequest(WireModel):
    upload_id: str = Field(min_length=1)


class UploadSessionMeta(BaseModel):
    """Server-side bookkeeping for one chunked upload, stored in Redis."""
    upload_id: str
    filename: str
    total_size: int
    total_chunks: int
    chunk_size: int
    tool_type: str
    options: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
