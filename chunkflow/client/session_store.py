"""Durable record of an in-progress chunked upload.

The record is the single source of truth for which chunks the server has
confirmed; the transfer engine consults it before sending anything and
writes it after every confirmed chunk.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "chunkflow:upload-session"


@dataclass
class UploadSession:
    upload_id: str
    file_name: str
    file_size: int
    total_chunks: int
    chunk_size: int
    parallelism: int = 1
    uploaded_chunk_indices: set[int] = field(default_factory=set)
    job_id: Optional[str] = None

    def matches(self, file_name: str, file_size: int) -> bool:
        """A session belongs to a file when both name and size are equal."""
        return self.file_name == file_name and self.file_size == file_size

    def pending_indices(self) -> list[int]:
        return [i for i in range(self.total_chunks) if i not in self.uploaded_chunk_indices]

    @property
    def is_fully_uploaded(self) -> bool:
        return not self.pending_indices()

    def to_dict(self) -> dict[str, Any]:
        return {
            "uploadId": self.upload_id,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "totalChunks": self.total_chunks,
            "chunkSize": self.chunk_size,
            "parallelism": self.parallelism,
            "uploadedChunkIndices": sorted(self.uploaded_chunk_indices),
            "jobId": self.job_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["UploadSession"]:
        """Build a session from a stored record, or None if it is not well formed."""
        if not isinstance(data, dict):
            return None

        upload_id = data.get("uploadId")
        indices = data.get("uploadedChunkIndices")
        if not isinstance(upload_id, str) or not upload_id:
            return None
        if not isinstance(indices, list) or not all(
            isinstance(i, int) and not isinstance(i, bool) for i in indices
        ):
            return None

        try:
            session = cls(
                upload_id=upload_id,
                file_name=str(data["fileName"]),
                file_size=int(data["fileSize"]),
                total_chunks=int(data["totalChunks"]),
                chunk_size=int(data["chunkSize"]),
                parallelism=max(1, int(data.get("parallelism") or 1)),
                uploaded_chunk_indices=set(indices),
                job_id=data.get("jobId") or None,
            )
        except (KeyError, TypeError, ValueError):
            return None

        if session.total_chunks < 1 or session.chunk_size < 1:
            return None
        # Indices outside the plan cannot have been confirmed by the server
        session.uploaded_chunk_indices = {
            i for i in session.uploaded_chunk_indices if 0 <= i < session.total_chunks
        }
        return session


class KeyValueStore(Protocol):
    """Minimal string key-value storage."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStore:
    """Process-local store, for tests and short-lived clients."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """Store persisted as one JSON document, replaced atomically on every write.

    One file per client session, the way a browser tab has its own
    session storage.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable client state file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        partial = self.path.with_name(f"{self.path.name}.{uuid4().hex}.tmp")
        partial.write_text(json.dumps(data), encoding="utf-8")
        os.replace(partial, self.path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read_all()
            if key in data:
                del data[key]
                self._write_all(data)


class UploadSessionStore:
    """Load, save and clear the single upload session under one namespace."""

    def __init__(self, store: KeyValueStore, namespace: str = DEFAULT_NAMESPACE):
        self._store = store
        self._key = namespace

    def load(self) -> Optional[UploadSession]:
        raw = self._store.get(self._key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt upload session record")
            return None
        return UploadSession.from_dict(data)

    def load_for(self, file_name: str, file_size: int) -> Optional[UploadSession]:
        """The persisted session if it belongs to this file."""
        session = self.load()
        if session is None or not session.matches(file_name, file_size):
            return None
        return session

    def save(self, session: UploadSession) -> None:
        self._store.set(self._key, json.dumps(session.to_dict()))

    def clear(self) -> None:
        self._store.delete(self._key)
