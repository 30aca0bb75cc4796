"""Chunk size and parallelism planning."""

import math
import re
from dataclasses import dataclass
from typing import Iterator, Optional, Protocol

from chunkflow.client.prober import SpeedClass
from chunkflow.config import MIB

SMALL_CHUNK_SIZE = 2 * MIB
MEDIUM_CHUNK_SIZE = 5 * MIB
SERVER_MAX_CHUNK_SIZE = 10 * MIB

_MOBILE_UA = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini|Mobile", re.IGNORECASE)


class _PlannedSession(Protocol):
    file_size: int
    chunk_size: int
    parallelism: int
    total_chunks: int


@dataclass(frozen=True)
class ChunkPlan:
    chunk_size: int
    parallelism: int
    total_chunks: int


def total_chunks_for(file_size: int, chunk_size: int) -> int:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return max(1, math.ceil(file_size / chunk_size))


def plan_chunks(
    file_size: int,
    is_mobile: bool,
    speed_class: SpeedClass,
    existing_session: Optional[_PlannedSession] = None,
    small_chunk_size: int = SMALL_CHUNK_SIZE,
    medium_chunk_size: int = MEDIUM_CHUNK_SIZE,
    max_chunk_size: int = SERVER_MAX_CHUNK_SIZE,
) -> ChunkPlan:
    """Pick chunk size and parallelism for a file.

    A persisted session for the same file wins over everything else: its
    chunk boundaries are what the server has already recorded.
    """
    if existing_session is not None and existing_session.file_size == file_size:
        return ChunkPlan(
            chunk_size=existing_session.chunk_size,
            parallelism=existing_session.parallelism,
            total_chunks=existing_session.total_chunks,
        )

    if is_mobile or speed_class == SpeedClass.SLOW:
        chunk_size, parallelism = small_chunk_size, 1
    elif speed_class == SpeedClass.MEDIUM:
        chunk_size, parallelism = medium_chunk_size, 2
    else:
        chunk_size, parallelism = max_chunk_size, 4

    chunk_size = min(chunk_size, max_chunk_size)
    return ChunkPlan(
        chunk_size=chunk_size,
        parallelism=parallelism,
        total_chunks=total_chunks_for(file_size, chunk_size),
    )


def chunk_range(file_size: int, chunk_size: int, index: int) -> tuple[int, int]:
    """Half-open byte range ``[start, end)`` of chunk ``index``."""
    start = index * chunk_size
    return start, min(start + chunk_size, file_size)


def chunk_ranges(file_size: int, chunk_size: int) -> Iterator[tuple[int, int]]:
    """Byte ranges partitioning the file, in index order."""
    for index in range(total_chunks_for(file_size, chunk_size)):
        yield chunk_range(file_size, chunk_size, index)


def detect_mobile(user_agent: Optional[str]) -> bool:
    """Rough mobile detection from a User-Agent string."""
    return bool(user_agent and _MOBILE_UA.search(user_agent))
