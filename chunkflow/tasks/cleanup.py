"""Periodic removal of abandoned upload scratch files."""

import logging
import shutil
import time
from pathlib import Path

from celery_app import celery_app
from chunkflow.config import get_settings
from chunkflow.services.upload_sessions import stale_chunk_dirs

logger = logging.getLogger(__name__)


def _stale_assembled_files(max_age_seconds: int) -> list[Path]:
    """Assembled files left behind by a completion that died mid-store."""
    assembled_dir = Path(get_settings().upload_tmp_dir) / "assembled"
    if not assembled_dir.exists():
        return []

    cutoff = time.time() - max_age_seconds
    return [
        p for p in assembled_dir.iterdir()
        if p.is_file() and p.stat().st_mtime < cutoff
    ]


@celery_app.task(name="chunkflow.tasks.cleanup.cleanup_stale_uploads")
def cleanup_stale_uploads() -> dict:
    """Delete chunk directories of expired sessions and old assembled files."""
    settings = get_settings()

    removed_dirs = 0
    for d in stale_chunk_dirs():
        shutil.rmtree(d, ignore_errors=True)
        removed_dirs += 1
        logger.info(f"Removed chunks of expired upload {d.name}")

    removed_files = 0
    for p in _stale_assembled_files(settings.upload_session_ttl_seconds):
        p.unlink(missing_ok=True)
        removed_files += 1

    if removed_dirs or removed_files:
        logger.info(f"Cleanup removed {removed_dirs} chunk dir(s) and {removed_files} assembled file(s)")

    return {"chunk_dirs": removed_dirs, "assembled_files": removed_files}
