"""Ties a job id to the route that started it, so a reload can re-attach."""

import logging
from typing import Optional, Union

import httpx

from chunkflow.client.session_store import KeyValueStore

logger = logging.getLogger(__name__)

JOB_ID_PARAM = "jobId"


class NavigableLocation:
    """The current shareable address. Holds an ``httpx.URL``."""

    def __init__(self, url: Union[str, httpx.URL]):
        self.url = httpx.URL(url)

    def replace(self, url: httpx.URL) -> None:
        """Swap the address in place, without adding history."""
        self.url = url


def route_key(route_context: Optional[str]) -> str:
    """``job-<first path segment>``, or ``job-default`` for the root."""
    segments = [s for s in (route_context or "").split("/") if s]
    return f"job-{segments[0] if segments else 'default'}"


class JobSessionCorrelator:
    """Persists the job id both in the address and in a per-session store."""

    def __init__(self, location: NavigableLocation, store: KeyValueStore):
        self.location = location
        self._store = store

    def persist(self, route_context: str, job_id: str) -> None:
        self.location.replace(self.location.url.copy_set_param(JOB_ID_PARAM, job_id))
        self._store.set(route_key(route_context), job_id)

    def read(self, route_context: str) -> Optional[str]:
        """Job id from the address if present, else from the store."""
        from_url = self.location.url.params.get(JOB_ID_PARAM)
        if from_url:
            return from_url
        return self._store.get(route_key(route_context)) or None

    def clear(self, route_context: str) -> None:
        if JOB_ID_PARAM in self.location.url.params:
            self.location.replace(self.location.url.copy_remove_param(JOB_ID_PARAM))
        self._store.delete(route_key(route_context))
