"""Job lifecycle reducer.

Only a status the server actually reported reaches this function. Polling
errors (timeouts, bad bodies, 404) are handled by the poller and never turn
into ``FAILED`` here.
"""

from collections.abc import Mapping
from enum import Enum
from typing import Any

from chunkflow.schemas.job import JobStatus


class JobTransition(str, Enum):
    CONTINUE = "continue"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobTransition.CONTINUE


def transition(job_status: Any) -> JobTransition:
    """Map a status (string, enum, mapping or object with ``status``) to a transition.

    ``completed`` is completed whether or not a result is attached; unknown
    statuses mean the job is still running.
    """
    if isinstance(job_status, Mapping):
        status = job_status.get("status")
    else:
        status = getattr(job_status, "status", job_status)
    if isinstance(status, Enum):
        status = status.value

    if status == JobStatus.COMPLETED.value:
        return JobTransition.COMPLETED
    if status == JobStatus.FAILED.value:
        return JobTransition.FAILED
    return JobTransition.CONTINUE
