"""Job-status storage for asynchronous renders."""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pipeline.models import JobStatus, RenderJob, TERMINAL_STATUSES


class InvalidJobTransition(RuntimeError):
    """Raised when a job would leave a terminal state or move backwards."""


_ALLOWED = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.ERROR},
    JobStatus.RUNNING: {JobStatus.DONE, JobStatus.ERROR},
}


def transition(job: RenderJob, status: JobStatus, **fields) -> RenderJob:
    """Return a copy of ``job`` moved to ``status``; enforces queued -> running -> done|error."""
    if job.status in TERMINAL_STATUSES:
        raise InvalidJobTransition(f"job {job.job_id} is already {job.status.value}")
    if status not in _ALLOWED.get(job.status, set()):
        raise InvalidJobTransition(f"job {job.job_id}: {job.status.value} -> {status.value} not allowed")
    update = {"status": status, "updated_at": datetime.now(timezone.utc), **fields}
    return job.model_copy(update=update)


class JobStore(ABC):
    @abstractmethod
    def get(self, job_id: str) -> Optional[RenderJob]:
        ...

    @abstractmethod
    def set(self, job_id: str, record: RenderJob) -> None:
        ...

    @abstractmethod
    def list(self) -> List[RenderJob]:
        ...


class InMemoryJobStore(JobStore):
    """Single-process store; safe for concurrent insert/read from worker threads."""

    def __init__(self):
        self._jobs: Dict[str, RenderJob] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Optional[RenderJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def set(self, job_id: str, record: RenderJob) -> None:
        with self._lock:
            self._jobs[job_id] = record

    def list(self) -> List[RenderJob]:
        with self._lock:
            return list(self._jobs.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
