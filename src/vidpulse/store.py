from __future__ import annotations

from datetime import datetime
from typing import Callable, Protocol

from .models import Job, recompute
from .utils import parse_iso, utc_now_iso


class JobStore(Protocol):
    def get(self, job_id: str) -> Job | None: ...

    def put(self, job: Job) -> None: ...

    def upsert(self, job_id: str, mutate: Callable[[Job], bool]) -> Job | None: ...

    def list_jobs(self) -> list[Job]: ...

    def delete(self, job_id: str) -> bool: ...

    def expire(self, before: datetime) -> list[str]: ...


class InMemoryJobStore:
    """Job records keyed by id.

    Reads and writes go through copies so callers never hold the stored
    instance. ``upsert`` runs the mutation and the derived-field recompute as
    one step, which is atomic on a single event loop.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.copy() if job is not None else None

    def put(self, job: Job) -> None:
        self._jobs[job.id] = recompute(job.copy())

    def upsert(self, job_id: str, mutate: Callable[[Job], bool]) -> Job | None:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        working = job.copy()
        if mutate(working):
            working.last_updated = utc_now_iso()
            self._jobs[job_id] = recompute(working)
        return self._jobs[job_id].copy()

    def list_jobs(self) -> list[Job]:
        return [job.copy() for job in self._jobs.values()]

    def delete(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    def expire(self, before: datetime) -> list[str]:
        expired = []
        for job_id, job in list(self._jobs.items()):
            stamp = parse_iso(job.last_updated or job.submitted_at)
            if stamp < before:
                expired.append(job_id)
                del self._jobs[job_id]
        return expired

    def __len__(self) -> int:
        return len(self._jobs)
