from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field, replace
from typing import Any

QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

ITEM_STATUSES = (QUEUED, PROCESSING, COMPLETED, FAILED)
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})

_STATUS_RANK = {QUEUED: 0, PROCESSING: 1, COMPLETED: 2, FAILED: 2}

JOB_INITIALIZING = "initializing"
JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_PARTIALLY_COMPLETED = "partially_completed"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

RESULT_READY_STATUSES = frozenset({JOB_COMPLETED, JOB_PARTIALLY_COMPLETED})

_job_sequence = itertools.count(1)


def new_job_id() -> str:
    return f"job-{int(time.time() * 1000)}-{next(_job_sequence):04d}"


@dataclass
class ItemState:
    id: str
    title: str
    status: str
    last_updated: str
    result: dict[str, Any] | None = None
    error: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "lastUpdated": self.last_updated,
        }
        if self.result is not None:
            data["results"] = self.result
        if self.error is not None:
            data["error"] = self.error
        if self.completed_at is not None:
            data["completedAt"] = self.completed_at
        return data


@dataclass
class JobCounts:
    completed: int = 0
    failed: int = 0
    processing: int = 0
    queued: int = 0

    @property
    def attached(self) -> int:
        return self.completed + self.failed + self.processing + self.queued


@dataclass
class Job:
    id: str
    channel_id: str
    submitted_at: str
    total_items: int
    manifest: dict[str, str]
    phase: str = JOB_INITIALIZING
    items: dict[str, ItemState] = field(default_factory=dict)
    estimated_completion_at: str | None = None
    last_updated: str | None = None
    # Derived by recompute(); never patched directly.
    status: str = JOB_INITIALIZING
    completed_items: int = 0
    failed_items: int = 0
    processed_items: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def copy(self) -> "Job":
        return replace(
            self,
            manifest=dict(self.manifest),
            items={key: replace(item) for key, item in self.items.items()},
            results=list(self.results),
        )


def count_items(items: dict[str, ItemState]) -> JobCounts:
    counts = JobCounts()
    for item in items.values():
        if item.status == COMPLETED:
            counts.completed += 1
        elif item.status == FAILED:
            counts.failed += 1
        elif item.status == PROCESSING:
            counts.processing += 1
        else:
            counts.queued += 1
    return counts


def derive_job_status(counts: JobCounts, total_items: int, phase: str) -> str:
    if total_items > 0 and counts.failed == total_items:
        return JOB_FAILED
    if total_items > 0 and counts.completed == total_items:
        return JOB_COMPLETED
    if counts.completed > 0 and counts.processing == 0:
        return JOB_PARTIALLY_COMPLETED
    # The producer phase shows only while no item has left the queue.
    if counts.queued == counts.attached:
        return phase
    return JOB_PROCESSING


def collect_results(job: Job) -> list[dict[str, Any]]:
    ordered = [job.items[item_id] for item_id in job.manifest if item_id in job.items]
    return [
        {"videoId": item.id, "title": item.title, "results": item.result}
        for item in ordered
        if item.status == COMPLETED and item.result is not None
    ]


def recompute(job: Job) -> Job:
    """Rebuild every derived field of ``job`` from its attached items."""
    counts = count_items(job.items)
    job.status = derive_job_status(counts, job.total_items, job.phase)
    job.completed_items = counts.completed
    job.failed_items = counts.failed
    job.processed_items = counts.attached
    job.results = collect_results(job)
    return job


def can_transition(current: ItemState | None, status: str) -> bool:
    """Forward-only item transitions.

    Terminal items accept only a completed result; a stored result is never
    replaced by a failure.
    """
    if status not in _STATUS_RANK:
        return False
    if current is None:
        return True
    if current.status in TERMINAL_STATUSES:
        if status == COMPLETED:
            return True
        return status == FAILED and current.status == FAILED
    return _STATUS_RANK[status] >= _STATUS_RANK[current.status]


def upsert_item_status(
    job: Job,
    item_id: str,
    status: str,
    timestamp: str,
    *,
    error: str | None = None,
) -> bool:
    current = job.items.get(item_id)
    if not can_transition(current, status):
        return False
    if (
        current is not None
        and current.status == status
        and current.last_updated == timestamp
        and current.error == error
    ):
        return False
    if current is None:
        job.items[item_id] = ItemState(
            id=item_id,
            title=job.manifest.get(item_id, ""),
            status=status,
            last_updated=timestamp,
            error=error,
        )
    else:
        current.status = status
        current.last_updated = timestamp
        current.error = error
    return True


def upsert_item_result(job: Job, item_id: str, result: dict[str, Any], timestamp: str) -> bool:
    current = job.items.get(item_id)
    if current is None:
        job.items[item_id] = ItemState(
            id=item_id,
            title=job.manifest.get(item_id, ""),
            status=COMPLETED,
            last_updated=timestamp,
            result=result,
            completed_at=timestamp,
        )
        return True
    if current.status == COMPLETED and current.result == result and current.completed_at == timestamp:
        return False
    current.status = COMPLETED
    current.result = result
    current.last_updated = timestamp
    current.completed_at = timestamp
    current.error = None
    return True


def job_status_view(job: Job) -> dict[str, Any]:
    return {
        "jobId": job.id,
        "status": job.status,
        "channelId": job.channel_id,
        "totalVideos": job.total_items,
        "completedVideos": job.completed_items,
        "failedVideos": job.failed_items,
        "processedVideos": job.processed_items,
        "timestamp": job.submitted_at,
        "lastUpdated": job.last_updated,
        "estimatedCompletionTime": job.estimated_completion_at,
        "videos": {item_id: item.to_dict() for item_id, item in job.items.items()},
    }


def job_results_view(job: Job) -> dict[str, Any]:
    if job.status in RESULT_READY_STATUSES and job.results:
        return {
            "jobId": job.id,
            "status": job.status,
            "totalVideos": job.total_items,
            "completedVideos": job.completed_items,
            "failedVideos": job.failed_items,
            "results": list(job.results),
        }
    return {
        "jobId": job.id,
        "status": job.status,
        "totalVideos": job.total_items,
        "completedVideos": job.completed_items,
        "failedVideos": job.failed_items,
        "message": _results_pending_message(job),
        "videos": {item_id: item.to_dict() for item_id, item in job.items.items()},
    }


def _results_pending_message(job: Job) -> str:
    if job.status == JOB_FAILED:
        return "Analysis failed for every video in this job"
    if job.status in RESULT_READY_STATUSES:
        return "No analysis results were stored for this job"
    return "Analysis is still in progress, check back later"
