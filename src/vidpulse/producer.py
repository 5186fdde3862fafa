from __future__ import annotations

import asyncio
import logging
from typing import Any

from .broker import Broker
from .errors import NotFoundError, TransientExternalError, ValidationError, VidPulseError
from .messages import WorkItem, encode
from .models import FAILED, JOB_QUEUED, QUEUED, Job, new_job_id, upsert_item_status
from .sources import ItemSource
from .store import JobStore
from .utils import log_event, utc_now_iso, utc_now_iso_offset

NO_VIDEOS_DETAIL = "Could not find any videos for the specified channel ID"


class Producer:
    """Admits submissions and fans them out onto the work queue."""

    def __init__(
        self,
        source: ItemSource,
        broker: Broker,
        store: JobStore,
        *,
        work_queue: str,
        minutes_per_video: int = 2,
        logger: logging.Logger | None = None,
    ) -> None:
        self._source = source
        self._broker = broker
        self._store = store
        self._work_queue = work_queue
        self._minutes_per_video = minutes_per_video
        self._logger = logger or logging.getLogger("vidpulse.producer")
        self._tasks: set[asyncio.Task] = set()

    @property
    def minutes_per_video(self) -> int:
        return self._minutes_per_video

    async def submit(self, channel_id: Any) -> Job:
        if not isinstance(channel_id, str) or not channel_id.strip():
            raise ValidationError("Channel ID is required")
        channel_id = channel_id.strip()

        try:
            listed = await self._source.list_items(channel_id)
        except VidPulseError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise TransientExternalError("Failed to list channel videos", detail=str(exc)) from exc
        items = _unique_items(listed)
        if not items:
            raise NotFoundError("No videos found", detail=NO_VIDEOS_DETAIL)

        if not await self._broker.ping():
            raise TransientExternalError("Message broker unavailable")

        now = utc_now_iso()
        job = Job(
            id=new_job_id(),
            channel_id=channel_id,
            submitted_at=now,
            total_items=len(items),
            manifest={str(item["id"]): str(item.get("title") or "") for item in items},
            estimated_completion_at=utc_now_iso_offset(
                seconds=len(items) * self._minutes_per_video * 60
            ),
            last_updated=now,
        )
        self._store.put(job)
        log_event(
            self._logger,
            logging.INFO,
            "job_created",
            job_id=job.id,
            channel_id=channel_id,
            total=job.total_items,
        )

        task = asyncio.create_task(self.enqueue_items(job.id, channel_id, items))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def enqueue_items(self, job_id: str, channel_id: str, items: list[dict[str, Any]]) -> None:
        total = len(items)
        queued = 0
        for index, item in enumerate(items, start=1):
            item_id = str(item.get("id"))
            try:
                detail = await self._source.fetch_detail(item)
                message = WorkItem(job_id=job_id, channel_id=channel_id, video=detail)
                await self._broker.publish(self._work_queue, encode(message), persistent=True)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self._logger,
                    logging.ERROR,
                    "enqueue_item_failed",
                    job_id=job_id,
                    item_id=item_id,
                    position=f"{index}/{total}",
                    error=str(exc),
                )
                self._mark(job_id, item_id, FAILED, error=str(exc))
                continue
            self._mark(job_id, item_id, QUEUED)
            queued += 1
            log_event(
                self._logger,
                logging.INFO,
                "item_enqueued",
                job_id=job_id,
                item_id=item_id,
                position=f"{index}/{total}",
            )

        def finish(job: Job) -> bool:
            job.phase = JOB_QUEUED
            return True

        self._store.upsert(job_id, finish)
        log_event(
            self._logger,
            logging.INFO,
            "job_enqueue_finished",
            job_id=job_id,
            queued=queued,
            failed=total - queued,
            total=total,
        )

    async def wait_idle(self) -> None:
        """Wait for every scheduled enqueue task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _mark(self, job_id: str, item_id: str, status: str, *, error: str | None = None) -> None:
        timestamp = utc_now_iso()

        def mutate(job: Job) -> bool:
            if item_id not in job.manifest:
                return False
            return upsert_item_status(job, item_id, status, timestamp, error=error)

        self._store.upsert(job_id, mutate)


def _unique_items(items: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    seen: set[str] = set()
    unique = []
    for item in items or []:
        item_id = item.get("id") if isinstance(item, dict) else None
        if not item_id or str(item_id) in seen:
            continue
        seen.add(str(item_id))
        unique.append(item)
    return unique
