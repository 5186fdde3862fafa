from __future__ import annotations

import asyncio
import logging

from .broker import Broker, Outcome, consume
from .messages import ItemResult, ResultEvent, decode_result_event
from .models import Job, upsert_item_result, upsert_item_status
from .store import JobStore
from .utils import log_event

AGGREGATOR_CONSUMER = "aggregator"


class StatusAggregator:
    """Folds status updates and item results into the job store.

    Every event is applied through the store's upsert so the item transition
    and the job's derived counters change together. Events for unknown jobs
    or items outside the job's manifest are dropped.
    """

    def __init__(self, store: JobStore, logger: logging.Logger | None = None) -> None:
        self._store = store
        self._logger = logger or logging.getLogger("vidpulse.aggregator")

    def apply(self, event: ResultEvent) -> bool:
        outcome = {"changed": False, "known_item": True}

        def mutate(job: Job) -> bool:
            if event.item_id not in job.manifest:
                outcome["known_item"] = False
                return False
            if isinstance(event, ItemResult):
                changed = upsert_item_result(job, event.item_id, event.result, event.timestamp)
            else:
                changed = upsert_item_status(
                    job, event.item_id, event.status, event.timestamp, error=event.error
                )
            outcome["changed"] = changed
            return changed

        job = self._store.upsert(event.job_id, mutate)
        if job is None:
            log_event(
                self._logger,
                logging.WARNING,
                "result_event_unknown_job",
                job_id=event.job_id,
                item_id=event.item_id,
            )
            return False
        if not outcome["known_item"]:
            log_event(
                self._logger,
                logging.WARNING,
                "result_event_unknown_item",
                job_id=event.job_id,
                item_id=event.item_id,
            )
            return False
        if not outcome["changed"]:
            log_event(
                self._logger,
                logging.DEBUG,
                "result_event_ignored",
                job_id=event.job_id,
                item_id=event.item_id,
                kind=_event_kind(event),
            )
            return False
        log_event(
            self._logger,
            logging.INFO,
            "result_event_applied",
            job_id=job.id,
            item_id=event.item_id,
            kind=_event_kind(event),
            job_status=job.status,
            completed=job.completed_items,
            failed=job.failed_items,
            total=job.total_items,
        )
        return True

    async def handle(self, event: ResultEvent) -> Outcome:
        self.apply(event)
        return Outcome.ACK

    async def run(
        self,
        broker: Broker,
        queue: str,
        *,
        max_attempts: int,
        poll_timeout: float = 1.0,
        stop_event: asyncio.Event | None = None,
        max_messages: int | None = None,
    ) -> int:
        recovered = await broker.recover(queue, consumer=AGGREGATOR_CONSUMER)
        if recovered:
            log_event(
                self._logger,
                logging.WARNING,
                "unacked_messages_recovered",
                queue=queue,
                count=recovered,
            )
        return await consume(
            broker,
            queue,
            decode_result_event,
            self.handle,
            max_attempts=max_attempts,
            logger=self._logger,
            stop_event=stop_event,
            poll_timeout=poll_timeout,
            max_messages=max_messages,
            consumer=AGGREGATOR_CONSUMER,
        )


def _event_kind(event: ResultEvent) -> str:
    if isinstance(event, ItemResult):
        return "video_results"
    return f"status_update:{event.status}"
