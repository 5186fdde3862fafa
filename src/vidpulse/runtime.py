"""Builds the collaborators for one process from a loaded :class:`Config`."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .aggregator import StatusAggregator
from .analysis import CommentAnalyzer
from .broker import Broker, build_broker
from .config import Config, ConfigError
from .producer import Producer
from .sources import ItemSource
from .sources.youtube import CaptionFetcher, YouTubeItemSource
from .store import InMemoryJobStore, JobStore
from .utils import log_event, utc_now
from .worker import Analyzer, Worker

SWEEP_INTERVAL_SECONDS = 60.0


@dataclass
class Runtime:
    config: Config
    broker: Broker
    store: JobStore
    source: ItemSource
    analyzer: Analyzer
    producer: Producer
    aggregator: StatusAggregator
    worker: Worker
    logger: logging.Logger
    stop_event: asyncio.Event | None = None
    tasks: list[asyncio.Task] = field(default_factory=list)

    async def start(self, *, embedded_worker: bool | None = None) -> None:
        """Connect the broker and start the background consumers of an API process."""
        self.stop_event = asyncio.Event()
        await self.broker.connect()
        await self.broker.declare(self.config.queues.work)
        await self.broker.declare(self.config.queues.results)
        self.tasks.append(
            asyncio.create_task(
                self.aggregator.run(
                    self.broker,
                    self.config.queues.results,
                    max_attempts=self.config.broker.max_attempts,
                    poll_timeout=self.config.broker.poll_timeout_seconds,
                    stop_event=self.stop_event,
                ),
                name="vidpulse-aggregator",
            )
        )
        if embedded_worker is None:
            embedded_worker = self.config.worker.embedded
        if embedded_worker:
            self.tasks.append(
                asyncio.create_task(self.worker.run(self.stop_event), name="vidpulse-worker")
            )
        if self.config.jobs.retention_seconds > 0:
            self.tasks.append(asyncio.create_task(self._sweep(), name="vidpulse-retention"))
        log_event(
            self.logger,
            logging.INFO,
            "runtime_started",
            broker=self.config.broker.url.split("://", 1)[0],
            embedded_worker=embedded_worker,
        )

    async def stop(self) -> None:
        if self.stop_event is not None:
            self.stop_event.set()
        await self.producer.cancel()
        for task in self.tasks:
            task.cancel()
        results = await asyncio.gather(*self.tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                log_event(self.logger, logging.ERROR, "background_task_failed", error=str(result))
        self.tasks.clear()
        await self.aclose()
        log_event(self.logger, logging.INFO, "runtime_stopped")

    async def aclose(self) -> None:
        for resource in (self.source, self.analyzer):
            closer = getattr(resource, "aclose", None)
            if closer is not None:
                await closer()
        await self.broker.close()

    async def _sweep(self) -> None:
        retention = self.config.jobs.retention_seconds
        while self.stop_event is not None and not self.stop_event.is_set():
            await asyncio.sleep(min(SWEEP_INTERVAL_SECONDS, retention))
            expired = self.store.expire(utc_now() - timedelta(seconds=retention))
            if expired:
                log_event(self.logger, logging.INFO, "jobs_expired", count=len(expired))


def build_source(config: Config) -> YouTubeItemSource:
    captions = CaptionFetcher(
        ytdlp_path=config.youtube.ytdlp_path,
        lang=config.youtube.caption_lang,
    )
    return YouTubeItemSource(
        api_key=config.youtube.api_key,
        base_url=config.youtube.api_base,
        max_videos=config.youtube.max_videos,
        max_comments=config.youtube.max_comments,
        captions=captions,
        timeout_seconds=config.youtube.timeout_seconds,
    )


def build_analyzer(config: Config) -> CommentAnalyzer:
    return CommentAnalyzer(
        api_key=config.analysis.api_key,
        base_url=config.analysis.api_base,
        model=config.analysis.model,
        temperature=config.analysis.temperature,
        max_tokens=config.analysis.max_tokens,
        max_prompt_chars=config.analysis.max_prompt_chars,
        timeout_seconds=config.analysis.timeout_seconds,
    )


def build_runtime(
    config: Config,
    *,
    broker: Broker | None = None,
    store: JobStore | None = None,
    source: ItemSource | None = None,
    analyzer: Any = None,
    worker_id: str = "embedded",
) -> Runtime:
    if broker is None:
        try:
            broker = build_broker(config.broker.url)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
    store = store if store is not None else InMemoryJobStore()
    source = source if source is not None else build_source(config)
    analyzer = analyzer if analyzer is not None else build_analyzer(config)
    producer = Producer(
        source,
        broker,
        store,
        work_queue=config.queues.work,
        minutes_per_video=config.jobs.minutes_per_video,
        logger=logging.getLogger("vidpulse.producer"),
    )
    aggregator = StatusAggregator(store, logger=logging.getLogger("vidpulse.aggregator"))
    worker = Worker(
        broker,
        analyzer,
        work_queue=config.queues.work,
        results_queue=config.queues.results,
        max_attempts=config.broker.max_attempts,
        poll_timeout=config.broker.poll_timeout_seconds,
        worker_id=worker_id,
        logger=logging.getLogger("vidpulse.worker"),
    )
    return Runtime(
        config=config,
        broker=broker,
        store=store,
        source=source,
        analyzer=analyzer,
        producer=producer,
        aggregator=aggregator,
        worker=worker,
        logger=logging.getLogger("vidpulse.runtime"),
    )
