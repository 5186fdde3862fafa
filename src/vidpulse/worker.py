from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from typing import Any, Protocol

from .broker import Broker, Outcome, consume
from .config import ConfigError, load_config
from .errors import ItemProcessingError
from .messages import ItemResult, StatusUpdate, WorkItem, decode_work_item, encode
from .models import FAILED, PROCESSING
from .utils import configure_logging, format_duration, log_event


class Analyzer(Protocol):
    async def analyze(self, video: dict[str, Any]) -> dict[str, Any]: ...


class Worker:
    def __init__(
        self,
        broker: Broker,
        analyzer: Analyzer,
        *,
        work_queue: str,
        results_queue: str,
        max_attempts: int = 5,
        poll_timeout: float = 1.0,
        worker_id: str = "worker",
        logger: logging.Logger | None = None,
    ) -> None:
        self._broker = broker
        self._analyzer = analyzer
        self._work_queue = work_queue
        self._results_queue = results_queue
        self._max_attempts = max_attempts
        self._poll_timeout = poll_timeout
        self.worker_id = worker_id
        self._logger = logger or logging.getLogger("vidpulse.worker")

    async def handle(self, message: WorkItem) -> Outcome:
        item_id = message.item_id
        started = time.monotonic()
        log_event(
            self._logger,
            logging.INFO,
            "item_claimed",
            worker_id=self.worker_id,
            job_id=message.job_id,
            item_id=item_id,
        )

        processing = StatusUpdate(
            job_id=message.job_id,
            channel_id=message.channel_id,
            item_id=item_id,
            status=PROCESSING,
        )
        if not await self._publish(processing):
            log_event(
                self._logger,
                logging.WARNING,
                "processing_update_dropped",
                job_id=message.job_id,
                item_id=item_id,
            )

        try:
            try:
                result = await self._analyzer.analyze(message.video)
            except Exception as exc:  # noqa: BLE001
                raise ItemProcessingError(str(exc), item_id=item_id) from exc
        except ItemProcessingError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "item_failed",
                worker_id=self.worker_id,
                job_id=message.job_id,
                item_id=item_id,
                error=exc.message,
            )
            terminal: StatusUpdate | ItemResult = StatusUpdate(
                job_id=message.job_id,
                channel_id=message.channel_id,
                item_id=item_id,
                status=FAILED,
                error=exc.message,
            )
        else:
            terminal = ItemResult(
                job_id=message.job_id,
                channel_id=message.channel_id,
                item_id=item_id,
                result=result,
            )

        if not await self._publish(terminal):
            log_event(
                self._logger,
                logging.ERROR,
                "terminal_event_publish_failed",
                job_id=message.job_id,
                item_id=item_id,
            )
            return Outcome.RETRY

        log_event(
            self._logger,
            logging.INFO,
            "item_finished",
            worker_id=self.worker_id,
            job_id=message.job_id,
            item_id=item_id,
            status="failed" if isinstance(terminal, StatusUpdate) else "completed",
            duration=format_duration((time.monotonic() - started) * 1000),
        )
        return Outcome.ACK

    async def _publish(self, event: StatusUpdate | ItemResult) -> bool:
        try:
            await self._broker.publish(self._results_queue, encode(event), persistent=True)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "result_publish_failed",
                job_id=event.job_id,
                item_id=event.item_id,
                error=str(exc),
            )
            return False
        return True

    async def run(
        self,
        stop_event: asyncio.Event | None = None,
        *,
        max_messages: int | None = None,
    ) -> int:
        await self._broker.declare(self._work_queue)
        await self._broker.declare(self._results_queue)
        recovered = await self._broker.recover(self._work_queue, consumer=self.worker_id)
        if recovered:
            log_event(
                self._logger,
                logging.WARNING,
                "unacked_messages_recovered",
                queue=self._work_queue,
                worker_id=self.worker_id,
                count=recovered,
            )
        return await consume(
            self._broker,
            self._work_queue,
            decode_work_item,
            self.handle,
            max_attempts=self._max_attempts,
            logger=self._logger,
            stop_event=stop_event,
            poll_timeout=self._poll_timeout,
            max_messages=max_messages,
            consumer=self.worker_id,
        )


def _setup_logging() -> logging.Logger:
    return configure_logging("vidpulse.worker")


async def run_worker(worker_id: str, once: bool = False) -> int:
    from .runtime import build_runtime

    logger = _setup_logging()
    try:
        config = load_config()
        runtime = build_runtime(config, worker_id=worker_id)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    await runtime.broker.connect()
    log_event(
        logger,
        logging.INFO,
        "worker_started",
        worker_id=worker_id,
        queue=config.queues.work,
        broker=config.broker.url.split("://", 1)[0],
    )
    try:
        await runtime.worker.run(max_messages=1 if once else None)
    finally:
        await runtime.aclose()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vidpulse-worker")
    parser.add_argument("--once", action="store_true", help="Process a single work item and exit")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return asyncio.run(run_worker(args.worker_id, once=args.once))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
