from __future__ import annotations

import argparse
import asyncio
import logging
import os

from .broker import (
    ATTEMPTS_HEADER,
    DEATH_REASON_HEADER,
    Broker,
    Outcome,
    build_broker,
    dead_letter_queue,
)
from .config import Config, ConfigError, load_config
from .utils import configure_logging, log_event, truncate


def _setup_logging() -> logging.Logger:
    return configure_logging("vidpulse.cli")


def _load(args: argparse.Namespace, logger: logging.Logger) -> Config | None:
    try:
        return load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    if args.config:
        os.environ["VP_CONFIG_PATH"] = args.config
    if _load(args, logger) is None:
        return 1
    import uvicorn

    uvicorn.run("vidpulse.api:app", host=args.host, port=args.port, log_level="info")
    return 0


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    from .worker import run_worker

    if args.config:
        os.environ["VP_CONFIG_PATH"] = args.config
    try:
        return asyncio.run(run_worker(args.worker_id, once=args.once))
    except KeyboardInterrupt:
        return 0


def _queue_name(config: Config, which: str) -> str:
    if which == "results":
        return config.queues.results
    return config.queues.work


def _require_durable(config: Config, logger: logging.Logger) -> bool:
    if config.broker.url.startswith("memory://"):
        log_event(
            logger,
            logging.ERROR,
            "dead_letters_unavailable",
            reason="memory broker is process-local; set VP_BROKER_URL",
        )
        return False
    return True


async def _list_dead_letters(broker: Broker, queue: str, limit: int, logger: logging.Logger) -> int:
    await broker.connect()
    try:
        dead = dead_letter_queue(queue)
        total = await broker.size(dead)
        for delivery in await broker.peek(dead, limit):
            log_event(
                logger,
                logging.INFO,
                "dead_letter",
                queue=dead,
                attempts=delivery.headers.get(ATTEMPTS_HEADER),
                reason=delivery.headers.get(DEATH_REASON_HEADER),
                body=truncate(delivery.body.decode("utf-8", errors="replace"), 200),
            )
        log_event(logger, logging.INFO, "dead_letters_listed", queue=dead, total=total)
    finally:
        await broker.close()
    return 0


async def _replay_dead_letters(broker: Broker, queue: str, limit: int, logger: logging.Logger) -> int:
    await broker.connect()
    replayed = 0
    try:
        dead = dead_letter_queue(queue)
        while replayed < limit:
            delivery = await broker.get(dead, timeout=0.1)
            if delivery is None:
                break
            # Attempts restart from zero on replay.
            headers = {
                key: value
                for key, value in delivery.headers.items()
                if key not in (ATTEMPTS_HEADER, DEATH_REASON_HEADER)
            }
            await broker.publish(queue, delivery.body, headers=headers)
            await broker.settle(delivery, Outcome.ACK)
            replayed += 1
        log_event(logger, logging.INFO, "dead_letters_replayed", queue=queue, count=replayed)
    finally:
        await broker.close()
    return 0


def _cmd_dead_letters_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None or not _require_durable(config, logger):
        return 1
    broker = build_broker(config.broker.url)
    return asyncio.run(_list_dead_letters(broker, _queue_name(config, args.queue), args.limit, logger))


def _cmd_dead_letters_replay(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None or not _require_durable(config, logger):
        return 1
    broker = build_broker(config.broker.url)
    return asyncio.run(
        _replay_dead_letters(broker, _queue_name(config, args.queue), args.limit, logger)
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vidpulse", description="VidPulse CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to VP_CONFIG_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=os.environ.get("VP_HOST", "0.0.0.0"))
    serve_parser.add_argument("--port", type=int, default=int(os.environ.get("VP_PORT", "3000")))
    serve_parser.set_defaults(func=_cmd_serve)

    worker_parser = subparsers.add_parser("worker", help="Consume the work queue")
    worker_parser.add_argument("--once", action="store_true", help="Process a single work item and exit")
    worker_parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    worker_parser.set_defaults(func=_cmd_worker)

    dead_parser = subparsers.add_parser("dead-letters", help="Inspect dead-lettered messages")
    dead_subparsers = dead_parser.add_subparsers(dest="dead_command", required=True)

    dead_list = dead_subparsers.add_parser("list", help="Show dead-lettered messages")
    dead_list.add_argument("--queue", choices=["work", "results"], default="work")
    dead_list.add_argument("--limit", type=int, default=20)
    dead_list.set_defaults(func=_cmd_dead_letters_list)

    dead_replay = dead_subparsers.add_parser("replay", help="Move dead letters back onto their queue")
    dead_replay.add_argument("--queue", choices=["work", "results"], default="work")
    dead_replay.add_argument("--limit", type=int, default=100)
    dead_replay.set_defaults(func=_cmd_dead_letters_replay)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
