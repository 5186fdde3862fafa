"""Durable work/result queues and the pull-based consume loop.

Handlers never ack or nack directly. They return an :class:`Outcome` and the
consume loop settles the delivery with the broker. Failed deliveries are
republished with an incremented ``x-attempts`` header until ``max_attempts``
is reached, after which they are moved to ``<queue>.dead_letter``.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from .errors import MessageDecodeError
from .utils import log_event, truncate, utc_now_iso

ATTEMPTS_HEADER = "x-attempts"
DEATH_REASON_HEADER = "x-death-reason"
ORIGIN_QUEUE_HEADER = "x-origin-queue"
DEAD_LETTER_SUFFIX = ".dead_letter"
PROCESSING_SUFFIX = ".processing"
DEFAULT_CONSUMER = "default"

T = TypeVar("T")


class Outcome(str, Enum):
    ACK = "ack"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class Delivery:
    queue: str
    body: bytes
    headers: dict[str, Any] = field(default_factory=dict)
    tag: Any = None
    consumer: str = DEFAULT_CONSUMER

    @property
    def attempts(self) -> int:
        try:
            return int(self.headers.get(ATTEMPTS_HEADER, 0))
        except (TypeError, ValueError):
            return 0


def dead_letter_queue(queue: str) -> str:
    return queue + DEAD_LETTER_SUFFIX


class Broker(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> bool: ...

    async def declare(self, queue: str) -> None: ...

    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        headers: dict[str, Any] | None = None,
        persistent: bool = True,
    ) -> None: ...

    async def get(
        self, queue: str, timeout: float, *, consumer: str = DEFAULT_CONSUMER
    ) -> Delivery | None: ...

    async def settle(self, delivery: Delivery, outcome: Outcome, reason: str | None = None) -> None: ...

    async def recover(self, queue: str, *, consumer: str = DEFAULT_CONSUMER) -> int: ...

    async def peek(self, queue: str, limit: int) -> list[Delivery]: ...

    async def size(self, queue: str) -> int: ...


class BaseBroker:
    """Settlement shared by every backend; subclasses implement the transport."""

    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        headers: dict[str, Any] | None = None,
        persistent: bool = True,
    ) -> None:
        raise NotImplementedError

    async def _ack(self, delivery: Delivery) -> None:
        raise NotImplementedError

    async def settle(self, delivery: Delivery, outcome: Outcome, reason: str | None = None) -> None:
        # Republish before removing the original so a crash in between
        # duplicates the message instead of losing it.
        if outcome == Outcome.RETRY:
            headers = dict(delivery.headers)
            headers[ATTEMPTS_HEADER] = delivery.attempts + 1
            await self.publish(delivery.queue, delivery.body, headers=headers)
        elif outcome == Outcome.DEAD_LETTER:
            headers = dict(delivery.headers)
            headers[ATTEMPTS_HEADER] = delivery.attempts + 1
            headers[DEATH_REASON_HEADER] = reason or "unknown"
            headers[ORIGIN_QUEUE_HEADER] = delivery.queue
            headers["x-dead-lettered-at"] = utc_now_iso()
            await self.publish(dead_letter_queue(delivery.queue), delivery.body, headers=headers)
        await self._ack(delivery)


class InMemoryBroker(BaseBroker):
    """Process-local broker used for tests and the embedded single-process mode."""

    def __init__(self) -> None:
        self._queues: dict[str, deque[tuple[bytes, dict[str, Any]]]] = {}
        self._conditions: dict[str, asyncio.Condition] = {}
        self._unacked: dict[str, Delivery] = {}
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def ping(self) -> bool:
        return self.connected

    async def declare(self, queue: str) -> None:
        self._queue(queue)
        self._queue(dead_letter_queue(queue))

    def _queue(self, queue: str) -> deque[tuple[bytes, dict[str, Any]]]:
        if queue not in self._queues:
            self._queues[queue] = deque()
        return self._queues[queue]

    def _condition(self, queue: str) -> asyncio.Condition:
        if queue not in self._conditions:
            self._conditions[queue] = asyncio.Condition()
        return self._conditions[queue]

    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        headers: dict[str, Any] | None = None,
        persistent: bool = True,
    ) -> None:
        if not self.connected:
            raise ConnectionError("broker is not connected")
        condition = self._condition(queue)
        async with condition:
            self._queue(queue).append((bytes(body), dict(headers or {})))
            condition.notify()

    async def get(
        self, queue: str, timeout: float, *, consumer: str = DEFAULT_CONSUMER
    ) -> Delivery | None:
        pending = self._queue(queue)
        condition = self._condition(queue)
        async with condition:
            if not pending:
                try:
                    await asyncio.wait_for(condition.wait_for(lambda: bool(pending)), timeout)
                except asyncio.TimeoutError:
                    return None
            body, headers = pending.popleft()
        delivery = Delivery(
            queue=queue, body=body, headers=headers, tag=uuid.uuid4().hex, consumer=consumer
        )
        self._unacked[delivery.tag] = delivery
        return delivery

    async def _ack(self, delivery: Delivery) -> None:
        self._unacked.pop(delivery.tag, None)

    async def recover(self, queue: str, *, consumer: str = DEFAULT_CONSUMER) -> int:
        # Only the caller's own deliveries; other consumers may still be working.
        stranded = [
            item
            for item in self._unacked.values()
            if item.queue == queue and item.consumer == consumer
        ]
        for delivery in reversed(stranded):
            self._unacked.pop(delivery.tag, None)
            self._queue(queue).appendleft((delivery.body, dict(delivery.headers)))
        if stranded:
            condition = self._condition(queue)
            async with condition:
                condition.notify_all()
        return len(stranded)

    async def peek(self, queue: str, limit: int) -> list[Delivery]:
        items = list(self._queue(queue))[:limit]
        return [Delivery(queue=queue, body=body, headers=dict(headers)) for body, headers in items]

    async def size(self, queue: str) -> int:
        return len(self._queue(queue))


class RedisBroker(BaseBroker):
    """Reliable-list queue on Redis.

    Messages are LPUSHed onto ``<queue>`` and moved atomically into the
    consumer's own ``<queue>.processing.<consumer>`` list on receipt.
    Acknowledging removes the entry from that list; :meth:`recover` moves the
    entries a consumer left behind when it crashed back onto the queue, oldest
    first. Consumer names must be unique among live consumers.
    """

    def __init__(self, url: str, *, client: Any = None) -> None:
        self._url = url
        self._client = client

    @staticmethod
    def processing_queue(queue: str, consumer: str = DEFAULT_CONSUMER) -> str:
        return f"{queue}{PROCESSING_SUFFIX}.{consumer}"

    async def connect(self) -> None:
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(self._url)
        await self._client.ping()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except Exception:  # noqa: BLE001
            return False

    async def declare(self, queue: str) -> None:
        # Redis lists are created on first push.
        return None

    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        headers: dict[str, Any] | None = None,
        persistent: bool = True,
    ) -> None:
        if self._client is None:
            raise ConnectionError("broker is not connected")
        await self._client.lpush(queue, _encode_envelope(body, headers or {}))

    async def get(
        self, queue: str, timeout: float, *, consumer: str = DEFAULT_CONSUMER
    ) -> Delivery | None:
        raw = await self._client.blmove(
            queue, self.processing_queue(queue, consumer), timeout, src="RIGHT", dest="LEFT"
        )
        if raw is None:
            return None
        body, headers = _decode_envelope(raw)
        return Delivery(queue=queue, body=body, headers=headers, tag=raw, consumer=consumer)

    async def _ack(self, delivery: Delivery) -> None:
        await self._client.lrem(
            self.processing_queue(delivery.queue, delivery.consumer), 1, delivery.tag
        )

    async def recover(self, queue: str, *, consumer: str = DEFAULT_CONSUMER) -> int:
        # Newest in-flight entry goes back first so the oldest ends up next in line.
        moved = 0
        while True:
            raw = await self._client.lmove(
                self.processing_queue(queue, consumer), queue, src="LEFT", dest="RIGHT"
            )
            if raw is None:
                return moved
            moved += 1

    async def peek(self, queue: str, limit: int) -> list[Delivery]:
        raws = await self._client.lrange(queue, -limit, -1)
        deliveries = []
        for raw in reversed(raws):
            body, headers = _decode_envelope(raw)
            deliveries.append(Delivery(queue=queue, body=body, headers=headers, tag=raw))
        return deliveries

    async def size(self, queue: str) -> int:
        return int(await self._client.llen(queue))


def _encode_envelope(body: bytes, headers: dict[str, Any]) -> bytes:
    envelope = {
        "id": uuid.uuid4().hex,
        "headers": headers,
        "body": base64.b64encode(body).decode("ascii"),
    }
    return json.dumps(envelope, sort_keys=True).encode("utf-8")


def _decode_envelope(raw: bytes | str) -> tuple[bytes, dict[str, Any]]:
    data = raw.encode("utf-8") if isinstance(raw, str) else raw
    try:
        envelope = json.loads(data.decode("utf-8"))
        body = base64.b64decode(envelope["body"])
        headers = envelope.get("headers") or {}
    except (ValueError, KeyError, TypeError, AttributeError):
        # Not one of ours; hand the raw bytes to the decoder so it dead-letters.
        return data, {}
    if not isinstance(headers, dict):
        headers = {}
    return body, headers


def bounded(outcome: Outcome, delivery: Delivery, max_attempts: int) -> Outcome:
    if outcome == Outcome.RETRY and delivery.attempts + 1 >= max_attempts:
        return Outcome.DEAD_LETTER
    return outcome


async def dispatch(
    delivery: Delivery,
    decode: Callable[[bytes], T],
    handler: Callable[[T], Awaitable[Outcome]],
    *,
    max_attempts: int,
    logger: logging.Logger,
) -> tuple[Outcome, str | None]:
    try:
        message = decode(delivery.body)
    except MessageDecodeError as exc:
        outcome = bounded(Outcome.RETRY, delivery, max_attempts)
        log_event(
            logger,
            logging.WARNING,
            "message_decode_failed",
            queue=delivery.queue,
            attempts=delivery.attempts + 1,
            outcome=outcome.value,
            error=str(exc),
            body=truncate(delivery.body.decode("utf-8", errors="replace")),
        )
        return outcome, f"decode_error: {exc}"
    try:
        outcome = await handler(message)
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        outcome = bounded(Outcome.RETRY, delivery, max_attempts)
        log_event(
            logger,
            logging.ERROR,
            "message_handler_failed",
            queue=delivery.queue,
            attempts=delivery.attempts + 1,
            outcome=outcome.value,
            error=str(exc),
        )
        return outcome, f"handler_error: {exc}"
    final = bounded(outcome, delivery, max_attempts)
    if final != outcome:
        return final, "retry_limit_exceeded"
    return final, None


async def consume(
    broker: Broker,
    queue: str,
    decode: Callable[[bytes], T],
    handler: Callable[[T], Awaitable[Outcome]],
    *,
    max_attempts: int,
    logger: logging.Logger,
    stop_event: asyncio.Event | None = None,
    poll_timeout: float = 1.0,
    max_messages: int | None = None,
    consumer: str = DEFAULT_CONSUMER,
) -> int:
    """Pull and settle messages one at a time until stopped.

    Returns the number of messages settled. With ``max_messages`` set the
    loop also returns once the queue is idle for ``poll_timeout``.
    """
    settled = 0
    log_event(logger, logging.INFO, "consume_started", queue=queue, consumer=consumer)
    while stop_event is None or not stop_event.is_set():
        if max_messages is not None and settled >= max_messages:
            break
        try:
            delivery = await broker.get(queue, timeout=poll_timeout, consumer=consumer)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "consume_error", queue=queue, error=str(exc))
            await asyncio.sleep(poll_timeout)
            continue
        if delivery is None:
            if max_messages is not None:
                break
            continue
        outcome, reason = await dispatch(
            delivery, decode, handler, max_attempts=max_attempts, logger=logger
        )
        try:
            await broker.settle(delivery, outcome, reason)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "settle_failed",
                queue=queue,
                outcome=outcome.value,
                error=str(exc),
            )
            continue
        if outcome == Outcome.DEAD_LETTER:
            log_event(
                logger,
                logging.ERROR,
                "message_dead_lettered",
                queue=queue,
                attempts=delivery.attempts + 1,
                reason=reason,
            )
        settled += 1
    log_event(logger, logging.INFO, "consume_stopped", queue=queue, settled=settled)
    return settled


def build_broker(url: str) -> Broker:
    if url.startswith("memory://"):
        return InMemoryBroker()
    if url.startswith("redis://") or url.startswith("rediss://") or url.startswith("unix://"):
        return RedisBroker(url)
    raise ValueError(f"unsupported broker url {url!r}")
