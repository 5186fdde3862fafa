import asyncio
import logging

from vidpulse.broker import (
    ATTEMPTS_HEADER,
    DEATH_REASON_HEADER,
    InMemoryBroker,
    Outcome,
    RedisBroker,
    build_broker,
    consume,
    dead_letter_queue,
)
from vidpulse.errors import MessageDecodeError

LOGGER = logging.getLogger("vidpulse.tests.broker")


class FakeRedis:
    def __init__(self):
        self.lists = {}

    async def ping(self):
        return True

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def lmove(self, first, second, src="LEFT", dest="RIGHT"):
        source = self.lists.get(first) or []
        if not source:
            return None
        value = source.pop(0 if src == "LEFT" else -1)
        target = self.lists.setdefault(second, [])
        if dest == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def blmove(self, first, second, timeout, src="LEFT", dest="RIGHT"):
        return await self.lmove(first, second, src=src, dest=dest)

    async def lrem(self, key, count, value):
        items = self.lists.get(key) or []
        if value in items:
            items.remove(value)
            return 1
        return 0

    async def lrange(self, key, start, end):
        items = self.lists.get(key) or []
        size = len(items)
        start = start + size if start < 0 else start
        end = end + size if end < 0 else end
        return items[max(start, 0) : end + 1]

    async def llen(self, key):
        return len(self.lists.get(key) or [])

    async def aclose(self):
        return None


def _decode(body: bytes) -> str:
    if not body.startswith(b"ok:"):
        raise MessageDecodeError("bad body")
    return body.decode()[3:]


def test_in_memory_publish_get_and_ack():
    async def scenario():
        broker = InMemoryBroker()
        await broker.connect()
        await broker.publish("work", b"one")
        await broker.publish("work", b"two")
        first = await broker.get("work", timeout=0.1)
        second = await broker.get("work", timeout=0.1)
        empty = await broker.get("work", timeout=0.01)
        await broker.settle(first, Outcome.ACK)
        recovered = await broker.recover("work")
        return first, second, empty, recovered, await broker.size("work")

    first, second, empty, recovered, size = asyncio.run(scenario())
    assert first.body == b"one"
    assert second.body == b"two"
    assert first.attempts == 0
    assert empty is None
    assert recovered == 1
    assert size == 1


def test_publish_requires_connection():
    async def scenario():
        broker = InMemoryBroker()
        try:
            await broker.publish("work", b"x")
        except ConnectionError:
            return True
        return False

    assert asyncio.run(scenario()) is True


def test_consume_acks_handled_messages():
    seen = []

    async def handler(message):
        seen.append(message)
        return Outcome.ACK

    async def scenario():
        broker = InMemoryBroker()
        await broker.connect()
        await broker.publish("work", b"ok:a")
        await broker.publish("work", b"ok:b")
        settled = await consume(
            broker,
            "work",
            _decode,
            handler,
            max_attempts=3,
            logger=LOGGER,
            poll_timeout=0.01,
            max_messages=10,
        )
        return settled, await broker.size("work"), await broker.size(dead_letter_queue("work"))

    settled, remaining, dead = asyncio.run(scenario())
    assert settled == 2
    assert seen == ["a", "b"]
    assert remaining == 0
    assert dead == 0


def test_decode_failures_retry_then_dead_letter():
    async def handler(message):
        raise AssertionError("handler must not run for undecodable messages")

    async def scenario():
        broker = InMemoryBroker()
        await broker.connect()
        await broker.publish("work", b"garbage")
        settled = await consume(
            broker,
            "work",
            _decode,
            handler,
            max_attempts=3,
            logger=LOGGER,
            poll_timeout=0.01,
            max_messages=10,
        )
        dead = await broker.peek(dead_letter_queue("work"), 10)
        return settled, await broker.size("work"), dead

    settled, remaining, dead = asyncio.run(scenario())
    assert settled == 3
    assert remaining == 0
    assert len(dead) == 1
    assert dead[0].body == b"garbage"
    assert dead[0].headers[ATTEMPTS_HEADER] == 3
    assert dead[0].headers[DEATH_REASON_HEADER].startswith("decode_error")


def test_handler_errors_and_retry_outcomes_are_bounded():
    calls = {"boom": 0, "retry": 0}

    async def handler(message):
        calls[message] += 1
        if message == "boom":
            raise RuntimeError("boom")
        return Outcome.RETRY

    async def scenario():
        broker = InMemoryBroker()
        await broker.connect()
        await broker.publish("work", b"ok:boom")
        await broker.publish("work", b"ok:retry")
        await consume(
            broker,
            "work",
            _decode,
            handler,
            max_attempts=2,
            logger=LOGGER,
            poll_timeout=0.01,
            max_messages=10,
        )
        return await broker.peek(dead_letter_queue("work"), 10)

    dead = asyncio.run(scenario())
    assert calls == {"boom": 2, "retry": 2}
    reasons = sorted(item.headers[DEATH_REASON_HEADER] for item in dead)
    assert reasons[0].startswith("handler_error")
    assert reasons[1] == "retry_limit_exceeded"


def test_consume_stops_on_stop_event():
    async def handler(message):
        return Outcome.ACK

    async def scenario():
        broker = InMemoryBroker()
        await broker.connect()
        stop = asyncio.Event()
        task = asyncio.create_task(
            consume(
                broker,
                "work",
                _decode,
                handler,
                max_attempts=3,
                logger=LOGGER,
                stop_event=stop,
                poll_timeout=0.01,
            )
        )
        await broker.publish("work", b"ok:a")
        await asyncio.sleep(0.05)
        stop.set()
        return await asyncio.wait_for(task, 1.0)

    assert asyncio.run(scenario()) == 1


def test_redis_broker_reliable_list_cycle():
    async def scenario():
        client = FakeRedis()
        broker = RedisBroker("redis://localhost:6379/0", client=client)
        await broker.connect()
        await broker.publish("work", b"first", headers={"x-trace": "t1"})
        await broker.publish("work", b"second")
        delivery = await broker.get("work", timeout=1)
        in_flight = await client.llen(RedisBroker.processing_queue("work"))
        await broker.settle(delivery, Outcome.RETRY)
        stranded = await broker.get("work", timeout=1)
        recovered = await broker.recover("work")
        peeked = await broker.peek("work", 10)
        return delivery, in_flight, stranded, recovered, peeked, client

    delivery, in_flight, stranded, recovered, peeked, client = asyncio.run(scenario())
    assert delivery.body == b"first"
    assert delivery.headers == {"x-trace": "t1"}
    assert in_flight == 1
    assert stranded.body == b"second"
    assert recovered == 1
    assert [item.body for item in peeked] == [b"second", b"first"]
    assert peeked[1].attempts == 1
    assert client.lists[RedisBroker.processing_queue("work")] == []


def test_redis_envelope_with_foreign_payload_is_passed_through():
    async def scenario():
        client = FakeRedis()
        await client.lpush("work", b"not an envelope")
        broker = RedisBroker("redis://localhost", client=client)
        return await broker.get("work", timeout=1)

    delivery = asyncio.run(scenario())
    assert delivery.body == b"not an envelope"
    assert delivery.headers == {}


def test_build_broker_selects_backend():
    assert isinstance(build_broker("memory://"), InMemoryBroker)
    assert isinstance(build_broker("redis://localhost:6379/0"), RedisBroker)
    try:
        build_broker("amqp://guest@localhost")
    except ValueError as exc:
        assert "unsupported" in str(exc)
    else:
        raise AssertionError("Expected unsupported broker error")


def test_in_memory_recover_only_touches_own_deliveries():
    async def scenario():
        broker = InMemoryBroker()
        await broker.connect()
        for body in (b"one", b"two", b"three"):
            await broker.publish("work", body)
        held = await broker.get("work", timeout=0.1, consumer="w1")
        first = await broker.get("work", timeout=0.1, consumer="w2")
        second = await broker.get("work", timeout=0.1, consumer="w2")
        other = await broker.recover("work", consumer="w3")
        own = await broker.recover("work", consumer="w2")
        redelivered = [item.body for item in await broker.peek("work", 10)]
        await broker.settle(held, Outcome.ACK)
        return held, first, second, other, own, redelivered

    held, first, second, other, own, redelivered = asyncio.run(scenario())
    assert held.consumer == "w1"
    assert (first.body, second.body) == (b"two", b"three")
    assert other == 0
    assert own == 2
    assert redelivered == [b"two", b"three"]


def test_redis_consumers_keep_separate_processing_lists():
    async def scenario():
        client = FakeRedis()
        broker = RedisBroker("redis://localhost:6379/0", client=client)
        await broker.connect()
        for body in (b"a", b"b", b"c"):
            await broker.publish("work", body)
        held = await broker.get("work", timeout=1, consumer="w1")
        await broker.get("work", timeout=1, consumer="w2")
        await broker.get("work", timeout=1, consumer="w2")
        other = await broker.recover("work", consumer="w3")
        recovered = await broker.recover("work", consumer="w2")
        next_up = await broker.get("work", timeout=1, consumer="w4")
        await broker.settle(held, Outcome.ACK)
        return other, recovered, next_up, client

    other, recovered, next_up, client = asyncio.run(scenario())
    assert other == 0
    assert recovered == 2
    assert next_up.body == b"b"
    assert client.lists[RedisBroker.processing_queue("work", "w1")] == []
    assert client.lists[RedisBroker.processing_queue("work", "w2")] == []
    assert len(client.lists[RedisBroker.processing_queue("work", "w4")]) == 1
    assert RedisBroker.processing_queue("work", "w1") == "work.processing.w1"
