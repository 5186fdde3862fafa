import asyncio
import json

from vidpulse.broker import InMemoryBroker, Outcome
from vidpulse.messages import WorkItem, decode_result_event, encode
from vidpulse.worker import Worker, build_parser


class FlakyResultsBroker(InMemoryBroker):
    def __init__(self, fail_after: int):
        super().__init__()
        self.fail_after = fail_after
        self.result_publishes = 0

    async def publish(self, queue, body, *, headers=None, persistent=True):
        if queue == "results":
            self.result_publishes += 1
            if self.result_publishes > self.fail_after:
                raise ConnectionError("results queue unavailable")
        await super().publish(queue, body, headers=headers, persistent=persistent)


def _work_item(item_id: str = "vid1") -> WorkItem:
    return WorkItem(
        job_id="job-1",
        channel_id="UC1",
        video={"id": item_id, "title": "Video", "comments": [{"text": "nice"}]},
    )


async def _drain_results(broker):
    events = []
    for delivery in await broker.peek("results", 10):
        events.append(decode_result_event(delivery.body))
    return events


def _worker(broker, analyzer):
    return Worker(
        broker,
        analyzer,
        work_queue="work",
        results_queue="results",
        max_attempts=3,
        poll_timeout=0.01,
    )


def test_handle_publishes_processing_then_result(fake_analyzer):
    async def scenario():
        broker = InMemoryBroker()
        await broker.connect()
        outcome = await _worker(broker, fake_analyzer()).handle(_work_item())
        return outcome, await _drain_results(broker)

    outcome, events = asyncio.run(scenario())
    assert outcome == Outcome.ACK
    assert [type(event).__name__ for event in events] == ["StatusUpdate", "ItemResult"]
    assert events[0].status == "processing"
    assert events[1].result["summary"] == "viewers are happy"


def test_analyzer_failure_becomes_failed_status_and_ack(fake_analyzer):
    async def scenario():
        broker = InMemoryBroker()
        await broker.connect()
        outcome = await _worker(broker, fake_analyzer(fail={"vid1"})).handle(_work_item())
        return outcome, await _drain_results(broker)

    outcome, events = asyncio.run(scenario())
    assert outcome == Outcome.ACK
    assert events[-1].status == "failed"
    assert events[-1].error == "analysis exploded"


def test_processing_publish_failure_is_ignored(fake_analyzer):
    class NoProcessingBroker(InMemoryBroker):
        async def publish(self, queue, body, *, headers=None, persistent=True):
            if queue == "results" and json.loads(body).get("status") == "processing":
                raise ConnectionError("dropped")
            await super().publish(queue, body, headers=headers, persistent=persistent)

    async def scenario():
        broker = NoProcessingBroker()
        await broker.connect()
        outcome = await _worker(broker, fake_analyzer()).handle(_work_item())
        return outcome, await _drain_results(broker)

    outcome, events = asyncio.run(scenario())
    assert outcome == Outcome.ACK
    assert [type(event).__name__ for event in events] == ["ItemResult"]


def test_terminal_publish_failure_requests_retry(fake_analyzer):
    async def scenario():
        broker = FlakyResultsBroker(fail_after=1)
        await broker.connect()
        return await _worker(broker, fake_analyzer()).handle(_work_item())

    assert asyncio.run(scenario()) == Outcome.RETRY


def test_run_processes_queue_and_dead_letters_unpublishable_items(fake_analyzer):
    async def scenario():
        broker = FlakyResultsBroker(fail_after=0)
        await broker.connect()
        await broker.publish("work", encode(_work_item("vid1")))
        await broker.publish("work", b"not json")
        settled = await _worker(broker, fake_analyzer()).run(max_messages=20)
        return (
            settled,
            await broker.size("work"),
            await broker.size("work.dead_letter"),
        )

    settled, remaining, dead = asyncio.run(scenario())
    assert settled == 6
    assert remaining == 0
    assert dead == 2


def test_worker_parser_defaults():
    args = build_parser().parse_args(["--once", "--worker-id", "w-7"])
    assert args.once is True
    assert args.worker_id == "w-7"


class GatedAnalyzer:
    def __init__(self):
        self.calls = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def analyze(self, video):
        self.calls.append(video["id"])
        self.started.set()
        await self.release.wait()
        return {"videoId": video["id"], "summary": "ok"}


def test_second_worker_does_not_take_over_in_flight_items():
    async def scenario():
        broker = InMemoryBroker()
        await broker.connect()
        await broker.publish("work", encode(_work_item("v1")))
        first, second = GatedAnalyzer(), GatedAnalyzer()
        stop = asyncio.Event()

        def make(analyzer, worker_id):
            return Worker(
                broker,
                analyzer,
                work_queue="work",
                results_queue="results",
                poll_timeout=0.01,
                worker_id=worker_id,
            )

        running = [asyncio.create_task(make(first, "w1").run(stop))]
        await asyncio.wait_for(first.started.wait(), timeout=2)
        running.append(asyncio.create_task(make(second, "w2").run(stop)))
        await asyncio.sleep(0.05)
        first.release.set()
        second.release.set()
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.gather(*running)
        return first.calls, second.calls, await broker.size("work"), await _drain_results(broker)

    first_calls, second_calls, remaining, events = asyncio.run(scenario())
    assert first_calls == ["v1"]
    assert second_calls == []
    assert remaining == 0
    assert [event.item_id for event in events] == ["v1", "v1"]
