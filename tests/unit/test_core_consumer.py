"""Unit tests for the batch polling consumer."""

import asyncio

import pytest

from lineage_pipeline.core.channel import ATTR_REASON, InMemoryChannel
from lineage_pipeline.core.consumer import BatchItemFailure, BatchPolicy, ChannelConsumer


def recording_handler(sizes, fail=None):
    """Handler that records batch sizes and fails the bodies in ``fail``."""
    fail = fail or {}

    async def handler(deliveries):
        sizes.append(len(deliveries))
        return [
            BatchItemFailure(d.message_id, fail[d.body][0], terminal=fail[d.body][1])
            for d in deliveries
            if d.body in fail
        ]

    return handler


@pytest.mark.unit
class TestBatchPolicy:
    """Tests for batch policy validation."""

    def test_defaults(self):
        policy = BatchPolicy()
        assert policy.batch_size == 10
        assert policy.batching_window == 0.0

    def test_rejects_empty_batches(self):
        with pytest.raises(ValueError):
            BatchPolicy(batch_size=0)

    def test_rejects_negative_window(self):
        with pytest.raises(ValueError):
            BatchPolicy(batching_window=-1)


@pytest.mark.unit
class TestBatching:
    """Tests for batch gathering."""

    @pytest.mark.asyncio
    async def test_150_events_make_two_invocations(self, channel, clock):
        for i in range(150):
            await channel.send(f"event-{i}")
        sizes = []
        consumer = ChannelConsumer(
            channel,
            recording_handler(sizes),
            BatchPolicy(batch_size=100, batching_window=60.0, poll_wait=0.0),
            clock=clock,
        )

        assert await consumer.run_once() == 100
        before_second = clock.now
        assert await consumer.run_once() == 50
        assert await consumer.run_once() == 0

        assert sizes == [100, 50]
        assert consumer.invocations == 2
        # The partial batch waited out the full batching window
        assert clock.now - before_second >= 60.0
        assert await channel.depth() == {"visible": 0, "in_flight": 0}

    @pytest.mark.asyncio
    async def test_full_batch_skips_window(self, channel, clock):
        for i in range(10):
            await channel.send(str(i))
        sizes = []
        consumer = ChannelConsumer(
            channel, recording_handler(sizes), BatchPolicy(10, 60.0, poll_wait=0.0), clock=clock
        )
        start = clock.now

        await consumer.run_once()

        assert sizes == [10]
        assert clock.now == start

    @pytest.mark.asyncio
    async def test_window_collects_late_arrivals(self, channel, clock):
        await channel.send("early")
        original_sleep = channel._sleep
        late_sent = False

        async def sleep_and_produce(seconds):
            nonlocal late_sent
            if not late_sent:
                late_sent = True
                for i in range(3):
                    await channel.send(f"late-{i}")
            await original_sleep(seconds)

        channel._sleep = sleep_and_produce
        sizes = []
        consumer = ChannelConsumer(
            channel, recording_handler(sizes), BatchPolicy(100, 5.0, poll_wait=0.0), clock=clock
        )

        await consumer.run_once()

        assert sizes == [4]

    @pytest.mark.asyncio
    async def test_idle_poll_returns_nothing(self, channel, clock):
        sizes = []
        consumer = ChannelConsumer(
            channel, recording_handler(sizes), BatchPolicy(10, 0.0, poll_wait=2.0), clock=clock
        )

        assert await consumer.run_once() == 0
        assert sizes == []
        assert consumer.invocations == 0


@pytest.mark.unit
class TestPartialBatchFailures:
    """Tests for acknowledgement of partial batch responses."""

    @pytest.mark.asyncio
    async def test_failed_message_left_for_redelivery(self, channel, dead_letter_channel, clock):
        await channel.send("ok")
        await channel.send("flaky")
        sizes = []
        consumer = ChannelConsumer(
            channel,
            recording_handler(sizes, {"flaky": ("TransientStoreError: down", False)}),
            BatchPolicy(10, 0.0, poll_wait=0.0),
            clock=clock,
        )

        await consumer.run_once()

        assert await channel.depth() == {"visible": 0, "in_flight": 1}
        assert await dead_letter_channel.peek() == []

        clock.advance(301)
        [redelivered] = await channel.receive()
        assert redelivered.body == "flaky"
        assert redelivered.receive_count == 2

    @pytest.mark.asyncio
    async def test_failure_on_last_attempt_is_dead_lettered(self, channel, dead_letter_channel, clock):
        await channel.send("poison")
        sizes = []
        consumer = ChannelConsumer(
            channel,
            recording_handler(sizes, {"poison": ("TraversalIncomplete: no records found", False)}),
            BatchPolicy(10, 0.0, poll_wait=0.0),
            clock=clock,
        )

        for _ in range(3):
            await consumer.run_once()
            clock.advance(301)

        assert sizes == [1, 1, 1]
        assert await channel.depth() == {"visible": 0, "in_flight": 0}
        [parked] = await dead_letter_channel.peek()
        assert parked.attributes[ATTR_REASON] == "TraversalIncomplete: no records found"

    @pytest.mark.asyncio
    async def test_terminal_failure_dead_lettered_immediately(self, channel, dead_letter_channel, clock):
        await channel.send("garbage")
        consumer = ChannelConsumer(
            channel,
            recording_handler([], {"garbage": ("MalformedEvent: 2 validation errors", True)}),
            BatchPolicy(10, 0.0, poll_wait=0.0),
            clock=clock,
        )

        await consumer.run_once()

        assert len(await dead_letter_channel.peek()) == 1
        assert await channel.peek() == []

    @pytest.mark.asyncio
    async def test_rejected_dead_letter_keeps_message_and_settles_rest(self, clock):
        full = InMemoryChannel("records-dlq", max_depth=1, clock=clock)
        await full.send("filler")
        source = InMemoryChannel("records", dead_letter=full, clock=clock, sleep=clock.sleep)
        await source.send("garbage")
        await source.send("good")
        consumer = ChannelConsumer(
            source,
            recording_handler([], {"garbage": ("MalformedEvent: 1 validation errors", True)}),
            BatchPolicy(10, 0.0, poll_wait=0.0),
            clock=clock,
        )

        await consumer.run_once()

        assert [m.body for m in await source.peek()] == ["garbage"]
        assert await source.depth() == {"visible": 0, "in_flight": 1}
        assert [m.body for m in await full.peek()] == ["filler"]

        await full.purge()
        clock.advance(301)
        await consumer.run_once()

        assert await source.peek() == []
        [parked] = await full.peek()
        assert parked.body == "garbage"

    @pytest.mark.asyncio
    async def test_handler_exception_fails_whole_batch(self, channel, clock):
        await channel.send("a")
        await channel.send("b")

        async def exploding(deliveries):
            raise RuntimeError("handler crashed")

        consumer = ChannelConsumer(channel, exploding, BatchPolicy(10, 0.0, poll_wait=0.0), clock=clock)

        assert await consumer.run_once() == 2
        assert await channel.depth() == {"visible": 0, "in_flight": 2}


@pytest.mark.unit
class TestRunLoop:
    """Tests for the consume loop."""

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, channel, clock):
        for i in range(3):
            await channel.send(str(i))
        stop = asyncio.Event()
        seen = []

        async def handler(deliveries):
            seen.extend(d.body for d in deliveries)
            if len(seen) >= 3:
                stop.set()
            return []

        consumer = ChannelConsumer(channel, handler, BatchPolicy(1, 0.0, poll_wait=0.0), clock=clock)

        await asyncio.wait_for(consumer.run(stop), timeout=5)

        assert sorted(seen) == ["0", "1", "2"]
        assert consumer.invocations == 3
