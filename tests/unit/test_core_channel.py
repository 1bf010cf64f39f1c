"""Unit tests for the durable channels.

Tests cover:
- Send, receive and acknowledge
- Visibility timeout and redelivery
- Dead-lettering on the receive budget and on demand
- Capacity limits and admin operations
- Redis backend scripts and error mapping
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from lineage_pipeline.core.channel import (
    ATTR_REASON,
    ATTR_RECEIVE_COUNT,
    ATTR_SOURCE_CHANNEL,
    REASON_MAX_RECEIVES,
    SCRIPTS,
    ChannelMessage,
    Delivery,
    InMemoryChannel,
    RedisChannel,
    decode_body,
)
from lineage_pipeline.core.errors import ChannelFullError, ChannelUnavailableError


@pytest.mark.unit
class TestInMemoryChannelDelivery:
    """Tests for basic delivery."""

    @pytest.mark.asyncio
    async def test_send_receive_ack(self, channel):
        message_id = await channel.send('{"node_id": "a"}')

        [delivery] = await channel.receive()

        assert delivery.message_id == message_id
        assert delivery.receive_count == 1
        assert decode_body(delivery) == {"node_id": "a"}
        assert await channel.ack(delivery) is True
        assert await channel.depth() == {"visible": 0, "in_flight": 0}

    @pytest.mark.asyncio
    async def test_receive_respects_max_messages(self, channel):
        for i in range(5):
            await channel.send(str(i))

        deliveries = await channel.receive(max_messages=3)

        assert len(deliveries) == 3
        assert await channel.depth() == {"visible": 2, "in_flight": 3}

    @pytest.mark.asyncio
    async def test_empty_receive_long_polls_on_clock(self, channel, clock):
        start = clock.now

        deliveries = await channel.receive(wait_seconds=5.0)

        assert deliveries == []
        assert clock.now - start >= 5.0

    @pytest.mark.asyncio
    async def test_in_flight_message_hidden(self, channel):
        await channel.send("x")
        await channel.receive()

        assert await channel.receive() == []


@pytest.mark.unit
class TestInMemoryChannelVisibility:
    """Tests for visibility timeout behaviour."""

    @pytest.mark.asyncio
    async def test_unacked_message_redelivered_after_timeout(self, channel, clock):
        await channel.send("x")
        [first] = await channel.receive()

        clock.advance(299)
        assert await channel.receive() == []

        clock.advance(2)
        [second] = await channel.receive()

        assert second.message_id == first.message_id
        assert second.receive_count == 2
        assert second.receipt != first.receipt

    @pytest.mark.asyncio
    async def test_stale_receipt_ack_is_ignored(self, channel, clock):
        await channel.send("x")
        [first] = await channel.receive()
        clock.advance(301)
        [second] = await channel.receive()

        assert await channel.ack(first) is False
        assert await channel.get(first.message_id) is not None
        assert await channel.ack(second) is True

    @pytest.mark.asyncio
    async def test_release_with_delay(self, channel, clock):
        await channel.send("x")
        [delivery] = await channel.receive()

        assert await channel.release(delivery, delay=10.0) is True
        assert await channel.receive() == []

        clock.advance(10)
        [again] = await channel.receive()
        assert again.receive_count == 2

    @pytest.mark.asyncio
    async def test_release_immediately(self, channel):
        await channel.send("x")
        [delivery] = await channel.receive()

        await channel.release(delivery)

        assert len(await channel.receive()) == 1


@pytest.mark.unit
class TestInMemoryChannelDeadLetter:
    """Tests for dead-letter diversion."""

    @pytest.mark.asyncio
    async def test_exhausted_message_moved_on_receive(self, channel, dead_letter_channel, clock):
        message_id = await channel.send("poison")
        for expected_count in (1, 2, 3):
            [delivery] = await channel.receive()
            assert delivery.receive_count == expected_count
            clock.advance(301)

        assert await channel.receive() == []
        assert await channel.get(message_id) is None

        [parked] = await dead_letter_channel.peek()
        assert parked.body == "poison"
        assert parked.attributes[ATTR_SOURCE_CHANNEL] == "records"
        assert parked.attributes[ATTR_REASON] == REASON_MAX_RECEIVES
        assert parked.attributes[ATTR_RECEIVE_COUNT] == "3"

    @pytest.mark.asyncio
    async def test_dead_letter_on_demand(self, channel, dead_letter_channel):
        await channel.send("bad", {"producer": "etl"})
        [delivery] = await channel.receive()

        assert await channel.dead_letter(delivery, "MalformedEvent: 1 validation errors") is True

        [parked] = await dead_letter_channel.peek()
        assert parked.attributes["producer"] == "etl"
        assert parked.attributes[ATTR_REASON].startswith("MalformedEvent")
        assert parked.attributes[ATTR_RECEIVE_COUNT] == "1"
        assert await channel.depth() == {"visible": 0, "in_flight": 0}

    @pytest.mark.asyncio
    async def test_dead_letter_to_full_channel_keeps_message(self, clock):
        full = InMemoryChannel("records-dlq", max_depth=1, clock=clock)
        await full.send("filler")
        source = InMemoryChannel("records", dead_letter=full, clock=clock, sleep=clock.sleep)
        message_id = await source.send("bad")
        [delivery] = await source.receive()

        with pytest.raises(ChannelFullError):
            await source.dead_letter(delivery, "boom")

        assert (await source.get(message_id)).body == "bad"
        assert await source.depth() == {"visible": 0, "in_flight": 1}
        assert [m.body for m in await full.peek()] == ["filler"]

        await full.purge()
        assert await source.dead_letter(delivery, "boom") is True
        assert await source.get(message_id) is None
        assert [m.body for m in await full.peek()] == ["bad"]

    @pytest.mark.asyncio
    async def test_exhausted_message_kept_while_dead_letter_channel_full(self, clock):
        full = InMemoryChannel("records-dlq", max_depth=1, clock=clock)
        await full.send("filler")
        source = InMemoryChannel(
            "records", max_receive_count=1, dead_letter=full, clock=clock, sleep=clock.sleep
        )
        message_id = await source.send("poison")
        await source.receive()
        clock.advance(301)

        assert await source.receive() == []
        assert (await source.get(message_id)).body == "poison"
        assert [m.body for m in await full.peek()] == ["filler"]

        await full.purge()
        clock.advance(301)

        assert await source.receive() == []
        assert await source.get(message_id) is None
        [parked] = await full.peek()
        assert parked.body == "poison"
        assert parked.attributes[ATTR_RECEIVE_COUNT] == "1"

    @pytest.mark.asyncio
    async def test_dead_letter_without_channel_keeps_message(self, clock):
        lonely = InMemoryChannel("lonely", clock=clock, sleep=clock.sleep)
        await lonely.send("x")
        [delivery] = await lonely.receive()

        assert await lonely.dead_letter(delivery, "boom") is False
        assert await lonely.get(delivery.message_id) is not None


@pytest.mark.unit
class TestInMemoryChannelAdmin:
    """Tests for capacity and admin operations."""

    @pytest.mark.asyncio
    async def test_max_depth(self, clock):
        small = InMemoryChannel("small", max_depth=2, clock=clock)
        await small.send("1")
        await small.send("2")

        with pytest.raises(ChannelFullError) as exc_info:
            await small.send("3")

        assert exc_info.value.code == "CHANNEL_FULL"

    @pytest.mark.asyncio
    async def test_peek_get_delete_purge(self, channel, clock):
        first = await channel.send("1")
        clock.advance(1)
        await channel.send("2")

        assert [m.body for m in await channel.peek()] == ["1", "2"]
        assert (await channel.get(first)).body == "1"
        assert await channel.delete(first) is True
        assert await channel.delete(first) is False
        assert await channel.purge() == 1
        assert await channel.peek() == []

    def test_invalid_receive_budget(self):
        with pytest.raises(ValueError):
            InMemoryChannel("bad", max_receive_count=0)


@pytest.mark.unit
class TestRedisChannel:
    """Tests for the Redis backend with a mocked client and scripts."""

    @pytest.fixture
    def scripts(self):
        return {name: AsyncMock(name=name) for name in SCRIPTS}

    @pytest.fixture
    def client(self, scripts):
        client = AsyncMock()
        by_source = {source: scripts[name] for name, source in SCRIPTS.items()}
        client.register_script = MagicMock(side_effect=lambda source: by_source[source])
        return client

    @pytest.mark.asyncio
    async def test_send_maps_redis_error(self, client):
        client.hlen.side_effect = redis.RedisError("connection refused")
        channel = RedisChannel("records", max_depth=10, client=client)

        with pytest.raises(ChannelUnavailableError) as exc_info:
            await channel.send("x")

        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_send_rejects_when_full(self, client):
        client.hlen.return_value = 10
        channel = RedisChannel("records", max_depth=10, client=client)

        with pytest.raises(ChannelFullError):
            await channel.send("x")

    @pytest.mark.asyncio
    async def test_receive_maps_redis_error(self, client, scripts):
        scripts["claim"].side_effect = redis.RedisError("timeout")
        channel = RedisChannel("records", client=client)

        with pytest.raises(ChannelUnavailableError):
            await channel.receive()

    @pytest.mark.asyncio
    async def test_receive_claims_through_one_script(self, client, scripts):
        message = ChannelMessage(message_id="m1", body="x", sent_at=5.0)
        scripts["claim"].return_value = ["m1", message.model_dump_json(), 2, "r-1"]
        channel = RedisChannel("records", prefix="test", max_receive_count=3, client=client)

        [delivery] = await channel.receive(max_messages=2)

        assert delivery.message_id == "m1"
        assert delivery.receipt == "r-1"
        assert delivery.receive_count == 2
        kwargs = scripts["claim"].await_args.kwargs
        assert kwargs["keys"][0] == "test:channel:records:ready"
        # now, limit, visible_at, max receives, then one receipt per slot
        assert kwargs["args"][1] == 2
        assert kwargs["args"][3] == -1
        assert len(kwargs["args"]) == 6
        client.lpop.assert_not_called()
        client.zadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_exhausted_claim_forwarded_then_acked(self, client, scripts):
        dead_letters = InMemoryChannel("records-dlq")
        message = ChannelMessage(message_id="m1", body="poison", sent_at=5.0)
        scripts["claim"].return_value = ["m1", message.model_dump_json(), 4, "r-1"]
        scripts["ack"].return_value = 1
        channel = RedisChannel("records", max_receive_count=3, dead_letter=dead_letters, client=client)

        assert await channel.receive() == []

        [parked] = await dead_letters.peek()
        assert parked.attributes[ATTR_RECEIVE_COUNT] == "3"
        assert scripts["claim"].await_args.kwargs["args"][3] == 3
        assert scripts["ack"].await_args.kwargs["args"] == ["m1", "r-1"]

    @pytest.mark.asyncio
    async def test_exhausted_claim_kept_when_forward_fails(self, client, scripts):
        dead_letters = AsyncMock()
        dead_letters.send.side_effect = ChannelUnavailableError("records-dlq", "down")
        message = ChannelMessage(message_id="m1", body="poison", sent_at=5.0)
        scripts["claim"].return_value = ["m1", message.model_dump_json(), 4, "r-1"]
        channel = RedisChannel("records", max_receive_count=3, dead_letter=dead_letters, client=client)

        assert await channel.receive() == []

        scripts["ack"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dead_letter_forwards_before_removing(self, client, scripts):
        dead_letters = AsyncMock()
        dead_letters.send.side_effect = ChannelFullError("records-dlq", 1)
        client.hget.return_value = "r-1"
        channel = RedisChannel("records", dead_letter=dead_letters, client=client)
        delivery = Delivery(message_id="m1", body="x", receipt="r-1", receive_count=1, sent_at=0.0)

        with pytest.raises(ChannelFullError):
            await channel.dead_letter(delivery, "boom")

        scripts["ack"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ack_with_stale_receipt(self, client, scripts):
        scripts["ack"].return_value = 0
        channel = RedisChannel("records", client=client)
        delivery = Delivery(message_id="m1", body="x", receipt="old", receive_count=1, sent_at=0.0)

        assert await channel.ack(delivery) is False
        client.pipeline.assert_not_called()

    @pytest.mark.asyncio
    async def test_release_now_and_later(self, client, scripts):
        scripts["release"].return_value = 1
        channel = RedisChannel("records", client=client)
        delivery = Delivery(message_id="m1", body="x", receipt="r-1", receive_count=1, sent_at=0.0)

        assert await channel.release(delivery) is True
        assert scripts["release"].await_args.kwargs["args"] == ["m1", "r-1", ""]

        assert await channel.release(delivery, delay=30) is True
        assert scripts["release"].await_args.kwargs["args"][2] > 0

    @pytest.mark.asyncio
    async def test_scripts_registered_once(self, client, scripts):
        scripts["ack"].return_value = 1
        channel = RedisChannel("records", client=client)
        delivery = Delivery(message_id="m1", body="x", receipt="r-1", receive_count=1, sent_at=0.0)

        await channel.ack(delivery)
        await channel.ack(delivery)

        client.register_script.assert_called_once_with(SCRIPTS["ack"])

    @pytest.mark.asyncio
    async def test_depth(self, client):
        client.llen.return_value = 4
        client.zcard.return_value = 2
        channel = RedisChannel("records", prefix="test", client=client)

        assert await channel.depth() == {"visible": 4, "in_flight": 2}
        client.llen.assert_awaited_once_with("test:channel:records:ready")
