"""Unit tests for the lineage store writer."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from lineage_pipeline.core.channel import Delivery
from lineage_pipeline.core.errors import RootResolutionPending, TransientStoreError
from lineage_pipeline.lineage.models import LineageEvent
from lineage_pipeline.lineage.writer import LineageStoreWriter


def delivery_for(body: str, message_id: str = "m1") -> Delivery:
    return Delivery(message_id=message_id, body=body, receipt="r", receive_count=1, sent_at=0.0)


def event_delivery(message_id: str = "m1", **fields) -> Delivery:
    return delivery_for(LineageEvent(**fields).model_dump_json(), message_id)


@pytest.fixture
def writer(store, clock):
    return LineageStoreWriter(store, ttl_days=1, clock=clock.datetime, metrics=MagicMock())


@pytest.mark.unit
class TestResolveRoot:
    """Tests for tree resolution."""

    @pytest.mark.asyncio
    async def test_explicit_root(self, writer):
        event = LineageEvent(node_id="a", root_id="R", parent_id="p", action_taken="x")
        assert await writer.resolve_root(event) == "R"

    @pytest.mark.asyncio
    async def test_parentless_node_roots_itself(self, writer):
        event = LineageEvent(node_id="a", action_taken="x")
        assert await writer.resolve_root(event) == "a"

    @pytest.mark.asyncio
    async def test_parent_resolved_through_node_index(self, writer, store, make_record):
        await store.put_record(make_record("a", root_id="R"))
        event = LineageEvent(node_id="b", parent_id="a", action_taken="x")

        assert await writer.resolve_root(event) == "R"

    @pytest.mark.asyncio
    async def test_expired_parent_still_resolves(self, writer, store, make_record, clock):
        await store.put_record(make_record("a", root_id="R", ttl=10))
        clock.advance(20)
        event = LineageEvent(node_id="b", parent_id="a", action_taken="x")

        assert await writer.resolve_root(event) == "R"

    @pytest.mark.asyncio
    async def test_unknown_parent_pending(self, writer):
        event = LineageEvent(node_id="b", parent_id="a", action_taken="x")

        with pytest.raises(RootResolutionPending) as exc_info:
            await writer.resolve_root(event)

        assert exc_info.value.parent_id == "a"


@pytest.mark.unit
class TestWrite:
    """Tests for record persistence."""

    @pytest.mark.asyncio
    async def test_record_stamped_with_ttl(self, writer, store, clock):
        event = LineageEvent(node_id="a", root_id="R", action_taken="extract", payload={"rows": 1})

        record = await writer.write(event)

        assert record.recorded_at == clock.datetime()
        assert record.ttl_expiry == int(clock.now) + 86400
        assert record.record == {"rows": 1}
        assert await store.get_record("R", "a") == record
        writer.metrics.record_written.assert_called_once()

    @pytest.mark.asyncio
    async def test_redelivery_overwrites(self, writer, store, clock):
        event = LineageEvent(node_id="a", root_id="R", action_taken="extract")

        await writer.write(event)
        clock.advance(5)
        await writer.write(event)

        assert len(store) == 1
        assert (await store.get_record("R", "a")).recorded_at == clock.datetime()


@pytest.mark.unit
class TestHandleBatch:
    """Tests for batch handling."""

    @pytest.mark.asyncio
    async def test_all_written(self, writer, store):
        deliveries = [
            event_delivery("m1", node_id="a", root_id="R", action_taken="x"),
            event_delivery("m2", node_id="b", parent_id="a", root_id="R", action_taken="y"),
        ]

        assert await writer.handle_batch(deliveries) == []
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_malformed_event_is_terminal(self, writer):
        [failure] = await writer.handle_batch([delivery_for('{"node_id": "a"}')])

        assert failure.message_id == "m1"
        assert failure.terminal is True
        assert failure.reason == "MalformedEvent: 1 validation errors"

    @pytest.mark.asyncio
    async def test_not_json_is_terminal(self, writer):
        [failure] = await writer.handle_batch([delivery_for("not json")])

        assert failure.terminal is True
        assert failure.reason.startswith("MalformedEvent")

    @pytest.mark.asyncio
    async def test_pending_parent_retried(self, writer, store):
        deliveries = [
            event_delivery("child", node_id="b", parent_id="a", action_taken="y"),
            event_delivery("parent", node_id="a", root_id="R", action_taken="x"),
        ]

        [failure] = await writer.handle_batch(deliveries)

        assert failure.message_id == "child"
        assert failure.terminal is False
        assert failure.reason.startswith("RootResolutionPending")
        assert await store.get_record("R", "a") is not None

    @pytest.mark.asyncio
    async def test_store_error_retried(self, clock):
        store = MagicMock()
        store.put_record = AsyncMock(side_effect=TransientStoreError("database unavailable"))
        writer = LineageStoreWriter(store, clock=clock.datetime, metrics=MagicMock())

        [failure] = await writer.handle_batch([
            event_delivery(node_id="a", root_id="R", action_taken="x"),
        ])

        assert failure.terminal is False
        assert failure.reason == "TransientStoreError: database unavailable"
