"""Shared pytest fixtures.

Channels, consumers, the writer and the reconstructor all take injectable
clocks; ``FakeClock`` drives them so visibility windows, batching windows,
TTLs and settle windows elapse instantly.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from lineage_pipeline.core.channel import InMemoryChannel
from lineage_pipeline.lineage.models import LineageRecord
from lineage_pipeline.lineage.store import InMemoryLineageStore

START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Controllable time source.

    Calling the clock returns epoch seconds (channel and consumer clocks);
    ``datetime()`` returns the same instant as an aware datetime (store,
    writer and reconstructor clocks). ``sleep`` advances time instead of
    waiting.
    """

    def __init__(self, start: datetime = START) -> None:
        self.now = start.timestamp()
        self.sleeps = 0

    def __call__(self) -> float:
        return self.now

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps += 1
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    """A fake clock starting at 2026-01-01T00:00:00Z."""
    return FakeClock()


@pytest.fixture
def dead_letter_channel(clock):
    return InMemoryChannel("records-dlq", clock=clock, sleep=clock.sleep)


@pytest.fixture
def channel(clock, dead_letter_channel):
    """Record channel with a 300 s visibility window and 3 receives."""
    return InMemoryChannel(
        "records",
        visibility_timeout=300.0,
        max_receive_count=3,
        dead_letter=dead_letter_channel,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def store(clock):
    return InMemoryLineageStore(clock=clock.datetime)


@pytest.fixture
def make_record(clock):
    """Factory for lineage records relative to the fake clock."""

    def _make(
        node_id: str,
        parent_id: str | None = None,
        root_id: str = "R",
        action: str = "transform",
        age: float = 0.0,
        ttl: float | None = 86400.0,
        **record,
    ) -> LineageRecord:
        recorded_at = clock.datetime() - timedelta(seconds=age)
        return LineageRecord(
            root_id=root_id,
            node_id=node_id,
            parent_id=parent_id,
            action_taken=action,
            record=record,
            recorded_at=recorded_at,
            ttl_expiry=None if ttl is None else int(clock.now + ttl),
        )

    return _make
