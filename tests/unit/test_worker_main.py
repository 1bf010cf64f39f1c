"""Unit tests for the worker main module.

This module tests the WorkerService class and the command-line parser.
"""

import asyncio
import signal

import pytest

from lineage_pipeline.config import ChannelSettings, Settings, StoreSettings
from lineage_pipeline.core.archive import LocalArchive
from lineage_pipeline.core.pipeline import LineagePipeline
from lineage_pipeline.lineage.store import InMemoryLineageStore
from lineage_pipeline.worker.main import WorkerRole, WorkerService, build_parser

# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def pipeline(tmp_path, clock):
    """Pipeline with short polls so the worker stops quickly."""
    settings = Settings(
        channel=ChannelSettings(poll_wait=0.05, record_batching_window=0.0),
        store=StoreSettings(purge_interval_seconds=3600),
    )
    return LineagePipeline.from_settings(
        settings,
        store=InMemoryLineageStore(clock=clock.datetime),
        archive=LocalArchive(tmp_path),
    )


@pytest.fixture
def worker(pipeline):
    return WorkerService(pipeline=pipeline, worker_id="test-worker", shutdown_timeout=2.0)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async def _poll():
        while not await predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


# ============================================================================
# WorkerService Tests
# ============================================================================

@pytest.mark.unit
class TestWorkerServiceInit:
    """Tests for WorkerService initialization."""

    def test_defaults(self, pipeline):
        worker = WorkerService(pipeline=pipeline)

        assert worker.worker_id.startswith("worker-")
        assert worker.role == WorkerRole.ALL
        assert worker.maintenance_interval == 3600
        assert worker.running is False

    @pytest.mark.parametrize(
        "role,channels",
        [
            (WorkerRole.WRITER, ["records"]),
            (WorkerRole.TRACER, ["retrace"]),
            (WorkerRole.ALL, ["records", "retrace"]),
        ],
    )
    def test_consumers_per_role(self, pipeline, role, channels):
        worker = WorkerService(pipeline=pipeline, role=role)

        assert [c.channel.name for c in worker.consumers] == channels

    def test_role_from_string(self, pipeline):
        assert WorkerService(pipeline=pipeline, role="tracer").role == WorkerRole.TRACER


@pytest.mark.unit
class TestWorkerServiceLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_records_then_retraces(self, worker, pipeline, tmp_path):
        task = asyncio.create_task(worker.start())
        event = await pipeline.ingress.submit({"node_id": "a", "root_id": "R", "action": "ingest"})

        async def written():
            return await pipeline.store.get_record("R", event.node_id) is not None

        await wait_until(written)
        await pipeline.retrace_publisher.request_retrace(root_id="R")

        async def archived():
            return any(tmp_path.rglob("*.json"))

        await wait_until(archived)
        worker.signal_handler(signal.SIGTERM)
        await asyncio.wait_for(task, timeout=5)

        assert worker.running is False

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, worker):
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.01)

        await worker.start()
        assert worker.running is True

        await worker.stop()
        await asyncio.wait_for(task, timeout=5)
        assert worker.running is False

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, worker):
        await worker.stop()
        assert worker.running is False


@pytest.mark.unit
class TestMaintenance:
    """Tests for the maintenance sweep."""

    @pytest.mark.asyncio
    async def test_purges_expired_records(self, worker, pipeline, make_record):
        await pipeline.store.put_record(make_record("old", ttl=-1))
        await pipeline.store.put_record(make_record("fresh"))

        result = await worker.run_maintenance()

        assert result == {
            "records_purged": 1,
            "records_dead_letters_purged": 0,
            "retrace_dead_letters_purged": 0,
        }
        assert len(pipeline.store) == 1


# ============================================================================
# CLI Tests
# ============================================================================

@pytest.mark.unit
class TestBuildParser:
    """Tests for the worker command line."""

    def test_defaults(self):
        args = build_parser().parse_args([])

        assert args.role == "all"
        assert args.worker_id is None
        assert args.maintenance_interval is None

    def test_options(self):
        args = build_parser().parse_args(["--role", "writer", "--worker-id", "w1", "--maintenance-interval", "60"])

        assert args.role == "writer"
        assert args.worker_id == "w1"
        assert args.maintenance_interval == 60.0

    def test_rejects_unknown_role(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--role", "reader"])
