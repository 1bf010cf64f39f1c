"""Health check routes for the Data Lineage Pipeline.

Liveness only says the process answers; readiness and the full health
check probe the channels and the lineage store.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from lineage_pipeline.api.dependencies import get_config, get_lineage_pipeline
from lineage_pipeline.config import Settings
from lineage_pipeline.core.channel import DurableChannel
from lineage_pipeline.core.pipeline import LineagePipeline

router = APIRouter(prefix="/health", tags=["Health"])


class HealthCheckResult(BaseModel):
    """Result of a health check."""
    healthy: bool
    component: str
    message: str | None = None
    latency_ms: float | None = None
    details: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    """Full health check response."""
    status: str
    timestamp: str
    version: str
    environment: str
    components: dict[str, HealthCheckResult]


class ReadinessResponse(BaseModel):
    """Readiness probe response."""
    ready: bool
    timestamp: str
    checks: dict[str, bool]


class LivenessResponse(BaseModel):
    """Liveness probe response."""
    alive: bool
    timestamp: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def check_channel(channel: DurableChannel) -> HealthCheckResult:
    """Check that a channel backend answers.

    Returns:
        HealthCheckResult with the channel depth
    """
    start = time.time()
    component = f"channel:{channel.name}"
    try:
        depth = await channel.depth()
        return HealthCheckResult(
            healthy=True,
            component=component,
            message="Channel reachable",
            latency_ms=round((time.time() - start) * 1000, 2),
            details=depth,
        )
    except Exception as e:
        return HealthCheckResult(
            healthy=False,
            component=component,
            message=f"Channel check failed: {str(e)}",
            latency_ms=round((time.time() - start) * 1000, 2),
        )


async def check_store(pipeline: LineagePipeline) -> HealthCheckResult:
    """Check that the lineage store answers a lookup.

    Returns:
        HealthCheckResult with store status
    """
    start = time.time()
    try:
        await pipeline.store.find_by_node("__health_check__")
        return HealthCheckResult(
            healthy=True,
            component="store",
            message="Lineage store reachable",
            latency_ms=round((time.time() - start) * 1000, 2),
        )
    except Exception as e:
        return HealthCheckResult(
            healthy=False,
            component="store",
            message=f"Store check failed: {str(e)}",
            latency_ms=round((time.time() - start) * 1000, 2),
        )


async def _run_checks(pipeline: LineagePipeline) -> list[HealthCheckResult]:
    return list(await asyncio.gather(
        check_channel(pipeline.record_channel),
        check_channel(pipeline.retrace_channel),
        check_store(pipeline),
    ))


@router.get("", response_model=HealthResponse)
async def health_check(
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
    config: Settings = Depends(get_config),
) -> HealthResponse:
    """Health of every pipeline dependency."""
    checks = await _run_checks(pipeline)
    return HealthResponse(
        status="healthy" if all(c.healthy for c in checks) else "unhealthy",
        timestamp=_now(),
        version=config.app_version,
        environment=config.env,
        components={c.component: c for c in checks},
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_probe(pipeline: LineagePipeline = Depends(get_lineage_pipeline)) -> ReadinessResponse:
    """Readiness probe: 503 until the channels and the store answer."""
    checks = await _run_checks(pipeline)
    results = {c.component: c.healthy for c in checks}
    if not all(results.values()):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"ready": False, "timestamp": _now(), "checks": results},
        )
    return ReadinessResponse(ready=True, timestamp=_now(), checks=results)


@router.get("/live", response_model=LivenessResponse)
async def liveness_probe() -> LivenessResponse:
    """Liveness probe: the process is up."""
    return LivenessResponse(alive=True, timestamp=_now())
