"""Dead-letter API routes.

Operators list, inspect, redrive and discard messages parked in the
dead-letter channels of the record and retrace channels.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from lineage_pipeline.api.dependencies import get_lineage_pipeline, resolve_dead_letters
from lineage_pipeline.core.dlq import DeadLetterEntry
from lineage_pipeline.core.errors import ChannelError
from lineage_pipeline.core.pipeline import LineagePipeline

router = APIRouter(prefix="/dlq", tags=["dlq"])


# ============================================================================
# Response Models
# ============================================================================

class DeadLetterEntryResponse(BaseModel):
    """Response model for a dead-letter entry."""
    message_id: str
    body: str
    source_channel: str
    reason: str
    receive_count: int
    dead_lettered_at: str
    attributes: dict[str, str]


class DeadLetterListResponse(BaseModel):
    """Response model for a dead-letter listing."""
    channel: str
    entries: list[DeadLetterEntryResponse]
    total_count: int
    page: int
    page_size: int


class RedriveResponse(BaseModel):
    """Response for a redrive."""
    message_id: str
    new_message_id: str
    source_channel: str


def _entry_to_response(entry: DeadLetterEntry) -> DeadLetterEntryResponse:
    return DeadLetterEntryResponse(**entry.to_dict())


# ============================================================================
# API Endpoints
# ============================================================================

@router.get("/{channel}", response_model=DeadLetterListResponse)
async def list_dead_letters(
    channel: str,
    reason: str | None = Query(None, description="Filter by failure reason prefix"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
) -> DeadLetterListResponse:
    """List parked messages of a channel, newest first."""
    dlq = resolve_dead_letters(pipeline, channel)
    entries = await dlq.list_entries(limit=page_size, offset=(page - 1) * page_size, reason=reason)
    return DeadLetterListResponse(
        channel=channel,
        entries=[_entry_to_response(e) for e in entries],
        total_count=await dlq.count_entries(reason=reason),
        page=page,
        page_size=page_size,
    )


@router.get("/{channel}/stats")
async def get_dead_letter_stats(
    channel: str,
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
) -> dict[str, Any]:
    """Summarize the parked messages of a channel."""
    return await resolve_dead_letters(pipeline, channel).get_statistics()


@router.get("/{channel}/{message_id}", response_model=DeadLetterEntryResponse)
async def get_dead_letter(
    channel: str,
    message_id: str,
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
) -> DeadLetterEntryResponse:
    """Get a single parked message."""
    entry = await resolve_dead_letters(pipeline, channel).get_entry(message_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Dead-letter message not found: {message_id}")
    return _entry_to_response(entry)


@router.post("/{channel}/{message_id}/redrive", response_model=RedriveResponse)
async def redrive_dead_letter(
    channel: str,
    message_id: str,
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
) -> RedriveResponse:
    """Send a parked message back to its source channel."""
    dlq = resolve_dead_letters(pipeline, channel)
    try:
        new_id = await dlq.redrive(message_id)
    except ChannelError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    if new_id is None:
        raise HTTPException(status_code=404, detail=f"Dead-letter message not found: {message_id}")
    return RedriveResponse(message_id=message_id, new_message_id=new_id, source_channel=dlq.source.name)


@router.delete("/{channel}/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_dead_letter(
    channel: str,
    message_id: str,
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
) -> None:
    """Discard a parked message for good."""
    if not await resolve_dead_letters(pipeline, channel).discard(message_id):
        raise HTTPException(status_code=404, detail=f"Dead-letter message not found: {message_id}")
