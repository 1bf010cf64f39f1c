"""Data lineage API routes.

This module provides the ingress endpoint, the retrace trigger and
read-only lookups into the lineage store.
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from lineage_pipeline.api.dependencies import get_lineage_pipeline
from lineage_pipeline.core.errors import InvalidLineageFact, PublishError, TransientStoreError
from lineage_pipeline.core.pipeline import LineagePipeline
from lineage_pipeline.lineage.models import MAX_ID_LENGTH, LineageRecord

router = APIRouter(prefix="/lineage", tags=["Data Lineage"])


# ============================================================================
# Request/Response Models
# ============================================================================

class EventAcceptedResponse(BaseModel):
    """Lineage event accepted for recording."""
    event_id: str
    node_id: str
    root_id: str | None
    parent_id: str | None


class RetraceTriggerRequest(BaseModel):
    """Request to reconstruct and archive a lineage tree."""
    root_id: str | None = Field(default=None, max_length=MAX_ID_LENGTH, description="Tree to reconstruct")
    node_id: str | None = Field(
        default=None, max_length=MAX_ID_LENGTH, description="Any node of the tree to reconstruct"
    )
    actions: list[str] | None = Field(default=None, description="Lineage-forming actions to follow")


class RetraceAcceptedResponse(BaseModel):
    """Retrace request accepted."""
    request_id: str
    root_id: str | None
    node_id: str | None


class LineageRecordResponse(BaseModel):
    """Lineage record response."""
    root_id: str
    node_id: str
    parent_id: str | None
    action_taken: str
    record: dict[str, Any]
    recorded_at: datetime
    ttl_expiry: int | None

    @classmethod
    def from_record(cls, record: LineageRecord) -> "LineageRecordResponse":
        return cls(**record.model_dump())


class TreeRecordsResponse(BaseModel):
    """Records of one lineage tree."""
    root_id: str
    action: str | None
    records: list[LineageRecordResponse]
    total_count: int


def _unavailable(error: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))


# ============================================================================
# API Endpoints
# ============================================================================

@router.post("/events", response_model=EventAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_lineage_event(
    fact: dict[str, Any] = Body(..., description="Lineage fact"),
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
) -> EventAcceptedResponse:
    """Accept a lineage fact and queue it for recording.

    The fact needs an ``action_taken`` (or ``action``); ``node_id`` is
    assigned when absent and a fact with neither parent nor root starts a
    new tree.
    """
    try:
        event = await pipeline.ingress.submit(fact)
    except InvalidLineageFact as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    except PublishError as e:
        raise _unavailable(e)
    return EventAcceptedResponse(
        event_id=event.event_id,
        node_id=event.node_id,
        root_id=event.root_id,
        parent_id=event.parent_id,
    )


@router.post("/retrace", response_model=RetraceAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_retrace(
    body: RetraceTriggerRequest,
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
) -> RetraceAcceptedResponse:
    """Queue a lineage tree for reconstruction and archiving."""
    if not body.root_id and not body.node_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="root_id or node_id is required",
        )
    try:
        request = await pipeline.retrace_publisher.request_retrace(
            root_id=body.root_id,
            node_id=body.node_id,
            actions=body.actions,
        )
    except PublishError as e:
        raise _unavailable(e)
    return RetraceAcceptedResponse(
        request_id=request.request_id,
        root_id=request.root_id,
        node_id=request.node_id,
    )


@router.get("/nodes/{node_id}", response_model=LineageRecordResponse)
async def get_lineage_node(
    node_id: str,
    include_expired: bool = Query(False, description="Return the record even if its TTL passed"),
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
) -> LineageRecordResponse:
    """Get the record of a single node."""
    try:
        record = await pipeline.store.find_by_node(node_id, include_expired=include_expired)
    except TransientStoreError as e:
        raise _unavailable(e)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Lineage node not found: {node_id}")
    return LineageRecordResponse.from_record(record)


@router.get("/trees/{root_id}/records", response_model=TreeRecordsResponse)
async def list_tree_records(
    root_id: str,
    action: str | None = Query(None, description="Only records with this action"),
    include_expired: bool = Query(False, description="Include records whose TTL passed"),
    pipeline: LineagePipeline = Depends(get_lineage_pipeline),
) -> TreeRecordsResponse:
    """List the records of one lineage tree."""
    try:
        if action:
            records = await pipeline.store.query_by_action(root_id, action, include_expired=include_expired)
        else:
            records = await pipeline.store.query_tree(root_id, include_expired=include_expired)
    except TransientStoreError as e:
        raise _unavailable(e)
    return TreeRecordsResponse(
        root_id=root_id,
        action=action,
        records=[LineageRecordResponse.from_record(r) for r in records],
        total_count=len(records),
    )
