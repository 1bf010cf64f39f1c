"""Data lineage recording and reconstruction.

This package holds the lineage models, the ingress endpoint, the lineage
store with its writer, and the trace reconstructor.
"""

from lineage_pipeline.lineage.models import (
    LineageEvent,
    LineageRecord,
    LineageTree,
    LineageTreeNode,
    RetraceRequest,
    RetraceState,
    TruncationPoint,
    TruncationReason,
)

__all__ = [
    "LineageEvent",
    "LineageRecord",
    "LineageTree",
    "LineageTreeNode",
    "RetraceRequest",
    "RetraceState",
    "TruncationPoint",
    "TruncationReason",
]
