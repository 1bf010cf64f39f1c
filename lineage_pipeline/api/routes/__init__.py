"""API route handlers.

This package contains all API route handlers for the
Data Lineage Pipeline.
"""

from lineage_pipeline.api.routes.dlq import router as dlq_router
from lineage_pipeline.api.routes.health import router as health_router
from lineage_pipeline.api.routes.lineage import router as lineage_router

__all__ = [
    "dlq_router",
    "health_router",
    "lineage_router",
]
