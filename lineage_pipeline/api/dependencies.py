"""FastAPI dependencies for the API layer.

Routes reach the pipeline through these functions so tests can swap in
their own pipeline with ``app.dependency_overrides``.
"""

from fastapi import HTTPException, status

from lineage_pipeline.config import Settings, get_settings
from lineage_pipeline.core.dlq import DeadLetterQueue
from lineage_pipeline.core.pipeline import LineagePipeline, get_pipeline


async def get_config() -> Settings:
    """Get application settings dependency.

    Returns:
        Application settings
    """
    return get_settings()


async def get_lineage_pipeline() -> LineagePipeline:
    """Get the pipeline dependency.

    Returns:
        Global pipeline instance
    """
    return get_pipeline()


def resolve_dead_letters(pipeline: LineagePipeline, channel: str) -> DeadLetterQueue:
    """Look up the dead-letter view for a source channel name.

    Raises:
        HTTPException: 404 for an unknown channel
    """
    dlq = pipeline.dead_letters.get(channel)
    if dlq is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown channel: {channel}. Must be one of {sorted(pipeline.dead_letters)}",
        )
    return dlq
