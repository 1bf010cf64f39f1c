"""Worker service package.

This package contains the worker service that runs the store writer and
the trace reconstructor.
"""

from lineage_pipeline.worker.main import WorkerRole, WorkerService

__all__ = ["WorkerRole", "WorkerService"]
