"""
Type definitions for the job queue.
Contains input/output type definitions, grouped by module.
"""

from queuectl.types.events import WorkerEvent
from queuectl.types.job import (
    CommandResult,
    JobCreate,
    JobRecord,
    QueueStats,
    WorkerStatus,
)

__all__ = [
    # Job types
    "JobCreate",
    "JobRecord",
    "QueueStats",
    "WorkerStatus",
    "CommandResult",
    # Event types
    "WorkerEvent",
]
