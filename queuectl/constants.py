"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claimed by a worker)
    - PROCESSING -> COMPLETED (command exited 0)
    - PROCESSING -> FAILED (command failed, retry scheduled after backoff)
    - FAILED -> PENDING (backoff elapsed)
    - PROCESSING -> DEAD (retry budget spent)
    - PROCESSING -> PENDING (stale claim reclaimed - crash recovery)
    - DEAD -> PENDING (operator retry from the DLQ)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.DEAD})

# Runtime config keys
CONFIG_MAX_RETRIES = "max-retries"
CONFIG_BACKOFF_BASE = "backoff-base"

# Default values
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 2
MAX_ERROR_LENGTH = 2000

# Metrics names
METRIC_QUEUE_DEPTH = "queuectl_queue_depth"
METRIC_JOBS_ENQUEUED = "queuectl_jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "queuectl_jobs_claimed_total"
METRIC_JOBS_FINISHED = "queuectl_job_attempts_total"
METRIC_JOB_DURATION = "queuectl_job_duration_seconds"
METRIC_JOBS_RECLAIMED = "queuectl_jobs_reclaimed_total"

# Trace span names
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"

# Worker event types
EVENT_WORKER_STARTED = "worker.started"
EVENT_WORKER_STOPPED = "worker.stopped"
EVENT_JOB_STARTED = "job.started"
EVENT_JOB_COMPLETED = "job.completed"
EVENT_JOB_FAILED = "job.failed"
EVENT_JOB_DEAD = "job.dead"
