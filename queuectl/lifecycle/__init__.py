"""
Lifecycle module.
Contains the job state machine and the retry/backoff/DLQ policy.
"""

from queuectl.lifecycle.engine import FailureOutcome, JobQueue, backoff_delay

__all__ = ["JobQueue", "FailureOutcome", "backoff_delay"]
