"""
Exception hierarchy for the job queue.

Store-level errors are recoverable: callers retry or report them to the
operator. Only ``CommandExecutionError`` feeds the retry/DLQ policy.
"""

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from queuectl.types.job import CommandResult


class QueueError(Exception):
    """Base class for all queue errors."""


class DuplicateJobError(QueueError):
    """A job with the same id already exists."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' already exists")
        self.job_id = job_id


class JobNotFoundError(QueueError):
    """Requested job id does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found")
        self.job_id = job_id


class StaleTransitionError(QueueError):
    """The job moved out from under the caller before the transition applied."""

    def __init__(self, job_id: str, current: str, expected: Iterable[str]):
        expected = sorted(str(state) for state in expected)
        super().__init__(
            f"Job '{job_id}' is {current}, expected one of: {', '.join(expected)}"
        )
        self.job_id = job_id
        self.current = current
        self.expected = expected


class CommandExecutionError(QueueError):
    """The job command exited non-zero, timed out or could not be spawned."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        result: "CommandResult | None" = None,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.result = result


class StoreUnavailableError(QueueError):
    """The persistence layer cannot be reached."""


class ConfigError(QueueError):
    """Invalid runtime configuration key or value."""
