"""
Job-related type definitions.
Validated schemas at the enqueue boundary and external read shapes.
"""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from queuectl.constants import JobState


class JobCreate(BaseModel):
    """
    Enqueue input.

    ``command`` is required; ``id`` is generated and ``max_retries`` taken from
    the runtime config when omitted.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    id: str | None = Field(default=None, min_length=1, max_length=64)
    command: str = Field(..., min_length=1)
    max_retries: int | None = Field(default=None, ge=0)
    timeout: float | None = Field(default=None, gt=0, description="Command timeout in seconds")

    @field_validator("id")
    @classmethod
    def _no_whitespace_in_id(cls, value: str | None) -> str | None:
        if value is not None and any(ch.isspace() for ch in value):
            raise ValueError("id must not contain whitespace")
        return value


class JobRecord(BaseModel):
    """External read shape of a job."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    command: str
    state: JobState
    attempts: int
    max_retries: int
    created_at: datetime
    updated_at: datetime
    error: str | None = None


class QueueStats(BaseModel):
    """Number of jobs in each state."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed + self.dead


class WorkerStatus(BaseModel):
    """
    Point-in-time snapshot of the worker pool.

    ``active`` counts live worker processes, not workers currently executing.
    """

    model_config = ConfigDict(populate_by_name=True)

    total: int = 0
    active: int = 0
    uptime_ms: int = Field(default=0, alias="uptimeMs")


@dataclass
class CommandResult:
    """
    Result of running a job command.
    Returned by the executor after the process exits.
    """

    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0
    timed_out: bool = False
    spawn_error: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.spawn_error is None

    @property
    def error(self) -> str | None:
        """Failure message recorded on the job, or None on success."""
        if self.success:
            return None
        if self.spawn_error is not None:
            return f"Failed to start command: {self.spawn_error}"
        if self.timed_out:
            return "Command timed out"
        detail = self.stderr.strip() or self.stdout.strip()
        message = f"Command exited with code {self.exit_code}"
        return f"{message}: {detail}" if detail else message
