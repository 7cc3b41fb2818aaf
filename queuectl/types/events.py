"""
Event type definitions for worker -> supervisor status messages.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from queuectl.constants import (
    EVENT_JOB_COMPLETED,
    EVENT_JOB_DEAD,
    EVENT_JOB_FAILED,
    EVENT_JOB_STARTED,
    EVENT_WORKER_STARTED,
    EVENT_WORKER_STOPPED,
)

# Command output carried in events is cut to this many characters
MAX_EVENT_OUTPUT = 2000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _trim(output: str) -> str:
    return output.strip()[:MAX_EVENT_OUTPUT]


class WorkerEvent(BaseModel):
    """
    Event emitted by a worker process.
    Relayed by the supervisor into its own log.
    """

    event_type: str
    worker_id: str
    timestamp: datetime
    job_id: str | None = None
    data: dict[str, Any] | None = None

    @classmethod
    def worker_started(cls, worker_id: str, pid: int) -> "WorkerEvent":
        """Create a worker started event."""
        return cls(
            event_type=EVENT_WORKER_STARTED,
            worker_id=worker_id,
            timestamp=_now(),
            data={"pid": pid},
        )

    @classmethod
    def worker_stopped(cls, worker_id: str) -> "WorkerEvent":
        """Create a worker stopped event."""
        return cls(event_type=EVENT_WORKER_STOPPED, worker_id=worker_id, timestamp=_now())

    @classmethod
    def job_started(
        cls, worker_id: str, job_id: str, command: str, pid: int | None = None
    ) -> "WorkerEvent":
        """
        Create a job started event.

        ``pid`` is the command's process group id, so the supervisor can kill
        the command when it has to kill the worker. It is None when the
        command could not be spawned.
        """
        data: dict[str, Any] = {"command": command}
        if pid is not None:
            data["pid"] = pid
        return cls(
            event_type=EVENT_JOB_STARTED,
            worker_id=worker_id,
            timestamp=_now(),
            job_id=job_id,
            data=data,
        )

    @classmethod
    def job_completed(
        cls,
        worker_id: str,
        job_id: str,
        duration_ms: float,
        stdout: str = "",
        stderr: str = "",
    ) -> "WorkerEvent":
        """Create a job completed event."""
        return cls(
            event_type=EVENT_JOB_COMPLETED,
            worker_id=worker_id,
            timestamp=_now(),
            job_id=job_id,
            data={
                "duration_ms": round(duration_ms, 1),
                "stdout": _trim(stdout),
                "stderr": _trim(stderr),
            },
        )

    @classmethod
    def job_failed(
        cls,
        worker_id: str,
        job_id: str,
        error: str,
        attempts: int,
        retry_in_seconds: float,
        stderr: str = "",
    ) -> "WorkerEvent":
        """Create a job failed (retry scheduled) event."""
        return cls(
            event_type=EVENT_JOB_FAILED,
            worker_id=worker_id,
            timestamp=_now(),
            job_id=job_id,
            data={
                "error": error,
                "attempts": attempts,
                "retry_in_seconds": retry_in_seconds,
                "stderr": _trim(stderr),
            },
        )

    @classmethod
    def job_dead(
        cls, worker_id: str, job_id: str, error: str, attempts: int, stderr: str = ""
    ) -> "WorkerEvent":
        """Create a job moved to DLQ event."""
        return cls(
            event_type=EVENT_JOB_DEAD,
            worker_id=worker_id,
            timestamp=_now(),
            job_id=job_id,
            data={"error": error, "total_attempts": attempts, "stderr": _trim(stderr)},
        )
