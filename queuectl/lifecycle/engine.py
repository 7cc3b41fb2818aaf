"""
Job lifecycle engine.

Layers the state machine and the retry policy on top of ``JobRepository``:

    pending --claim--> processing
    processing --success--> completed
    processing --failure, retries left--> failed --backoff elapsed--> pending
    processing --failure, no retries left--> dead
    dead --operator retry--> pending

Each public method runs in its own session, so every call is one
transaction against the store.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import uuid4

from queuectl.config import Settings, get_settings
from queuectl.config_store import ConfigStore
from queuectl.constants import MAX_ERROR_LENGTH, JobState
from queuectl.db import Job, get_session_context, utcnow
from queuectl.db.repository import JobRepository
from queuectl.errors import JobNotFoundError
from queuectl.observability.metrics import get_metrics
from queuectl.types.job import JobCreate, QueueStats

logger = logging.getLogger(__name__)


def backoff_delay(base: int, attempts: int) -> timedelta:
    """
    Delay before the retry that follows failure number ``attempts``.

    The first failure waits ``base`` seconds, the k-th ``base ** k``.
    """
    return timedelta(seconds=base**attempts)


@dataclass
class FailureOutcome:
    """Result of recording a failed attempt."""

    job: Job
    retry_in: timedelta | None

    @property
    def dead(self) -> bool:
        return self.job.state == JobState.DEAD


class JobQueue:
    """
    Entry point for every job state change.

    Used by the CLI for enqueue, inspection and DLQ retry, and by workers
    for claiming and reporting outcomes.
    """

    def __init__(
        self,
        config: ConfigStore | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._config = config or ConfigStore(self._settings.resolved_config_file)
        self._metrics = get_metrics()

    @property
    def config(self) -> ConfigStore:
        return self._config

    async def enqueue(self, request: JobCreate | dict[str, Any]) -> Job:
        """
        Validate and store a new job.

        Args:
            request: Enqueue input, as a schema or a raw mapping.

        Returns:
            The stored pending job.

        Raises:
            pydantic.ValidationError: If the input does not match the schema.
            DuplicateJobError: If the id is already taken.
        """
        if not isinstance(request, JobCreate):
            request = JobCreate.model_validate(request)

        job_id = request.id or str(uuid4())
        max_retries = (
            request.max_retries if request.max_retries is not None else self._config.max_retries
        )
        timeout = request.timeout if request.timeout is not None else self._settings.job_timeout_seconds

        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)
            job = await repo.insert(
                job_id=job_id,
                command=request.command,
                max_retries=max_retries,
                timeout=timeout,
            )

        self._metrics.record_job_enqueued()
        return job

    async def claim(self, worker_id: str) -> Job | None:
        """Claim the oldest pending job for ``worker_id``, or None if idle."""
        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)
            return await repo.claim_next(worker_id)

    async def succeed(self, job: Job, worker_id: str | None = None) -> Job:
        """
        Mark a claimed job as completed.

        Raises:
            StaleTransitionError: If the job is no longer held by the worker.
        """
        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)
            completed = await repo.transition(
                job.id,
                {JobState.PROCESSING},
                JobState.COMPLETED,
                owner=worker_id,
                worker_id=None,
            )

        logger.info("Job completed successfully", extra={"job_id": job.id})
        return completed

    async def fail(self, job: Job, worker_id: str | None, error: str) -> FailureOutcome:
        """
        Record a failed attempt and apply the retry policy.

        The attempt counter is incremented. With retries left the job is
        parked as FAILED until ``now + backoff_base ** attempts`` seconds;
        otherwise it moves to DEAD.

        Raises:
            StaleTransitionError: If the job is no longer held by the worker.
        """
        attempts = job.attempts + 1
        error = (error or "Unknown error")[:MAX_ERROR_LENGTH]

        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)

            if job.retries_exhausted_after_failure:
                updated = await repo.transition(
                    job.id,
                    {JobState.PROCESSING},
                    JobState.DEAD,
                    owner=worker_id,
                    attempts=attempts,
                    error=error,
                    worker_id=None,
                    next_retry_at=None,
                )
                logger.warning(
                    f"Job moved to DLQ after {attempts} attempts",
                    extra={"job_id": job.id, "error": error},
                )
                return FailureOutcome(job=updated, retry_in=None)

            delay = backoff_delay(self._config.backoff_base, attempts)
            updated = await repo.transition(
                job.id,
                {JobState.PROCESSING},
                JobState.FAILED,
                owner=worker_id,
                attempts=attempts,
                error=error,
                worker_id=None,
                next_retry_at=utcnow() + delay,
            )

        logger.info(
            "Job scheduled for retry",
            extra={
                "job_id": job.id,
                "attempts": attempts,
                "retry_in_seconds": delay.total_seconds(),
            },
        )
        return FailureOutcome(job=updated, retry_in=delay)

    async def retry_dead(self, job_id: str) -> Job:
        """
        Move a job from the DLQ back to pending with a fresh attempt budget.

        Raises:
            JobNotFoundError: If the job does not exist.
            StaleTransitionError: If the job is not in the DLQ.
        """
        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)
            return await repo.reset_to_pending(job_id)

    async def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Keep a running job from being reclaimed as stale."""
        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)
            return await repo.heartbeat(job_id, worker_id)

    async def get(self, job_id: str) -> Job:
        """
        Get a job by id.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)
            job = await repo.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, state: JobState | str | None = None) -> list[Job]:
        """List jobs, oldest first, optionally filtered by state."""
        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)
            jobs = await repo.list_jobs(JobState(state) if state else None)
        return list(jobs)

    async def list_dlq(self) -> list[Job]:
        """List jobs in the dead letter queue."""
        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)
            jobs = await repo.list_dlq()
        return list(jobs)

    async def statistics(self) -> QueueStats:
        """Count jobs per state and refresh the queue depth gauge."""
        async with get_session_context() as session:
            repo = JobRepository(session, self._settings)
            counts = await repo.statistics()

        for state, count in counts.items():
            self._metrics.update_queue_depth(state, count)
        return QueueStats(**counts)
