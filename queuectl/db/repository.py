"""
Job repository for database operations.
Implements the atomic primitives every job state change goes through.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl.config import Settings, get_settings
from queuectl.constants import JobState
from queuectl.db.models import Job, utcnow
from queuectl.errors import DuplicateJobError, JobNotFoundError, StaleTransitionError
from queuectl.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job insertion with duplicate id detection
    - Claiming with a single conditional UPDATE
    - Guarded state transitions
    - Retry promotion and stale-claim recovery
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            settings: Optional settings; defaults to the process settings.
        """
        self._session = session
        self._settings = settings or get_settings()

    async def insert(
        self,
        job_id: str,
        command: str,
        max_retries: int,
        timeout: float | None = None,
    ) -> Job:
        """
        Persist a new pending job.

        Args:
            job_id: Unique job identifier.
            command: Shell command to run.
            max_retries: Retries permitted after the first failure.
            timeout: Optional command timeout in seconds.

        Returns:
            The stored Job.

        Raises:
            DuplicateJobError: If a job with this id exists.
        """
        now = utcnow()
        job = Job(
            id=job_id,
            command=command,
            state=JobState.PENDING,
            attempts=0,
            max_retries=max_retries,
            timeout=timeout,
            created_at=now,
            updated_at=now,
            queued_at=now,
        )
        self._session.add(job)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise DuplicateJobError(job_id) from exc

        logger.info("Created new job", extra={"job_id": job_id})
        return job

    async def get(self, job_id: str) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(self, state: JobState | None = None) -> Sequence[Job]:
        """
        List jobs, oldest first, optionally filtered by state.

        Args:
            state: Optional state filter.

        Returns:
            List of jobs.
        """
        stmt = select(Job).order_by(Job.created_at.asc(), Job.id.asc())
        if state is not None:
            stmt = stmt.where(Job.state == state)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_dlq(self) -> Sequence[Job]:
        """List dead jobs, most recently failed first."""
        stmt = (
            select(Job)
            .where(Job.state == JobState.DEAD)
            .order_by(Job.updated_at.desc(), Job.id.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def statistics(self) -> dict[str, int]:
        """
        Get job counts by state.

        Returns:
            Dictionary of state -> count, with every state present.
        """
        stmt = select(Job.state, func.count()).group_by(Job.state)
        result = await self._session.execute(stmt)
        counts = {state.value: 0 for state in JobState}
        for state, count in result.all():
            counts[JobState(state).value] = count
        return counts

    async def promote_due_retries(self, now: datetime | None = None) -> int:
        """
        Move FAILED jobs whose backoff has elapsed back to PENDING.

        Returns:
            Number of promoted jobs.
        """
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(
                Job.state == JobState.FAILED,
                Job.next_retry_at <= now,
            )
            .values(
                state=JobState.PENDING,
                next_retry_at=None,
                queued_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount or 0

        if count > 0:
            logger.debug(f"Promoted {count} jobs out of backoff")

        return count

    async def reclaim_stale(self, now: datetime | None = None) -> int:
        """
        Recover PROCESSING jobs whose owner stopped heartbeating.

        A job whose ``updated_at`` is older than ``worker_stale_after_seconds``
        belongs to a worker that was killed mid-execution; it is returned to
        PENDING so another worker can run it.

        Returns:
            Number of reclaimed jobs.
        """
        now = now or utcnow()
        stale_before = now - timedelta(seconds=self._settings.worker_stale_after_seconds)
        stmt = (
            update(Job)
            .where(
                Job.state == JobState.PROCESSING,
                Job.updated_at < stale_before,
            )
            .values(
                state=JobState.PENDING,
                worker_id=None,
                queued_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount or 0

        if count > 0:
            logger.warning(f"Reclaimed {count} stale processing jobs")
            get_metrics().record_reclaimed(count)

        return count

    async def claim_next(self, worker_id: str, now: datetime | None = None) -> Job | None:
        """
        Atomically claim the oldest pending job.

        This is the critical path for job distribution. The sweep steps and
        the claim run in the caller's transaction; the claim itself is one
        conditional UPDATE so the select and the state change cannot be
        separated. On PostgreSQL the candidate row is locked with
        ``FOR UPDATE SKIP LOCKED``; on SQLite the transaction already holds
        the write lock.

        Args:
            worker_id: The claiming worker.
            now: Optional clock override.

        Returns:
            The claimed Job, or None if nothing is pending.
        """
        now = now or utcnow()

        await self.promote_due_retries(now)
        await self.reclaim_stale(now)

        candidate = (
            select(Job.id)
            .where(Job.state == JobState.PENDING)
            .order_by(Job.queued_at.asc(), Job.created_at.asc(), Job.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(Job)
            .where(
                Job.id == candidate,
                Job.state == JobState.PENDING,
            )
            .values(
                state=JobState.PROCESSING,
                worker_id=worker_id,
                updated_at=now,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        claimed_id = result.scalar_one_or_none()
        if claimed_id is None:
            return None

        job = await self.get(claimed_id)

        if job is not None:
            logger.info(
                "Claimed job",
                extra={"job_id": job.id, "worker_id": worker_id},
            )

        return job

    async def transition(
        self,
        job_id: str,
        from_states: Iterable[JobState],
        to_state: JobState,
        owner: str | None = None,
        **fields: Any,
    ) -> Job:
        """
        Move a job to ``to_state`` if its current state is in ``from_states``.

        Args:
            job_id: The job id.
            from_states: States the job must currently be in.
            to_state: Target state.
            owner: If given, the job must be held by this worker.
            **fields: Extra columns to set (attempts, error, ...).

        Returns:
            The updated Job.

        Raises:
            JobNotFoundError: If the job does not exist.
            StaleTransitionError: If the job moved under the caller.
        """
        from_states = tuple(from_states)
        now = utcnow()

        criteria = [Job.id == job_id, Job.state.in_(from_states)]
        if owner is not None:
            criteria.append(Job.worker_id == owner)

        stmt = (
            update(Job)
            .where(*criteria)
            .values(state=to_state, updated_at=now, **fields)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        job = await self.get(job_id)
        if (result.rowcount or 0) == 0:
            current = job
            if current is None:
                raise JobNotFoundError(job_id)
            if current.state in from_states and owner is not None:
                logger.warning(
                    "Worker doesn't own job",
                    extra={"job_id": job_id, "worker_id": owner, "owner": current.worker_id},
                )
            raise StaleTransitionError(job_id, current.state, from_states)

        logger.debug(
            "Job transitioned",
            extra={"job_id": job_id, "state": to_state.value},
        )
        return job

    async def reset_to_pending(
        self,
        job_id: str,
        from_states: Iterable[JobState] = (JobState.DEAD,),
    ) -> Job:
        """
        Reset a job for another full round of attempts (DLQ retry).

        Clears the error and attempt counter and puts the job at the back of
        the pending queue.

        Raises:
            JobNotFoundError: If the job does not exist.
            StaleTransitionError: If the job is not in ``from_states``.
        """
        now = utcnow()
        job = await self.transition(
            job_id,
            from_states,
            JobState.PENDING,
            attempts=0,
            error=None,
            worker_id=None,
            next_retry_at=None,
            queued_at=now,
        )

        logger.info("Job reset to pending", extra={"job_id": job_id})
        return job

    async def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """
        Refresh ``updated_at`` on a job the worker still holds.

        Returns:
            True if the job is still owned by the worker, False otherwise.
        """
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.state == JobState.PROCESSING,
                Job.worker_id == worker_id,
            )
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0
