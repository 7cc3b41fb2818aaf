"""
Unit tests for the job lifecycle engine and retry policy.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from queuectl.constants import MAX_ERROR_LENGTH, JobState
from queuectl.db import utcnow
from queuectl.errors import DuplicateJobError, JobNotFoundError, StaleTransitionError
from queuectl.lifecycle import JobQueue, backoff_delay


async def promote_all(in_session) -> int:
    """Let every backoff elapse."""
    return await in_session(
        lambda repo: repo.promote_due_retries(now=utcnow() + timedelta(days=1))
    )


class TestBackoff:
    """Tests for the backoff schedule."""

    def test_exponential_delays(self):
        assert backoff_delay(2, 1) == timedelta(seconds=2)
        assert backoff_delay(2, 2) == timedelta(seconds=4)
        assert backoff_delay(2, 3) == timedelta(seconds=8)

    def test_delays_never_shrink(self):
        for base in (1, 2, 3, 5):
            delays = [backoff_delay(base, k) for k in range(1, 6)]
            assert delays == sorted(delays)

    def test_base_one_is_constant(self):
        assert {backoff_delay(1, k) for k in range(1, 5)} == {timedelta(seconds=1)}


class TestEnqueue:
    """Tests for JobQueue.enqueue."""

    async def test_enqueue_defaults(self, queue: JobQueue):
        """Test that omitted fields come from the runtime config."""
        job = await queue.enqueue({"id": "job1", "command": "echo hi"})

        assert job.id == "job1"
        assert job.state == JobState.PENDING
        assert job.attempts == 0
        assert job.max_retries == 3
        assert job.timeout is None

    async def test_enqueue_uses_configured_max_retries(self, queue: JobQueue):
        """Test that config changes apply to new jobs."""
        queue.config.set("max-retries", 5)

        job = await queue.enqueue({"command": "echo hi"})

        assert job.max_retries == 5

    async def test_enqueue_generates_id(self, queue: JobQueue):
        """Test that a missing id is generated."""
        first = await queue.enqueue({"command": "echo one"})
        second = await queue.enqueue({"command": "echo two"})

        assert first.id
        assert first.id != second.id

    async def test_enqueue_explicit_fields(self, queue: JobQueue):
        job = await queue.enqueue(
            {"id": "job1", "command": "sleep 5", "max_retries": 0, "timeout": 1.5}
        )

        assert job.max_retries == 0
        assert job.timeout == 1.5

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"command": "   "},
            {"command": "echo", "max_retries": -1},
            {"command": "echo", "timeout": 0},
            {"command": "echo", "id": "has space"},
            {"command": "echo", "priority": 1},
        ],
    )
    async def test_enqueue_rejects_invalid_input(self, queue: JobQueue, payload):
        """Test that invalid input is rejected before reaching the store."""
        with pytest.raises(ValidationError):
            await queue.enqueue(payload)

        assert (await queue.statistics()).total == 0

    async def test_enqueue_duplicate(self, queue: JobQueue):
        await queue.enqueue({"id": "job1", "command": "echo one"})

        with pytest.raises(DuplicateJobError):
            await queue.enqueue({"id": "job1", "command": "echo two"})


class TestOutcomes:
    """Tests for success and failure reporting."""

    async def test_success(self, queue: JobQueue):
        """Test that a successful run completes without counting an attempt."""
        await queue.enqueue({"id": "job1", "command": "echo hi"})
        job = await queue.claim("w1")

        completed = await queue.succeed(job, "w1")

        assert completed.state == JobState.COMPLETED
        assert completed.attempts == 0
        assert completed.worker_id is None

    async def test_failure_schedules_retry(self, queue: JobQueue):
        """Test that a failure with retries left parks the job in backoff."""
        await queue.enqueue({"id": "job1", "command": "exit 1", "max_retries": 2})
        job = await queue.claim("w1")

        before = utcnow()
        outcome = await queue.fail(job, "w1", "Command exited with code 1")

        assert not outcome.dead
        assert outcome.retry_in == timedelta(seconds=2)
        assert outcome.job.state == JobState.FAILED
        assert outcome.job.attempts == 1
        assert outcome.job.error == "Command exited with code 1"
        assert outcome.job.next_retry_at >= before + timedelta(seconds=2)

        # Still backing off
        assert await queue.claim("w1") is None

    async def test_retry_then_dead(self, queue: JobQueue, in_session):
        """Test that a job dies once its attempts reach max_retries + 1."""
        await queue.enqueue({"id": "job1", "command": "exit 1", "max_retries": 2})

        outcomes = []
        for _ in range(3):
            await promote_all(in_session)
            job = await queue.claim("w1")
            assert job is not None
            outcomes.append(await queue.fail(job, "w1", "exit 1"))

        assert [o.job.attempts for o in outcomes] == [1, 2, 3]
        assert [o.job.state for o in outcomes] == [JobState.FAILED, JobState.FAILED, JobState.DEAD]
        assert [o.retry_in for o in outcomes] == [timedelta(seconds=2), timedelta(seconds=4), None]

        await promote_all(in_session)
        assert await queue.claim("w1") is None

        dead = await queue.list_dlq()
        assert [job.id for job in dead] == ["job1"]

    async def test_zero_retries_dies_on_first_failure(self, queue: JobQueue):
        await queue.enqueue({"id": "job1", "command": "exit 1", "max_retries": 0})
        job = await queue.claim("w1")

        outcome = await queue.fail(job, "w1", "boom")

        assert outcome.dead
        assert outcome.job.attempts == 1

    async def test_backoff_base_from_config(self, queue: JobQueue):
        """Test that the configured backoff base drives the delay."""
        queue.config.set("backoff-base", 3)
        await queue.enqueue({"id": "job1", "command": "exit 1", "max_retries": 2})
        job = await queue.claim("w1")

        outcome = await queue.fail(job, "w1", "boom")

        assert outcome.retry_in == timedelta(seconds=3)

    async def test_failure_error_truncated(self, queue: JobQueue):
        await queue.enqueue({"id": "job1", "command": "exit 1", "max_retries": 0})
        job = await queue.claim("w1")

        outcome = await queue.fail(job, "w1", "x" * (MAX_ERROR_LENGTH * 2))

        assert len(outcome.job.error) == MAX_ERROR_LENGTH

    async def test_report_from_non_owner_rejected(self, queue: JobQueue):
        """Test that a worker that lost its claim cannot report on the job."""
        await queue.enqueue({"id": "job1", "command": "exit 1", "max_retries": 0})
        job = await queue.claim("w1")

        with pytest.raises(StaleTransitionError):
            await queue.succeed(job, "w2")
        with pytest.raises(StaleTransitionError):
            await queue.fail(job, "w2", "boom")

        assert (await queue.get("job1")).state == JobState.PROCESSING

    async def test_terminal_jobs_not_claimed(self, queue: JobQueue, in_session):
        await queue.enqueue({"id": "job1", "command": "true"})
        await queue.succeed(await queue.claim("w1"), "w1")

        await promote_all(in_session)
        await in_session(lambda repo: repo.reclaim_stale(now=utcnow() + timedelta(days=1)))

        assert await queue.claim("w1") is None
        assert (await queue.get("job1")).state == JobState.COMPLETED


class TestDeadLetterQueue:
    """Tests for DLQ retry."""

    async def test_retry_dead_job(self, queue: JobQueue, in_session):
        """Test the full exit-1 scenario followed by a DLQ retry."""
        await queue.enqueue({"id": "job1", "command": "exit 1", "max_retries": 2})
        for _ in range(3):
            await promote_all(in_session)
            await queue.fail(await queue.claim("w1"), "w1", "exit 1")

        dead = await queue.get("job1")
        assert dead.state == JobState.DEAD
        assert dead.attempts == 3

        job = await queue.retry_dead("job1")

        assert job.state == JobState.PENDING
        assert job.attempts == 0
        assert job.error is None
        assert await queue.list_dlq() == []

        claimed = await queue.claim("w1")
        assert claimed.id == "job1"

    async def test_retry_unknown_job(self, queue: JobQueue):
        with pytest.raises(JobNotFoundError):
            await queue.retry_dead("missing")

    async def test_retry_job_not_in_dlq(self, queue: JobQueue):
        await queue.enqueue({"id": "job1", "command": "true"})

        with pytest.raises(StaleTransitionError):
            await queue.retry_dead("job1")


class TestInspection:
    """Tests for read operations."""

    async def test_get_missing(self, queue: JobQueue):
        with pytest.raises(JobNotFoundError):
            await queue.get("missing")

    async def test_statistics_sum_to_inserted(self, queue: JobQueue):
        for n in range(4):
            await queue.enqueue({"id": f"job{n}", "command": "true", "max_retries": 0})
        await queue.succeed(await queue.claim("w1"), "w1")
        await queue.fail(await queue.claim("w1"), "w1", "boom")
        await queue.claim("w1")

        stats = await queue.statistics()

        assert stats.pending == 1
        assert stats.processing == 1
        assert stats.completed == 1
        assert stats.dead == 1
        assert stats.failed == 0
        assert stats.total == 4

    async def test_list_jobs_by_state_string(self, queue: JobQueue):
        await queue.enqueue({"id": "job1", "command": "true"})
        await queue.enqueue({"id": "job2", "command": "true"})
        await queue.claim("w1")

        pending = await queue.list_jobs("pending")

        assert [job.id for job in pending] == ["job2"]
