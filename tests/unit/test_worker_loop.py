"""
Unit tests for the worker loop against a scripted queue.
"""

import asyncio
from datetime import timedelta

from queuectl.config import Settings
from queuectl.constants import JobState
from queuectl.db import Job
from queuectl.errors import StaleTransitionError, StoreUnavailableError
from queuectl.lifecycle import FailureOutcome
from queuectl.worker.main import Worker


def make_job(job_id: str = "job1", command: str = "true") -> Job:
    return Job(
        id=job_id,
        command=command,
        state=JobState.PROCESSING,
        attempts=0,
        max_retries=1,
        worker_id="w1",
    )


class ScriptedQueue:
    """
    Stand-in for JobQueue.

    ``claims`` is consumed in order; an exception instance is raised instead
    of returned. ``succeed_errors`` are raised by successive succeed calls.
    """

    def __init__(self, claims=None, succeed_errors=None):
        self.claims = list(claims or [])
        self.succeed_errors = list(succeed_errors or [])
        self.succeeded: list[str] = []
        self.failed: list[tuple[str, str]] = []
        self.heartbeats = 0
        self.done = asyncio.Event()

    async def claim(self, worker_id):
        if not self.claims:
            self.done.set()
            return None
        item = self.claims.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def succeed(self, job, worker_id=None):
        if self.succeed_errors:
            raise self.succeed_errors.pop(0)
        self.succeeded.append(job.id)
        job.state = JobState.COMPLETED
        return job

    async def fail(self, job, worker_id, error):
        self.failed.append((job.id, error))
        job.attempts += 1
        job.state = JobState.FAILED
        return FailureOutcome(job=job, retry_in=timedelta(seconds=2))

    async def heartbeat(self, job_id, worker_id):
        self.heartbeats += 1
        return True


async def run_until_idle(worker: Worker, queue: ScriptedQueue) -> None:
    task = asyncio.create_task(worker.start())
    await asyncio.wait_for(queue.done.wait(), timeout=10)
    await worker.stop()
    await asyncio.wait_for(task, timeout=10)


class TestWorkerLoop:
    """Tests for Worker against a scripted queue."""

    async def test_claim_outage_does_not_stop_worker(self, settings: Settings):
        queue = ScriptedQueue(claims=[StoreUnavailableError("locked"), make_job()])
        worker = Worker(queue=queue, worker_id="w1", settings=settings)

        await run_until_idle(worker, queue)

        assert queue.succeeded == ["job1"]

    async def test_unexpected_error_does_not_stop_worker(self, settings: Settings):
        queue = ScriptedQueue(claims=[RuntimeError("bug"), make_job()])
        worker = Worker(queue=queue, worker_id="w1", settings=settings)

        await run_until_idle(worker, queue)

        assert queue.succeeded == ["job1"]

    async def test_report_retried_on_outage(self, settings: Settings):
        """Test that an outcome report survives a short store outage."""
        queue = ScriptedQueue(
            claims=[make_job()],
            succeed_errors=[StoreUnavailableError("locked"), StoreUnavailableError("locked")],
        )
        worker = Worker(queue=queue, worker_id="w1", settings=settings)

        await run_until_idle(worker, queue)

        assert queue.succeeded == ["job1"]

    async def test_report_gives_up_after_bounded_attempts(self, settings: Settings):
        attempts = settings.worker_report_attempts
        queue = ScriptedQueue(
            claims=[make_job("lost"), make_job("next")],
            succeed_errors=[StoreUnavailableError("down")] * attempts,
        )
        worker = Worker(queue=queue, worker_id="w1", settings=settings)

        await run_until_idle(worker, queue)

        assert queue.succeeded == ["next"]

    async def test_stale_report_is_discarded(self, settings: Settings):
        queue = ScriptedQueue(
            claims=[make_job("stale"), make_job("next")],
            succeed_errors=[StaleTransitionError("stale", JobState.PENDING, [JobState.PROCESSING])],
        )
        events = []
        worker = Worker(queue=queue, worker_id="w1", settings=settings, emit=events.append)

        await run_until_idle(worker, queue)

        assert queue.succeeded == ["next"]
        completed = [e.job_id for e in events if e.event_type == "job.completed"]
        assert completed == ["next"]

    async def test_failed_command_reported(self, settings: Settings):
        queue = ScriptedQueue(claims=[make_job(command="echo bad >&2; exit 4")])
        events = []
        worker = Worker(queue=queue, worker_id="w1", settings=settings, emit=events.append)

        await run_until_idle(worker, queue)

        assert queue.failed == [("job1", "Command exited with code 4: bad")]
        failed = [e for e in events if e.event_type == "job.failed"]
        assert failed[0].data["retry_in_seconds"] == 2.0

    async def test_heartbeats_sent_while_running(self, settings: Settings):
        queue = ScriptedQueue(claims=[make_job(command="sleep 0.7")])
        worker = Worker(queue=queue, worker_id="w1", settings=settings)

        await run_until_idle(worker, queue)

        # heartbeat interval is 0.2s in the test settings
        assert queue.heartbeats >= 2

    async def test_broken_event_sink_is_ignored(self, settings: Settings):
        def broken(event):
            raise RuntimeError("sink closed")

        queue = ScriptedQueue(claims=[make_job()])
        worker = Worker(queue=queue, worker_id="w1", settings=settings, emit=broken)

        await run_until_idle(worker, queue)

        assert queue.succeeded == ["job1"]
