"""
Worker process for executing jobs.

The worker claims jobs from the queue one at a time, runs their commands and
reports each outcome back to the lifecycle engine, which applies the retry
policy.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable
from typing import Any

from queuectl.config import Settings, get_settings
from queuectl.constants import SPAN_CLAIM_JOB, SPAN_EXECUTE_JOB
from queuectl.db import Job, close_db, init_db
from queuectl.errors import CommandExecutionError, StaleTransitionError, StoreUnavailableError
from queuectl.lifecycle import JobQueue
from queuectl.observability.logging import bind_context, job_context, setup_logging
from queuectl.observability.metrics import get_metrics
from queuectl.observability.tracing import get_tracer, setup_tracing
from queuectl.types.events import WorkerEvent
from queuectl.types.job import CommandResult
from queuectl.worker.executor import execute_job

logger = logging.getLogger(__name__)

EventSink = Callable[[WorkerEvent], Any]


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic claims through the lifecycle engine
    - Heartbeat to keep long-running jobs from being reclaimed
    - Graceful shutdown: the in-flight job finishes before the loop exits
    - Bounded retries of outcome reports while the store is unavailable
    """

    def __init__(
        self,
        queue: JobQueue | None = None,
        worker_id: str | None = None,
        settings: Settings | None = None,
        emit: EventSink | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: Lifecycle engine to use. Built from settings if omitted.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            settings: Optional settings; defaults to the process settings.
            emit: Optional callback receiving status events.
        """
        self._settings = settings or get_settings()
        self._queue = queue or JobQueue(settings=self._settings)

        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.poll_interval = self._settings.worker_poll_interval_seconds
        self.heartbeat_interval = self._settings.worker_heartbeat_interval_seconds

        self._emit = emit
        self._running = False
        self._stop_event = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Run the poll loop until ``stop`` is called."""
        logger.info("Worker starting", extra={"worker_id": self.worker_id})

        self._running = True
        self._stop_event.clear()
        self._publish(WorkerEvent.worker_started(self.worker_id, os.getpid()))

        while self._running:
            try:
                processed = await self._poll_and_execute()

                # If nothing was claimable, wait before polling again
                if not processed:
                    await self._idle(self.poll_interval)

            except StoreUnavailableError as e:
                logger.warning(
                    f"Store unavailable, backing off: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await self._idle(self._settings.worker_store_retry_seconds)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await self._idle(self.poll_interval)

        self._publish(WorkerEvent.worker_stopped(self.worker_id))
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()

    async def _idle(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until shutdown is requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _poll_and_execute(self) -> bool:
        """
        Claim one job and execute it.

        Returns:
            True if a job was processed.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            span.set_attribute("worker_id", self.worker_id)
            job = await self._queue.claim(self.worker_id)
            span.set_attribute("claimed", job is not None)

        if job is None:
            return False

        self._metrics.record_job_claimed(self.worker_id)
        with job_context(job.id):
            await self._execute_job(job)
        return True

    async def _execute_job(self, job: Job) -> None:
        """
        Execute a claimed job and report the outcome.

        Args:
            job: The job to execute.
        """
        announced = False

        def announce(pid: int | None) -> None:
            nonlocal announced
            announced = True
            self._publish(WorkerEvent.job_started(self.worker_id, job.id, job.command, pid))

        start_time = time.monotonic()
        error: str | None = None
        result: CommandResult | None = None
        heartbeat = asyncio.create_task(self._heartbeat_loop(job.id))

        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", job.id)
                span.set_attribute("worker_id", self.worker_id)
                span.set_attribute("attempt", job.attempts + 1)

                try:
                    result = await execute_job(job, on_spawn=announce)
                except CommandExecutionError as e:
                    error = str(e)
                    result = e.result
                    span.set_attribute("error", error)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        # Spawn failures never reach the callback
        if not announced:
            announce(None)

        duration = time.monotonic() - start_time
        stdout = result.stdout if result is not None else ""
        stderr = result.stderr if result is not None else ""

        try:
            if error is None:
                await self._report(self._queue.succeed, job, self.worker_id)
                self._metrics.record_attempt("completed", duration)
                self._publish(
                    WorkerEvent.job_completed(
                        self.worker_id, job.id, duration * 1000, stdout=stdout, stderr=stderr
                    )
                )
            else:
                outcome = await self._report(self._queue.fail, job, self.worker_id, error)
                if outcome.dead:
                    self._metrics.record_attempt("dead", duration)
                    self._publish(
                        WorkerEvent.job_dead(
                            self.worker_id, job.id, error, outcome.job.attempts, stderr=stderr
                        )
                    )
                else:
                    self._metrics.record_attempt("retry", duration)
                    self._publish(
                        WorkerEvent.job_failed(
                            self.worker_id,
                            job.id,
                            error,
                            outcome.job.attempts,
                            outcome.retry_in.total_seconds(),
                            stderr=stderr,
                        )
                    )
        except StaleTransitionError as e:
            # The claim was reclaimed while we ran; the other holder owns the outcome
            logger.warning(
                f"Discarding outcome of job no longer held: {e}",
                extra={"job_id": job.id, "worker_id": self.worker_id},
            )

    async def _report(self, operation: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """
        Call an engine operation, retrying while the store is unavailable.

        Raises:
            StoreUnavailableError: If every attempt failed. The job stays
                ``processing`` and is recovered by the reclaim sweep.
        """
        attempts = max(1, self._settings.worker_report_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await operation(*args)
            except StoreUnavailableError as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    f"Store unavailable while reporting outcome (attempt {attempt}/{attempts}): {e}",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.sleep(self._settings.worker_store_retry_seconds)

    async def _heartbeat_loop(self, job_id: str) -> None:
        """
        Periodically refresh the running job.

        This prevents the job from being reclaimed as stale while its command
        is still executing.
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)

            try:
                held = await self._queue.heartbeat(job_id, self.worker_id)
            except Exception as e:
                logger.warning(
                    f"Heartbeat failed: {e}",
                    extra={"job_id": job_id, "worker_id": self.worker_id},
                )
                continue

            if not held:
                logger.warning(
                    "Job no longer held by this worker, stopping heartbeat",
                    extra={"job_id": job_id, "worker_id": self.worker_id},
                )
                return

            logger.debug("Heartbeat", extra={"job_id": job_id})

    def _publish(self, event: WorkerEvent) -> None:
        if self._emit is None:
            return
        try:
            self._emit(event)
        except Exception:
            logger.exception("Failed to publish worker event")


async def run_async(
    settings: Settings | None = None,
    events: Any | None = None,
    worker_id: str | None = None,
    metrics_port: int | None = None,
) -> None:
    """
    Run one worker until SIGTERM/SIGINT.

    Args:
        settings: Optional settings; defaults to the process settings.
        events: Optional queue-like object (``put``) receiving WorkerEvents.
        worker_id: Optional worker identifier.
        metrics_port: If set, expose Prometheus metrics on this port.
    """
    settings = settings or get_settings()

    setup_logging(settings)
    setup_tracing(settings)
    if metrics_port is not None:
        get_metrics().serve(metrics_port)

    await init_db(settings)

    worker = Worker(
        worker_id=worker_id,
        settings=settings,
        emit=events.put if events is not None else None,
    )
    bind_context(worker_id=worker.worker_id)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run_worker_process(index: int, events: Any, settings: Settings) -> None:
    """
    Entry point of a worker process spawned by the pool supervisor.

    Args:
        index: Position of the worker in the pool, used for the metrics port.
        events: Multiprocessing queue shared with the supervisor.
        settings: Settings of the supervisor.
    """
    metrics_port = None
    if settings.metrics_port is not None:
        metrics_port = settings.metrics_port + index

    worker_id = f"worker-{index + 1}-{os.getpid()}"
    asyncio.run(
        run_async(
            settings=settings,
            events=events,
            worker_id=worker_id,
            metrics_port=metrics_port,
        )
    )


def run() -> None:
    """Run a single worker in the foreground."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
