"""
Worker pool supervisor.

Spawns worker processes, relays their status events into the log and shuts
them down: cooperatively first (SIGTERM, which a worker turns into its stop
flag), forcibly once the grace period has passed.

A small JSON state file records the supervisor and worker pids so other
``queuectl`` invocations can report pool status and request a shutdown.
"""

import logging
import multiprocessing
import os
import queue
import signal
import time
from multiprocessing.process import BaseProcess
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from queuectl.config import Settings, get_settings
from queuectl.constants import (
    EVENT_JOB_COMPLETED,
    EVENT_JOB_DEAD,
    EVENT_JOB_FAILED,
    EVENT_JOB_STARTED,
    EVENT_WORKER_STARTED,
    EVENT_WORKER_STOPPED,
)
from queuectl.types.events import WorkerEvent
from queuectl.types.job import WorkerStatus
from queuectl.worker.main import run_worker_process

logger = logging.getLogger(__name__)


class PoolState(BaseModel):
    """Contents of the pool state file."""

    pid: int
    started_at: float
    workers: list[int]


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_state(path: Path) -> PoolState | None:
    if not path.exists():
        return None
    try:
        return PoolState.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable pool state file {path}: {e}")
        return None


def read_pool_status(path: Path | str | None = None) -> WorkerStatus:
    """
    Status of the pool recorded in the state file.

    Returns an empty status when no pool is running or the recorded
    supervisor has exited.
    """
    path = Path(path) if path is not None else get_settings().resolved_state_file
    state = _read_state(path)
    if state is None or not _pid_alive(state.pid):
        return WorkerStatus()

    return WorkerStatus(
        total=len(state.workers),
        active=sum(1 for pid in state.workers if _pid_alive(pid)),
        uptime_ms=int(max(0.0, time.time() - state.started_at) * 1000),
    )


def request_pool_shutdown(path: Path | str | None = None) -> bool:
    """
    Ask the running supervisor to stop its pool.

    Returns:
        True if a running supervisor was signalled, False if none was found.
    """
    path = Path(path) if path is not None else get_settings().resolved_state_file
    state = _read_state(path)
    if state is None:
        return False

    if not _pid_alive(state.pid):
        logger.info("Removing stale pool state file", extra={"path": str(path)})
        path.unlink(missing_ok=True)
        return False

    os.kill(state.pid, signal.SIGTERM)
    logger.info("Requested pool shutdown", extra={"supervisor_pid": state.pid})
    return True


class WorkerPool:
    """
    Supervisor of a fixed set of worker processes.

    Worker processes are started with the ``spawn`` method so each one gets a
    fresh interpreter, database engine and event loop.
    """

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._ctx = multiprocessing.get_context("spawn")
        self._events: Any = None
        self._processes: list[BaseProcess] = []
        self._started_at: float | None = None
        self._stop_requested = False
        # worker pid -> worker id, and worker id -> process group of its running command
        self._worker_ids: dict[int, str] = {}
        self._command_groups: dict[str, int] = {}

    @property
    def processes(self) -> list[BaseProcess]:
        return list(self._processes)

    @property
    def state_file(self) -> Path:
        return self._settings.resolved_state_file

    def start(self, count: int) -> None:
        """
        Spawn ``count`` worker processes.

        Raises:
            ValueError: If count is not positive.
            RuntimeError: If the pool is already running.
        """
        if count < 1:
            raise ValueError("Worker count must be at least 1")
        if self._processes:
            raise RuntimeError("Worker pool already started")

        self._events = self._ctx.Queue()
        self._started_at = time.time()
        self._stop_requested = False

        for index in range(count):
            process = self._ctx.Process(
                target=run_worker_process,
                args=(index, self._events, self._settings),
                name=f"queuectl-worker-{index + 1}",
            )
            process.start()
            self._processes.append(process)

        self._write_state()
        logger.info(
            f"Started {count} worker(s)",
            extra={"pids": [p.pid for p in self._processes]},
        )

    def stop(self, grace_seconds: float | None = None) -> None:
        """
        Stop every worker.

        Sends SIGTERM, waits up to ``grace_seconds`` for the workers to finish
        their current job, then SIGKILLs whatever is still running together with
        the command each killed worker was running.
        """
        if grace_seconds is None:
            grace_seconds = self._settings.worker_shutdown_grace_seconds

        alive = [p for p in self._processes if p.is_alive()]
        if alive:
            logger.info(
                f"Stopping {len(alive)} worker(s)",
                extra={"grace_seconds": grace_seconds},
            )
        for process in alive:
            process.terminate()

        # Keep draining events while waiting; a worker blocked on a full pipe
        # cannot exit
        deadline = time.monotonic() + grace_seconds
        while any(p.is_alive() for p in self._processes) and time.monotonic() < deadline:
            self.relay_events(timeout=0.1)

        killed = [p for p in self._processes if p.is_alive()]
        for process in killed:
            logger.warning(
                "Worker did not stop within the grace period, killing it",
                extra={"pid": process.pid},
            )
            process.kill()

        for process in self._processes:
            process.join(timeout=5)

        # A killed worker cannot clean up after itself, and its command runs
        # in a session of its own
        self.relay_events(timeout=0)
        for process in killed:
            self._kill_command(process)
        self._remove_state()
        logger.info("Worker pool stopped")

    def request_stop(self) -> None:
        """Ask ``run`` to shut the pool down; safe to call from a signal handler."""
        self._stop_requested = True

    def status(self) -> WorkerStatus:
        """Current pool status."""
        if self._started_at is None:
            return WorkerStatus()
        return WorkerStatus(
            total=len(self._processes),
            active=sum(1 for p in self._processes if p.is_alive()),
            uptime_ms=int((time.time() - self._started_at) * 1000),
        )

    def run(self, count: int) -> None:
        """
        Start the pool and supervise it in the foreground.

        Returns after SIGINT/SIGTERM (or ``request_stop``) once the pool has
        been stopped, or when every worker has exited on its own.
        """
        previous = {
            sig: signal.signal(sig, lambda signum, frame: self.request_stop())
            for sig in (signal.SIGINT, signal.SIGTERM)
        }

        try:
            self.start(count)
            while not self._stop_requested and any(p.is_alive() for p in self._processes):
                self.relay_events(timeout=0.5)
        finally:
            self.stop()
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def relay_events(self, timeout: float = 0.5) -> int:
        """
        Log pending worker events.

        Waits up to ``timeout`` seconds for the first event, then drains
        whatever else is queued.

        Returns:
            Number of events relayed.
        """
        if self._events is None:
            return 0

        relayed = 0
        block = timeout > 0
        while True:
            try:
                event = self._events.get(block=block, timeout=timeout if block else None)
            except queue.Empty:
                break
            except (EOFError, OSError):
                break
            self._track(event)
            self._log_event(event)
            relayed += 1
            block = False
        return relayed

    def _kill_command(self, process: BaseProcess) -> None:
        """SIGKILL the process group of the command a killed worker was running."""
        worker_id = self._worker_ids.get(process.pid) if process.pid is not None else None
        pgid = self._command_groups.pop(worker_id, None) if worker_id is not None else None
        if pgid is None:
            return

        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            return
        logger.warning(
            "Killed command left running by worker",
            extra={"worker_id": worker_id, "pgid": pgid},
        )

    def _track(self, event: WorkerEvent) -> None:
        data = event.data or {}
        if event.event_type == EVENT_WORKER_STARTED and "pid" in data:
            self._worker_ids[data["pid"]] = event.worker_id
        elif event.event_type == EVENT_JOB_STARTED and "pid" in data:
            self._command_groups[event.worker_id] = data["pid"]
        elif event.event_type in (
            EVENT_JOB_COMPLETED,
            EVENT_JOB_FAILED,
            EVENT_JOB_DEAD,
            EVENT_WORKER_STOPPED,
        ):
            self._command_groups.pop(event.worker_id, None)

    def _log_event(self, event: WorkerEvent) -> None:
        level = logging.WARNING if event.event_type == EVENT_JOB_DEAD else logging.INFO
        extra: dict[str, Any] = {"worker_id": event.worker_id}
        if event.job_id is not None:
            extra["job_id"] = event.job_id
        if event.data:
            extra.update(event.data)
        logger.log(level, event.event_type, extra=extra)

    def _write_state(self) -> None:
        state = PoolState(
            pid=os.getpid(),
            started_at=self._started_at or time.time(),
            workers=[p.pid for p in self._processes if p.pid is not None],
        )
        path = self.state_file
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(state.model_dump_json(indent=2), encoding="utf-8")

    def _remove_state(self) -> None:
        state = _read_state(self.state_file)
        # Another supervisor may have taken over the file
        if state is not None and state.pid == os.getpid():
            self.state_file.unlink(missing_ok=True)
