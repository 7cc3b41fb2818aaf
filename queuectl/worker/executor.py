"""
Shell command execution for jobs.

Commands run through ``/bin/sh -c`` in their own session so a Ctrl-C aimed
at the terminal reaches the worker, not the command. A command that outlives
its timeout is killed together with its process group.

Commands may run more than once for the same job (retries, reclaimed claims),
so they should be idempotent.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from typing import Any

from queuectl.db.models import Job
from queuectl.errors import CommandExecutionError
from queuectl.types.job import CommandResult

logger = logging.getLogger(__name__)

# Captured output is truncated to this many characters per stream
MAX_OUTPUT_LENGTH = 64 * 1024

# Called with the pid of the spawned shell, which also leads its process group
SpawnCallback = Callable[[int], Any]


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")[:MAX_OUTPUT_LENGTH]


def _kill_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_command(
    command: str,
    timeout: float | None = None,
    on_spawn: SpawnCallback | None = None,
) -> CommandResult:
    """
    Run a shell command and capture its outcome.

    Args:
        command: Shell command line.
        timeout: Optional limit in seconds.
        on_spawn: Optional callback receiving the process group id of the
            command once it is running.

    Returns:
        CommandResult describing exit code, output and timing. Spawn failures
        and timeouts are reported in the result, never raised.
    """
    start = time.monotonic()

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        return CommandResult(
            exit_code=None,
            duration_ms=(time.monotonic() - start) * 1000,
            spawn_error=str(e),
        )

    if on_spawn is not None:
        on_spawn(process.pid)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill_group(process)
        await process.wait()
        logger.warning(
            "Command timed out",
            extra={"pid": process.pid, "timeout": timeout},
        )
        return CommandResult(
            exit_code=process.returncode,
            duration_ms=(time.monotonic() - start) * 1000,
            timed_out=True,
        )
    except asyncio.CancelledError:
        # The worker is being torn down; do not leave the command running
        _kill_group(process)
        raise

    return CommandResult(
        exit_code=process.returncode,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        duration_ms=(time.monotonic() - start) * 1000,
    )


async def execute_job(job: Job, on_spawn: SpawnCallback | None = None) -> CommandResult:
    """
    Run a job's command.

    Args:
        job: The claimed job.
        on_spawn: Optional callback receiving the command's process group id.

    Returns:
        The CommandResult of a successful run.

    Raises:
        CommandExecutionError: If the command exited non-zero, timed out or
            could not be started.
    """
    logger.info(
        "Executing job",
        extra={"job_id": job.id, "command": job.command, "attempt": job.attempts + 1},
    )

    result = await run_command(job.command, timeout=job.timeout, on_spawn=on_spawn)

    if not result.success:
        raise CommandExecutionError(
            result.error or "Unknown error",
            exit_code=result.exit_code,
            result=result,
        )

    return result
