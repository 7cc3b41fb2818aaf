"""
Unit tests for shell command execution.
"""

import time

import pytest

from queuectl.db import Job
from queuectl.errors import CommandExecutionError
from queuectl.worker.executor import execute_job, run_command


def make_job(command: str, timeout: float | None = None) -> Job:
    return Job(id="job1", command=command, attempts=0, max_retries=0, timeout=timeout)


class TestRunCommand:
    """Tests for run_command."""

    async def test_success_captures_output(self):
        result = await run_command("echo hello")

        assert result.success is True
        assert result.exit_code == 0
        assert result.stdout.strip() == "hello"
        assert result.error is None
        assert result.duration_ms >= 0

    async def test_non_zero_exit(self):
        result = await run_command("echo oops >&2; exit 3")

        assert result.success is False
        assert result.exit_code == 3
        assert result.error == "Command exited with code 3: oops"

    async def test_unknown_command(self):
        """Test that a missing binary is a failed run, not an exception."""
        result = await run_command("definitely-not-a-real-command-xyz")

        assert result.success is False
        assert result.exit_code == 127

    async def test_shell_features(self):
        result = await run_command("x=4; test $((x * 2)) -eq 8 && echo ok | tr a-z A-Z")

        assert result.success is True
        assert result.stdout.strip() == "OK"

    async def test_timeout_kills_command(self):
        start = time.monotonic()
        result = await run_command("sleep 10", timeout=0.3)
        elapsed = time.monotonic() - start

        assert result.timed_out is True
        assert result.success is False
        assert result.error == "Command timed out"
        assert elapsed < 5

    async def test_timeout_kills_child_processes(self, tmp_path):
        """Test that the whole process group is killed on timeout."""
        marker = tmp_path / "marker"
        result = await run_command(f"(sleep 1; touch {marker}) & wait", timeout=0.2)

        assert result.timed_out is True
        time.sleep(1.5)
        assert not marker.exists()

    async def test_spawn_callback_receives_process_group(self):
        spawned = []
        result = await run_command("echo $$", on_spawn=spawned.append)

        assert spawned == [int(result.stdout)]


class TestExecuteJob:
    """Tests for execute_job."""

    async def test_success(self):
        result = await execute_job(make_job("true"))

        assert result.success is True

    async def test_failure_raises(self):
        with pytest.raises(CommandExecutionError) as exc_info:
            await execute_job(make_job("exit 2"))

        assert exc_info.value.exit_code == 2
        assert "code 2" in str(exc_info.value)
        assert exc_info.value.result.exit_code == 2

    async def test_job_timeout_applies(self):
        with pytest.raises(CommandExecutionError, match="timed out"):
            await execute_job(make_job("sleep 10", timeout=0.2))
