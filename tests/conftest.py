"""
Pytest configuration and shared fixtures.

Every test gets its own home directory, so the SQLite database, config file
and pool state file all live under ``tmp_path``.
"""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from queuectl.config import Settings, get_settings
from queuectl.config_store import ConfigStore
from queuectl.db import close_db, get_session_context, init_db
from queuectl.db.repository import JobRepository
from queuectl.lifecycle import JobQueue

TEST_ENV = {
    "QUEUECTL_LOG_LEVEL": "WARNING",
    "QUEUECTL_LOG_FORMAT": "console",
    "QUEUECTL_WORKER_POLL_INTERVAL_SECONDS": "0.05",
    "QUEUECTL_WORKER_HEARTBEAT_INTERVAL_SECONDS": "0.2",
    "QUEUECTL_WORKER_STALE_AFTER_SECONDS": "60",
    "QUEUECTL_WORKER_SHUTDOWN_GRACE_SECONDS": "5",
    "QUEUECTL_WORKER_STORE_RETRY_SECONDS": "0.05",
    "QUEUECTL_DATABASE_BUSY_TIMEOUT_MS": "10000",
}


@pytest.fixture
def home_dir(tmp_path: Path) -> Path:
    """Isolated queuectl home directory."""
    home = tmp_path / "queuectl-home"
    home.mkdir()
    return home


@pytest.fixture
def settings(home_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Settings]:
    """Create test settings pointing at the temporary home directory."""
    monkeypatch.setenv("QUEUECTL_HOME_DIR", str(home_dir))
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    for key in ("QUEUECTL_DATABASE_URL", "QUEUECTL_CONFIG_FILE", "QUEUECTL_STATE_FILE"):
        monkeypatch.delenv(key, raising=False)

    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncGenerator[Settings]:
    """Initialize the database for a test and dispose of it afterwards."""
    await init_db(settings)
    yield settings
    await close_db()


@pytest.fixture
def in_session(db: Settings) -> Callable[[Callable[[JobRepository], Awaitable[Any]]], Awaitable[Any]]:
    """
    Run a repository operation in its own committed transaction.

    Usage: ``job = await in_session(lambda repo: repo.get("job1"))``
    """

    async def _call(operation: Callable[[JobRepository], Awaitable[Any]]) -> Any:
        async with get_session_context() as session:
            return await operation(JobRepository(session, db))

    return _call


@pytest.fixture
def config_store(settings: Settings) -> ConfigStore:
    """Runtime config file under the temporary home directory."""
    return ConfigStore(settings.resolved_config_file)


@pytest.fixture
def queue(db: Settings, config_store: ConfigStore) -> JobQueue:
    """Lifecycle engine bound to the test database."""
    return JobQueue(config_store, db)


@pytest.fixture
def run_queue(settings: Settings, config_store: ConfigStore) -> Callable[[Callable[[JobQueue], Awaitable[Any]]], Any]:
    """
    Run a queue operation from synchronous test code.

    Each call opens and disposes its own engine, so it can be mixed with
    command line invocations and worker processes.
    """

    def _run(operation: Callable[[JobQueue], Awaitable[Any]]) -> Any:
        async def runner() -> Any:
            await init_db(settings)
            try:
                return await operation(JobQueue(config_store, settings))
            finally:
                await close_db()

        return asyncio.run(runner())

    return _run
