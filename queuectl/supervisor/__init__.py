"""
Supervisor module.
Runs and stops the pool of worker processes.
"""

from queuectl.supervisor.main import WorkerPool, read_pool_status, request_pool_shutdown

__all__ = ["WorkerPool", "read_pool_status", "request_pool_shutdown"]
