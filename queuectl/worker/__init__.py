"""
Worker module.
Claims jobs and runs their shell commands.
"""

from queuectl.worker.executor import execute_job, run_command
from queuectl.worker.main import Worker, run_worker_process

__all__ = ["Worker", "execute_job", "run_command", "run_worker_process"]
