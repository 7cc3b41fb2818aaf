"""
queuectl - persistent background job queue.

Shell-command jobs are stored durably, claimed atomically by a pool of worker
processes, retried with exponential backoff and routed to a dead letter queue
once their retry budget is spent.
"""

__version__ = "1.0.0"
