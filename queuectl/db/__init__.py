"""
Database module.
Contains database connection, models, and repository implementations.
"""

from queuectl.db.connection import (
    close_db,
    get_engine,
    get_session_context,
    init_db,
)
from queuectl.db.models import Base, Job, utcnow

__all__ = [
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "Job",
    "Base",
    "utcnow",
]
