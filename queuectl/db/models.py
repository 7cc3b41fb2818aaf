"""
SQLAlchemy database models.
Defines the jobs table.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from queuectl.constants import TERMINAL_STATES, JobState


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are conditional updates against this table.

    Key columns:
    - state follows the state machine in ``JobState``
    - queued_at orders claiming; it is reset whenever the job re-enters PENDING
    - worker_id is the owner of a PROCESSING job; outcome reports must match it
    - next_retry_at holds a FAILED job back until its backoff has elapsed
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    command: Mapped[str] = mapped_column(Text, nullable=False)

    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            native_enum=False,
            create_constraint=True,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobState.PENDING,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Execution
    timeout: Mapped[float | None] = mapped_column(Float, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    queued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Error tracking
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        # Claim polling: oldest pending first
        Index("ix_jobs_claim", "state", "queued_at", "created_at"),
        # Retry promotion and stale-claim sweeps
        Index("ix_jobs_state_retry", "state", "next_retry_at"),
        Index("ix_jobs_state_updated", "state", "updated_at"),
    )

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a state no automatic transition leaves."""
        return self.state in TERMINAL_STATES

    @property
    def retries_exhausted_after_failure(self) -> bool:
        """Check if one more failure would send the job to the DLQ."""
        return self.attempts + 1 >= self.max_retries + 1

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, state={self.state}, "
            f"attempts={self.attempts}/{self.max_retries})"
        )
