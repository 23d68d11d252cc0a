"""
SQLAlchemy database models.
Defines the Job and WorkerNode tables.
"""

from datetime import datetime
from uuid import UUID as PyUUID
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobmanager.constants import (
    PRIORITY_WEIGHTS,
    JobPriority,
    JobStatus,
    WorkerStatus,
)


def _enum_values(enum_cls) -> list[str]:
    return [e.value for e in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the backlog.

    This is the authoritative source of truth for job state, including who
    currently holds the right to run it.

    Key constraints:
    - lease_holder/lease_time are granted by the atomic claim
    - status transitions follow jobmanager.lifecycle
    - started_at/completed_at are write-once per run (cleared only by restart)
    """

    __tablename__ = "jobs"

    # Primary key
    id: Mapped[PyUUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Status and priority
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", create_constraint=True, values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    priority: Mapped[JobPriority] = mapped_column(
        Enum(JobPriority, name="job_priority", create_constraint=True, values_callable=_enum_values),
        nullable=False,
        default=JobPriority.REGULAR,
    )

    progress: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Number of times the job was put back in the backlog
    retry_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    # Lease management
    lease_holder: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    lease_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Scheduling
    scheduled_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Error tracking
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint("progress BETWEEN 0 AND 100", name="ck_jobs_progress_range"),
        # Index for efficient backlog polling
        Index(
            "ix_jobs_pending_poll",
            "priority",
            "created_at",
            postgresql_where=text("status = 'pending'"),
        ),
        # Index for stale lease checks
        Index(
            "ix_jobs_running_lease",
            "lease_time",
            postgresql_where=text("status = 'running'"),
        ),
    )

    @property
    def priority_weight(self) -> int:
        """Get the numeric weight for this job's priority."""
        return PRIORITY_WEIGHTS.get(self.priority, 0)

    @property
    def sort_key(self) -> tuple:
        """Claim order: priority descending, oldest first, then id."""
        return (-self.priority_weight, self.created_at, str(self.id))

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, name={self.name!r}, status={self.status}, "
            f"progress={self.progress}, lease_holder={self.lease_holder})"
        )


class WorkerNode(Base):
    """
    A worker process instance, as seen by dashboards.

    Purely observational: claiming never consults this table. A crashed
    worker's row is simply left behind with a stale heartbeat.
    """

    __tablename__ = "worker_nodes"

    id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    display_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    last_heartbeat: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )
    status: Mapped[WorkerStatus] = mapped_column(
        Enum(WorkerStatus, name="worker_status", create_constraint=True, values_callable=_enum_values),
        nullable=False,
        default=WorkerStatus.AVAILABLE,
    )
    current_job_id: Mapped[PyUUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"WorkerNode(id={self.id}, name={self.display_name!r}, "
            f"status={self.status}, active={self.active})"
        )
