"""Initial schema with jobs and worker_nodes tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("pending", "running", "completed", "failed", "stopped")
JOB_PRIORITIES = ("regular", "high")
WORKER_STATUSES = ("available", "busy", "offline")


def _create_enum(name: str, values: Sequence[str]) -> None:
    labels = ", ".join(f"'{value}'" for value in values)
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE {name} AS ENUM ({labels});
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)


def upgrade() -> None:
    _create_enum("job_status", JOB_STATUSES)
    _create_enum("job_priority", JOB_PRIORITIES)
    _create_enum("worker_status", WORKER_STATUSES)

    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(*JOB_STATUSES, name="job_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "priority",
            postgresql.ENUM(*JOB_PRIORITIES, name="job_priority", create_type=False),
            nullable=False,
            server_default="regular",
        ),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lease_holder", sa.String(255), nullable=True),
        sa.Column("lease_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="ck_jobs_progress_range"),
    )

    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_lease_holder", "jobs", ["lease_holder"])

    # Partial index for backlog polling
    op.execute("""
        CREATE INDEX ix_jobs_pending_poll
        ON jobs (priority, created_at)
        WHERE status = 'pending'
    """)

    # Partial index for stale lease checks
    op.execute("""
        CREATE INDEX ix_jobs_running_lease
        ON jobs (lease_time)
        WHERE status = 'running'
    """)

    op.create_table(
        "worker_nodes",
        sa.Column("id", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column(
            "last_heartbeat",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "status",
            postgresql.ENUM(*WORKER_STATUSES, name="worker_status", create_type=False),
            nullable=False,
            server_default="available",
        ),
        sa.Column("current_job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "registered_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("worker_nodes")

    op.execute("DROP INDEX IF EXISTS ix_jobs_running_lease")
    op.execute("DROP INDEX IF EXISTS ix_jobs_pending_poll")
    op.drop_index("ix_jobs_lease_holder")
    op.drop_index("ix_jobs_status")

    op.drop_table("jobs")

    op.execute("DROP TYPE IF EXISTS worker_status")
    op.execute("DROP TYPE IF EXISTS job_priority")
    op.execute("DROP TYPE IF EXISTS job_status")
