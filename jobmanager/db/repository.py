"""
Repositories for database operations.
Implements the core data access patterns for jobs and worker nodes.

Every mutation here is a single conditional statement. Preconditions (the
allowed source statuses, the lease holder) live in the WHERE clause so the
database enforces them, and RETURNING tells the caller whether it applied.
"""

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.engine import Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobmanager.config import get_settings
from jobmanager.constants import (
    DEFAULT_PRIORITY,
    MAX_PROGRESS,
    MIN_PROGRESS,
    PRIORITY_WEIGHTS,
    STOPPED_BY_REQUEST,
    JobPriority,
    JobStatus,
    WorkerStatus,
)
from jobmanager.db.models import Job, WorkerNode
from jobmanager.lifecycle import (
    RESTARTABLE_STATUSES,
    InvalidTransitionError,
    is_restartable,
    is_terminal,
    sources_for,
)
from jobmanager.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

jobs_table = Job.__table__
workers_table = WorkerNode.__table__


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _priority_rank():
    """SQL expression ranking priorities, higher first."""
    return case(
        {priority: weight for priority, weight in PRIORITY_WEIGHTS.items()},
        value=jobs_table.c.priority,
        else_=0,
    )


def _row_to_job(row: Row) -> Job:
    """Build a detached Job snapshot from a RETURNING row."""
    return Job(**row._mapping)


def _row_to_worker(row: Row) -> WorkerNode:
    return WorkerNode(**row._mapping)


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job enqueueing and querying
    - Lease claiming with FOR UPDATE SKIP LOCKED, including stale reclaim
    - Lifecycle transitions guarded by the transition table
    - Lease-guarded progress reporting
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session
        self._settings = get_settings()

    async def enqueue_job(
        self,
        name: str,
        priority: JobPriority = DEFAULT_PRIORITY,
        scheduled_start: datetime | None = None,
    ) -> Job:
        """
        Add a new pending job to the backlog.

        created_at is stamped here rather than by the database so that jobs
        enqueued inside one transaction still get distinct, ordered ages.

        Args:
            name: Display name of the job.
            priority: Job priority level.
            scheduled_start: Optional earliest time a worker may claim it.

        Returns:
            The created Job.
        """
        now = _utcnow()
        stmt = (
            insert(Job)
            .values(
                name=name,
                priority=priority,
                status=JobStatus.PENDING,
                progress=0,
                retry_count=0,
                scheduled_start=scheduled_start,
                created_at=now,
                updated_at=now,
            )
            .returning(Job)
        )

        result = await self._session.execute(stmt)
        job = result.scalar_one()

        logger.info(
            "Job enqueued",
            extra={"job_id": str(job.id), "job_name": name, "priority": priority.value},
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        priority: JobPriority | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional filtering, in claim order.

        Args:
            status: Optional status filter.
            priority: Optional priority filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if status is not None:
            filters.append(Job.status == status)
        if priority is not None:
            filters.append(Job.priority == priority)

        count_stmt = select(func.count()).select_from(Job).where(*filters)
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(Job)
            .where(*filters)
            .order_by(_priority_rank().desc(), Job.created_at.asc(), Job.id.asc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def claim_jobs(
        self,
        worker_id: str,
        max_jobs: int = 1,
        now: datetime | None = None,
    ) -> list[Job]:
        """
        Atomically lease up to ``max_jobs`` eligible jobs to a worker.

        This is the critical path for job distribution. Selection and lease
        transfer happen in one UPDATE statement whose inner SELECT locks the
        chosen rows with FOR UPDATE SKIP LOCKED, so concurrent callers never
        receive the same job: rows locked by another claimer are skipped and
        rows it already changed no longer match the eligibility predicate.

        Eligible rows are pending jobs (whose scheduled start, if any, has
        passed) and running jobs whose lease is older than the stale lease
        duration. Store errors are logged and produce an empty batch.

        Args:
            worker_id: The claiming worker's identifier.
            max_jobs: Maximum number of jobs to lease.
            now: Claim time; defaults to the current UTC time.

        Returns:
            Leased jobs in claim order (priority, then age, then id).
        """
        if max_jobs < 1:
            return []

        now = now or _utcnow()
        stale_before = now - timedelta(seconds=self._settings.worker_stale_lease_seconds)
        c = jobs_table.c

        eligible = (
            select(c.id)
            .where(
                or_(
                    and_(
                        c.status == JobStatus.PENDING,
                        or_(c.scheduled_start.is_(None), c.scheduled_start <= now),
                    ),
                    and_(
                        c.status == JobStatus.RUNNING,
                        c.lease_time < stale_before,
                    ),
                )
            )
            .order_by(_priority_rank().desc(), c.created_at.asc(), c.id.asc())
            .limit(max_jobs)
            .with_for_update(skip_locked=True)
        )

        stmt = (
            update(jobs_table)
            .where(c.id.in_(eligible))
            .values(
                lease_holder=worker_id,
                status=JobStatus.RUNNING,
                lease_time=now,
                started_at=func.coalesce(c.started_at, now),
                updated_at=now,
            )
            .returning(*c)
        )

        try:
            result = await self._session.execute(stmt)
            rows = result.fetchall()
        except (SQLAlchemyError, OSError):
            logger.exception(
                "Claim query failed",
                extra={"worker_id": worker_id, "max_jobs": max_jobs},
            )
            get_metrics().record_claim_error()
            await self._session.rollback()
            return []

        # RETURNING order is unspecified; restore claim order for the caller.
        jobs = sorted((_row_to_job(row) for row in rows), key=lambda job: job.sort_key)

        for job in jobs:
            reclaimed = job.started_at is not None and job.started_at < now
            logger.info(
                "Job reclaimed from stale lease" if reclaimed else "Job claimed",
                extra={"job_id": str(job.id), "worker_id": worker_id},
            )

        return jobs

    async def update_progress(
        self,
        job_id: UUID,
        progress: int,
        lease_holder: str | None = None,
    ) -> Job | None:
        """
        Persist job progress.

        While a job is running the stored value only moves forward, so a late
        or duplicated report can never make progress go backwards. When
        ``lease_holder`` is given the write only applies if that worker still
        holds the lease on a running job, and it renews the lease time.

        Args:
            job_id: The job UUID.
            progress: Percentage complete, 0-100.
            lease_holder: Worker that must hold the lease, if any.

        Returns:
            Updated Job, or None if not found (or the lease is not held).

        Raises:
            ValueError: If progress is outside 0-100.
        """
        if not MIN_PROGRESS <= progress <= MAX_PROGRESS:
            raise ValueError(f"progress must be between {MIN_PROGRESS} and {MAX_PROGRESS}")

        now = _utcnow()
        c = jobs_table.c
        conditions = [c.id == job_id]
        values = {
            "progress": case(
                (c.status == JobStatus.RUNNING, func.greatest(c.progress, progress)),
                else_=progress,
            ),
            "updated_at": now,
        }

        if lease_holder is not None:
            conditions.extend([c.status == JobStatus.RUNNING, c.lease_holder == lease_holder])
            values["lease_time"] = now

        stmt = update(jobs_table).where(*conditions).values(**values).returning(*c)
        row = (await self._session.execute(stmt)).first()

        if row is None:
            return None

        logger.debug(
            "Job progress updated",
            extra={"job_id": str(job_id), "progress": row.progress},
        )
        return _row_to_job(row)

    async def update_status(
        self,
        job_id: UUID,
        status: JobStatus,
        error_message: str | None = None,
        lease_holder: str | None = None,
    ) -> Job | None:
        """
        Move a job to a terminal status.

        The transition table decides which current statuses are accepted. A
        request the table does not allow, including repeating the status the
        job is already in, leaves the row untouched, which keeps started_at
        and completed_at write-once.

        Args:
            job_id: The job UUID.
            status: COMPLETED, FAILED or STOPPED.
            error_message: Reason recorded for FAILED and STOPPED.
            lease_holder: Worker that must hold the lease, if any.

        Returns:
            The job after the call. None if the job does not exist, or if
            ``lease_holder`` was given and the update did not apply.

        Raises:
            InvalidTransitionError: If status is not a terminal status.
        """
        if not is_terminal(status):
            raise InvalidTransitionError(status, "update_status")

        now = _utcnow()
        c = jobs_table.c
        conditions = [c.id == job_id, c.status.in_(list(sources_for(status)))]
        if lease_holder is not None:
            conditions.append(c.lease_holder == lease_holder)

        values = {
            "status": status,
            "completed_at": func.coalesce(c.completed_at, now),
            "updated_at": now,
        }
        if status != JobStatus.COMPLETED:
            values["error_message"] = error_message

        stmt = update(jobs_table).where(*conditions).values(**values).returning(*c)
        row = (await self._session.execute(stmt)).first()

        if row is not None:
            logger.info(
                "Job status updated",
                extra={"job_id": str(job_id), "status": status.value},
            )
            return _row_to_job(row)

        if lease_holder is not None:
            return None

        current = await self.get_job(job_id)
        if current is not None:
            logger.info(
                "Status update not applicable",
                extra={
                    "job_id": str(job_id),
                    "current_status": current.status.value,
                    "requested_status": status.value,
                },
            )
        return current

    async def stop_job(
        self,
        job_id: UUID,
        reason: str = STOPPED_BY_REQUEST,
    ) -> Job | None:
        """Request cancellation of a pending or running job."""
        return await self.update_status(job_id, JobStatus.STOPPED, error_message=reason)

    async def restart_job(self, job_id: UUID) -> Job | None:
        """
        Put a failed or stopped job back in the backlog.

        Clears everything the previous run left behind so the job is claimed
        and timed as if new. Jobs in any other status are returned unchanged.

        Args:
            job_id: The job UUID.

        Returns:
            The job after the call, or None if it does not exist.
        """
        c = jobs_table.c
        stmt = (
            update(jobs_table)
            .where(c.id == job_id, c.status.in_(list(RESTARTABLE_STATUSES)))
            .values(
                status=JobStatus.PENDING,
                progress=0,
                retry_count=c.retry_count + 1,
                lease_holder=None,
                lease_time=None,
                error_message=None,
                started_at=None,
                completed_at=None,
                updated_at=_utcnow(),
            )
            .returning(*c)
        )
        row = (await self._session.execute(stmt)).first()

        if row is None:
            current = await self.get_job(job_id)
            if current is not None and not is_restartable(current.status):
                logger.info(
                    "Restart not applicable",
                    extra={"job_id": str(job_id), "current_status": current.status.value},
                )
            return current

        logger.info("Job restarted", extra={"job_id": str(job_id)})
        return _row_to_job(row)

    async def delete_job(self, job_id: UUID) -> bool:
        """
        Delete a job in any status. A held lease is simply discarded.

        Args:
            job_id: The job UUID.

        Returns:
            True if a job was deleted.
        """
        stmt = delete(jobs_table).where(jobs_table.c.id == job_id).returning(jobs_table.c.id)
        deleted = (await self._session.execute(stmt)).first() is not None

        if deleted:
            logger.info("Job deleted", extra={"job_id": str(job_id)})
        return deleted

    async def get_queue_depth(self) -> int:
        """
        Get the number of pending jobs.

        Returns:
            Number of pending jobs.
        """
        stmt = select(func.count()).select_from(Job).where(Job.status == JobStatus.PENDING)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_job_stats(self) -> dict[str, int]:
        """
        Get job counts by status.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        result = await self._session.execute(stmt)
        return {status.value: count for status, count in result.all()}


class WorkerNodeRepository:
    """
    Repository for worker node records.

    Single-row writes only. Nothing in here affects which worker may run
    which job; that is decided by the job lease alone.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def register(self, worker_id: str, name: str) -> WorkerNode:
        """
        Insert a worker row, or reactivate it if the id is already present.

        Args:
            worker_id: The worker process identifier.
            name: Display name.

        Returns:
            The registered WorkerNode.
        """
        now = _utcnow()
        c = workers_table.c
        stmt = insert(workers_table).values(
            id=worker_id,
            display_name=name,
            last_heartbeat=now,
            active=True,
            status=WorkerStatus.AVAILABLE,
            current_job_id=None,
            registered_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[c.id],
            set_={
                "display_name": stmt.excluded.display_name,
                "last_heartbeat": stmt.excluded.last_heartbeat,
                "active": True,
                "status": WorkerStatus.AVAILABLE,
                "current_job_id": None,
            },
        ).returning(*c)

        row = (await self._session.execute(stmt)).one()
        logger.info("Worker registered", extra={"worker_id": worker_id, "worker_name": name})
        return _row_to_worker(row)

    async def _update(self, worker_id: str, **values) -> WorkerNode | None:
        c = workers_table.c
        stmt = update(workers_table).where(c.id == worker_id).values(**values).returning(*c)
        row = (await self._session.execute(stmt)).first()
        return _row_to_worker(row) if row is not None else None

    async def heartbeat(self, worker_id: str) -> WorkerNode | None:
        """
        Refresh last_heartbeat.

        Returns:
            The updated WorkerNode, or None if the row does not exist.
        """
        return await self._update(worker_id, last_heartbeat=_utcnow())

    async def set_busy(self, worker_id: str, job_id: UUID) -> WorkerNode | None:
        return await self._update(
            worker_id,
            status=WorkerStatus.BUSY,
            current_job_id=job_id,
        )

    async def set_available(self, worker_id: str) -> WorkerNode | None:
        return await self._update(
            worker_id,
            status=WorkerStatus.AVAILABLE,
            current_job_id=None,
        )

    async def deregister(self, worker_id: str) -> WorkerNode | None:
        """Mark a worker inactive and offline. The row is kept."""
        return await self._update(
            worker_id,
            active=False,
            status=WorkerStatus.OFFLINE,
            current_job_id=None,
        )

    async def get_worker(self, worker_id: str) -> WorkerNode | None:
        stmt = (
            select(WorkerNode)
            .where(WorkerNode.id == worker_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_workers(self, active_only: bool = False) -> Sequence[WorkerNode]:
        """
        List worker nodes, most recently seen first.

        Args:
            active_only: Only return workers that have not deregistered.

        Returns:
            Worker nodes.
        """
        stmt = select(WorkerNode).order_by(WorkerNode.last_heartbeat.desc())
        if active_only:
            stmt = stmt.where(WorkerNode.active.is_(True))
        result = await self._session.execute(
            stmt.execution_options(populate_existing=True)
        )
        return result.scalars().all()
