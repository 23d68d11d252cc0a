"""
Job management routes.
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from jobmanager.api.websocket import WebSocketNotifier
from jobmanager.constants import API_PREFIX, JobPriority, JobStatus
from jobmanager.db import get_async_session
from jobmanager.db.models import Job
from jobmanager.db.repository import JobRepository
from jobmanager.notifications import SafeNotifier, as_safe_notifier
from jobmanager.observability.metrics import get_metrics
from jobmanager.types.api import (
    CreateJobRequest,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    UpdateProgressRequest,
    UpdateStatusRequest,
)
from jobmanager.types.events import JobProgressEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_PREFIX}/jobs", tags=["Jobs"])


def get_notifier() -> SafeNotifier:
    """Dependency providing the notifier for API-side changes."""
    return as_safe_notifier(WebSocketNotifier())


Notifications = Annotated[SafeNotifier, Depends(get_notifier)]


def _found(job: Job | None) -> Job:
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return job


async def _commit_and_notify(
    session: AsyncSession,
    notifier: SafeNotifier,
    job: Job,
) -> JobResponse:
    """Commit the change, then tell observers about the job's new state."""
    await session.commit()
    await notifier.notify_job_progress(JobProgressEvent.from_job(job))
    return JobResponse.model_validate(job)


@router.post(
    "",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a job",
    description="Add a new pending job to the backlog.",
)
async def create_job(
    request: CreateJobRequest,
    notifier: Notifications,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Create a new job.

    Args:
        request: Job creation request.
        notifier: Notification sink.
        session: Database session.

    Returns:
        The created job.
    """
    repo = JobRepository(session)
    job = await repo.enqueue_job(
        name=request.name,
        priority=request.priority,
        scheduled_start=request.scheduled_start,
    )

    get_metrics().record_job_enqueued(request.priority.value)

    return await _commit_and_notify(session, notifier, job)


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs in claim order with optional filtering.",
)
async def list_jobs(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: JobStatus | None = Query(default=None),
    priority: JobPriority | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> JobListResponse:
    """
    List jobs.

    Args:
        page: Page number (1-indexed).
        page_size: Number of items per page.
        status: Optional status filter.
        priority: Optional priority filter.
        session: Database session.

    Returns:
        JobListResponse with paginated jobs.
    """
    repo = JobRepository(session)
    offset = (page - 1) * page_size

    jobs, total = await repo.list_jobs(
        status=status,
        priority=priority,
        limit=page_size,
        offset=offset,
    )

    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.get(
    "/stats/summary",
    response_model=JobStatsResponse,
    summary="Get job statistics",
    description="Get job counts by status and the number of pending jobs.",
)
async def get_job_stats(
    session: AsyncSession = Depends(get_async_session),
) -> JobStatsResponse:
    repo = JobRepository(session)
    stats = await repo.get_job_stats()
    queue_depth = await repo.get_queue_depth()

    get_metrics().update_queue_depth(queue_depth)

    return JobStatsResponse(stats=stats, queue_depth=queue_depth)


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    repo = JobRepository(session)
    return JobResponse.model_validate(_found(await repo.get_job(job_id)))


@router.put(
    "/{job_id}/progress",
    response_model=JobResponse,
    summary="Report job progress",
    description="Set a job's progress percentage. Never moves progress backwards while running.",
)
async def update_progress(
    job_id: UUID,
    request: UpdateProgressRequest,
    notifier: Notifications,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    repo = JobRepository(session)
    job = _found(await repo.update_progress(job_id, request.progress))
    return await _commit_and_notify(session, notifier, job)


@router.put(
    "/{job_id}/status",
    response_model=JobResponse,
    summary="Set job status",
    description=(
        "Move a job to completed, failed or stopped. Requests the lifecycle "
        "does not allow leave the job unchanged."
    ),
)
async def update_status(
    job_id: UUID,
    request: UpdateStatusRequest,
    notifier: Notifications,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Update a job's status.

    Args:
        job_id: The job UUID.
        request: Target status and optional error message.
        notifier: Notification sink.
        session: Database session.

    Returns:
        The job after the update.

    Raises:
        HTTPException: If the job does not exist.
    """
    repo = JobRepository(session)
    job = _found(
        await repo.update_status(
            job_id,
            request.status,
            error_message=request.error_message,
        )
    )
    return await _commit_and_notify(session, notifier, job)


@router.post(
    "/{job_id}/stop",
    response_model=JobResponse,
    summary="Stop a job",
    description="Stop a pending or running job. The worker holding it abandons the work.",
)
async def stop_job(
    job_id: UUID,
    notifier: Notifications,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    repo = JobRepository(session)
    job = _found(await repo.stop_job(job_id))
    return await _commit_and_notify(session, notifier, job)


@router.post(
    "/{job_id}/restart",
    response_model=JobResponse,
    summary="Restart a job",
    description="Put a failed or stopped job back in the backlog with its progress reset.",
)
async def restart_job(
    job_id: UUID,
    notifier: Notifications,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    repo = JobRepository(session)
    job = _found(await repo.restart_job(job_id))
    return await _commit_and_notify(session, notifier, job)


@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Delete a job",
    description="Delete a job in any status.",
)
async def delete_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_async_session),
) -> Response:
    repo = JobRepository(session)
    if not await repo.delete_job(job_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
