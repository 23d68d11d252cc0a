"""
Worker registry routes.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from jobmanager.constants import API_PREFIX
from jobmanager.db import get_async_session
from jobmanager.db.repository import WorkerNodeRepository
from jobmanager.types.api import WorkerNodeResponse

router = APIRouter(prefix=f"{API_PREFIX}/workers", tags=["Workers"])


@router.get(
    "",
    response_model=list[WorkerNodeResponse],
    summary="List workers",
    description="List registered worker processes, most recently seen first.",
)
async def list_workers(
    active_only: bool = Query(default=False),
    session: AsyncSession = Depends(get_async_session),
) -> list[WorkerNodeResponse]:
    repo = WorkerNodeRepository(session)
    workers = await repo.list_workers(active_only=active_only)
    return [WorkerNodeResponse.model_validate(worker) for worker in workers]


@router.get(
    "/{worker_id}",
    response_model=WorkerNodeResponse,
    summary="Get worker details",
)
async def get_worker(
    worker_id: str,
    session: AsyncSession = Depends(get_async_session),
) -> WorkerNodeResponse:
    worker = await WorkerNodeRepository(session).get_worker(worker_id)
    if worker is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Worker not found",
        )
    return WorkerNodeResponse.model_validate(worker)
