"""
Health check routes.
"""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobmanager import __version__
from jobmanager.db import get_async_session
from jobmanager.db.repository import JobRepository
from jobmanager.observability.metrics import get_metrics
from jobmanager.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _database_reachable(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("Database health check failed", exc_info=True)
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and database connection.",
)
async def health_check(
    session: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """
    Perform a health check.

    Checks database connectivity and returns service status.

    Args:
        session: Database session.

    Returns:
        HealthResponse with service status.
    """
    healthy = await _database_reachable(session)

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        database="healthy" if healthy else "unhealthy",
        timestamp=datetime.now(UTC),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(
    session: AsyncSession = Depends(get_async_session),
) -> JSONResponse:
    """
    Kubernetes readiness probe endpoint.

    Returns 503 while the database cannot be reached.
    """
    if await _database_reachable(session):
        return JSONResponse({"ready": True})
    return JSONResponse({"ready": False}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(
    session: AsyncSession = Depends(get_async_session),
) -> Response:
    """
    Expose Prometheus metrics.

    The backlog gauge is refreshed from the database on every scrape.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    try:
        metrics_collector.update_queue_depth(await JobRepository(session).get_queue_depth())
    except (SQLAlchemyError, OSError):
        logger.warning("Could not refresh queue depth", exc_info=True)

    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
