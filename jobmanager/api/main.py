"""
FastAPI application entry point.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from jobmanager import __version__
from jobmanager.api.routes import health_router, jobs_router, workers_router
from jobmanager.api.websocket import WebSocketNotifier, get_ws_manager, websocket_handler
from jobmanager.config import get_settings
from jobmanager.db import close_db, get_engine, init_db
from jobmanager.observability.logging import setup_logging
from jobmanager.observability.metrics import setup_metrics
from jobmanager.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)
from jobmanager.worker.main import Worker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events. When ``worker_embedded`` is set the
    API process also runs a worker whose events reach this process's
    WebSocket clients.
    """
    settings = get_settings()

    # Startup
    setup_logging()
    setup_metrics()
    setup_tracing()
    await init_db()
    instrument_sqlalchemy(get_engine().sync_engine)

    worker: Worker | None = None
    worker_task: asyncio.Task | None = None
    if settings.worker_embedded:
        worker = Worker(notifier=WebSocketNotifier(get_ws_manager()))
        worker_task = asyncio.create_task(worker.start(), name="embedded-worker")
    app.state.worker = worker

    logger.info("Application started", extra={"embedded_worker": worker is not None})

    yield

    # Shutdown
    if worker is not None:
        await worker.stop()
        await asyncio.gather(worker_task, return_exceptions=True)
    await close_db()
    logger.info("Application shutdown")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Job Manager API",
        description="Distributed job management with lease-based claiming on PostgreSQL",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(workers_router)

    @app.websocket("/ws/jobs")
    async def jobs_websocket(websocket: WebSocket):
        """
        WebSocket endpoint for real-time job and worker updates.

        After connecting, clients can subscribe to specific jobs.
        """
        await websocket_handler(websocket)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "jobmanager.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
