"""
Worker registry service.

Keeps the worker_nodes row of one worker process up to date and announces
changes to observers. Everything here is best-effort: a failed write is
logged and the caller carries on, because nothing about job ownership
depends on this table.
"""

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobmanager.config import get_settings
from jobmanager.db import get_session_context
from jobmanager.db.models import WorkerNode
from jobmanager.db.repository import WorkerNodeRepository
from jobmanager.notifications import Notifier, as_safe_notifier
from jobmanager.types.events import WorkerStatusEvent

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Store failures the registry tolerates
STORE_ERRORS = (SQLAlchemyError, OSError)


class WorkerRegistry:
    """
    Registry membership of a single worker process.

    Args:
        worker_id: The worker's unique identifier.
        name: Display name shown to observers.
        notifier: Where worker status events are sent.
        session_factory: Returns a session context; commits on exit.
    """

    def __init__(
        self,
        worker_id: str,
        name: str,
        notifier: Notifier | None = None,
        session_factory: SessionFactory = get_session_context,
    ):
        self.worker_id = worker_id
        self.name = name
        self._notifier = as_safe_notifier(notifier)
        self._session_factory = session_factory
        self._settings = get_settings()

    async def _announce(self, worker: WorkerNode | None) -> None:
        if worker is not None:
            await self._notifier.notify_worker_status(WorkerStatusEvent.from_worker(worker))

    async def register(self) -> WorkerNode | None:
        """Insert or reactivate this worker's row."""
        try:
            async with self._session_factory() as session:
                worker = await WorkerNodeRepository(session).register(self.worker_id, self.name)
        except STORE_ERRORS:
            logger.exception("Worker registration failed", extra={"worker_id": self.worker_id})
            return None

        await self._announce(worker)
        return worker

    async def heartbeat(self) -> WorkerNode | None:
        """
        Refresh last_heartbeat, registering again if the row has vanished.

        Returns:
            The worker row, or None if the store could not be reached.
        """
        try:
            async with self._session_factory() as session:
                worker = await WorkerNodeRepository(session).heartbeat(self.worker_id)
        except STORE_ERRORS:
            logger.warning(
                "Worker heartbeat failed",
                exc_info=True,
                extra={"worker_id": self.worker_id},
            )
            return None

        if worker is None:
            logger.info(
                "Worker row missing on heartbeat, registering again",
                extra={"worker_id": self.worker_id},
            )
            return await self.register()

        await self._announce(worker)
        return worker

    async def set_busy(self, job_id: UUID) -> WorkerNode | None:
        try:
            async with self._session_factory() as session:
                worker = await WorkerNodeRepository(session).set_busy(self.worker_id, job_id)
        except STORE_ERRORS:
            logger.warning(
                "Failed to mark worker busy",
                exc_info=True,
                extra={"worker_id": self.worker_id, "job_id": str(job_id)},
            )
            return None

        await self._announce(worker)
        return worker

    async def set_available(self) -> WorkerNode | None:
        try:
            async with self._session_factory() as session:
                worker = await WorkerNodeRepository(session).set_available(self.worker_id)
        except STORE_ERRORS:
            logger.warning(
                "Failed to mark worker available",
                exc_info=True,
                extra={"worker_id": self.worker_id},
            )
            return None

        await self._announce(worker)
        return worker

    async def deregister(self) -> WorkerNode | None:
        """Mark this worker offline. The row itself is kept."""
        try:
            async with self._session_factory() as session:
                worker = await WorkerNodeRepository(session).deregister(self.worker_id)
        except STORE_ERRORS:
            logger.exception("Worker deregistration failed", extra={"worker_id": self.worker_id})
            return None

        logger.info("Worker deregistered", extra={"worker_id": self.worker_id})
        await self._announce(worker)
        return worker

    async def run_heartbeat_loop(self) -> None:
        """Heartbeat every ``worker_heartbeat_interval_seconds`` until cancelled."""
        interval = self._settings.worker_heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            await self.heartbeat()
