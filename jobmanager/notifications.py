"""
Notification sink for real-time observers.

Notifications are a best-effort side channel. The job row in the database is
the source of truth; losing an event must never change job state or stall a
worker, so every notifier the core sees is wrapped in SafeNotifier.
"""

import asyncio
import logging
from typing import Protocol, runtime_checkable

from jobmanager.config import get_settings
from jobmanager.observability.metrics import get_metrics
from jobmanager.types.events import JobProgressEvent, WorkerStatusEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class Notifier(Protocol):
    """Push transport for job progress and worker status events."""

    async def notify_job_progress(self, event: JobProgressEvent) -> None: ...

    async def notify_worker_status(self, event: WorkerStatusEvent) -> None: ...


class NullNotifier:
    """Notifier that drops every event. Used when no transport is configured."""

    async def notify_job_progress(self, event: JobProgressEvent) -> None:
        return None

    async def notify_worker_status(self, event: WorkerStatusEvent) -> None:
        return None


class SafeNotifier:
    """
    Fire-and-forget wrapper around another notifier.

    Each delivery gets ``timeout`` seconds. Errors and timeouts are logged and
    counted, then dropped.
    """

    def __init__(self, inner: Notifier | None = None, timeout: float | None = None):
        """
        Initialize the wrapper.

        Args:
            inner: The notifier to deliver through. Defaults to NullNotifier.
            timeout: Seconds a single delivery may take. Defaults to the
                configured notification timeout.
        """
        self._inner = inner or NullNotifier()
        self._timeout = (
            timeout if timeout is not None else get_settings().notification_timeout_seconds
        )
        self._metrics = get_metrics()

    @property
    def inner(self) -> Notifier:
        return self._inner

    async def notify_job_progress(self, event: JobProgressEvent) -> None:
        try:
            async with asyncio.timeout(self._timeout):
                await self._inner.notify_job_progress(event)
        except TimeoutError:
            self._metrics.record_notification_error("job_progress")
            logger.warning(
                f"Job progress notification timed out after {self._timeout}s",
                extra={"job_id": str(event.job_id)},
            )
        except Exception as e:
            self._metrics.record_notification_error("job_progress")
            logger.warning(
                f"Failed to deliver job progress notification: {e}",
                extra={"job_id": str(event.job_id)},
            )

    async def notify_worker_status(self, event: WorkerStatusEvent) -> None:
        try:
            async with asyncio.timeout(self._timeout):
                await self._inner.notify_worker_status(event)
        except TimeoutError:
            self._metrics.record_notification_error("worker_status")
            logger.warning(
                f"Worker status notification timed out after {self._timeout}s",
                extra={"worker_id": event.node_id},
            )
        except Exception as e:
            self._metrics.record_notification_error("worker_status")
            logger.warning(
                f"Failed to deliver worker status notification: {e}",
                extra={"worker_id": event.node_id},
            )


def as_safe_notifier(notifier: Notifier | None) -> SafeNotifier:
    """Wrap ``notifier`` unless it is already wrapped."""
    if isinstance(notifier, SafeNotifier):
        return notifier
    return SafeNotifier(notifier)
