"""
Event type definitions for WebSocket push notifications.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobmanager.constants import (
    WS_EVENT_JOB_PROGRESS,
    WS_EVENT_WORKER_STATUS,
    JobStatus,
    WorkerStatus,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobProgressEvent(BaseModel):
    """
    Emitted on every progress tick and every status transition of a job.
    """

    job_id: UUID
    progress: int
    status: JobStatus
    status_message: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_job(cls, job: Any, status_message: str | None = None) -> "JobProgressEvent":
        """Create an event describing the job's persisted state."""
        return cls(
            job_id=job.id,
            progress=job.progress,
            status=job.status,
            status_message=status_message if status_message is not None else job.error_message,
        )


class WorkerStatusEvent(BaseModel):
    """
    Emitted when a worker registers, heartbeats, changes occupancy or leaves.
    """

    node_id: str
    name: str
    status: WorkerStatus
    current_job_id: UUID | None = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_worker(cls, worker: Any) -> "WorkerStatusEvent":
        """Create an event from a worker node record."""
        return cls(
            node_id=worker.id,
            name=worker.display_name,
            status=worker.status,
            current_job_id=worker.current_job_id,
        )


class WebSocketMessage(BaseModel):
    """
    Message format for WebSocket communication.
    """

    type: str
    payload: dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_job_event(cls, event: JobProgressEvent) -> "WebSocketMessage":
        """Wrap a job progress event."""
        return cls(
            type=WS_EVENT_JOB_PROGRESS,
            payload=event.model_dump(mode="json"),
            timestamp=event.timestamp,
        )

    @classmethod
    def from_worker_event(cls, event: WorkerStatusEvent) -> "WebSocketMessage":
        """Wrap a worker status event."""
        return cls(
            type=WS_EVENT_WORKER_STATUS,
            payload=event.model_dump(mode="json"),
            timestamp=event.timestamp,
        )
