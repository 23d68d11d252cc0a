"""
Type definitions for the job manager.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobmanager.types.api import (
    CreateJobRequest,
    ErrorResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    UpdateProgressRequest,
    UpdateStatusRequest,
    WorkerNodeResponse,
)
from jobmanager.types.events import (
    JobProgressEvent,
    WebSocketMessage,
    WorkerStatusEvent,
)
from jobmanager.types.job import (
    JobContext,
    JobResult,
    ProgressReporter,
)

__all__ = [
    # API types
    "CreateJobRequest",
    "UpdateProgressRequest",
    "UpdateStatusRequest",
    "JobResponse",
    "JobListResponse",
    "JobStatsResponse",
    "WorkerNodeResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobContext",
    "JobResult",
    "ProgressReporter",
    # Event types
    "JobProgressEvent",
    "WorkerStatusEvent",
    "WebSocketMessage",
]
