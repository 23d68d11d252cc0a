"""
API request and response type definitions.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jobmanager.constants import (
    MAX_PROGRESS,
    MIN_PROGRESS,
    JobPriority,
    JobStatus,
    WorkerStatus,
)
from jobmanager.lifecycle import STATUS_UPDATE_TARGETS


class CreateJobRequest(BaseModel):
    """Request body for enqueueing a new job."""

    name: str = Field(..., min_length=1, max_length=255, description="Job display name")
    priority: JobPriority = Field(default=JobPriority.REGULAR, description="Job priority")
    scheduled_start: datetime | None = Field(
        default=None, description="Earliest time a worker may pick the job up"
    )

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Job name is required")
        return value


class UpdateProgressRequest(BaseModel):
    """Request body for reporting job progress."""

    progress: int = Field(..., ge=MIN_PROGRESS, le=MAX_PROGRESS)


class UpdateStatusRequest(BaseModel):
    """Request body for moving a job to a terminal status."""

    status: JobStatus
    error_message: str | None = None

    @field_validator("status")
    @classmethod
    def terminal_only(cls, value: JobStatus) -> JobStatus:
        if value not in STATUS_UPDATE_TARGETS:
            raise ValueError(
                "status must be one of: "
                + ", ".join(sorted(s.value for s in STATUS_UPDATE_TARGETS))
            )
        return value


class JobResponse(BaseModel):
    """Full job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    priority: JobPriority
    status: JobStatus
    progress: int
    retry_count: int
    created_at: datetime
    scheduled_start: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    lease_holder: str | None
    lease_time: datetime | None


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class JobStatsResponse(BaseModel):
    """Job counts by status."""

    stats: dict[str, int]
    queue_depth: int


class WorkerNodeResponse(BaseModel):
    """Worker node details."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str
    status: WorkerStatus
    active: bool
    current_job_id: UUID | None
    last_heartbeat: datetime
    registered_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
