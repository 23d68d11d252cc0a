"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobmanager.constants import JobPriority

ProgressReporter = Callable[[int], Awaitable[None]]


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the progress reporting hook.
    """

    job_id: UUID
    name: str
    priority: JobPriority
    worker_id: str
    started_at: datetime | None
    report_progress: ProgressReporter

