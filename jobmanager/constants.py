"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions (see jobmanager.lifecycle):
    - PENDING -> RUNNING (claim)
    - PENDING -> STOPPED (cancelled before any worker picked it up)
    - RUNNING -> RUNNING (stale lease reclaimed by another worker)
    - RUNNING -> COMPLETED | FAILED | STOPPED
    - FAILED | STOPPED -> PENDING (restart)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class JobPriority(StrEnum):
    """Job priority levels for queue ordering."""

    REGULAR = "regular"
    HIGH = "high"


class WorkerStatus(StrEnum):
    """Observed occupancy of a worker process."""

    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


# Priority weights for ordering (higher = claimed first)
PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.REGULAR: 0,
    JobPriority.HIGH: 1,
}

# Default values
DEFAULT_PRIORITY = JobPriority.REGULAR
DEFAULT_STALE_LEASE_SECONDS = 120
MIN_PROGRESS = 0
MAX_PROGRESS = 100

# Error messages recorded on the job row
STOPPED_BY_REQUEST = "Stopped by request"
STOPPED_BY_SHUTDOWN = "Worker shutting down"

# API constants
API_PREFIX = "/api"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_STALE_RECLAIMED = "stale_leases_reclaimed_total"
METRIC_CLAIM_ERRORS = "claim_errors_total"
METRIC_NOTIFICATION_ERRORS = "notification_errors_total"
METRIC_WORKER_BUSY = "worker_busy"

# Trace span names
SPAN_CLAIM_JOBS = "claim_jobs"
SPAN_EXECUTE_JOB = "execute_job"

# WebSocket event types
WS_EVENT_JOB_PROGRESS = "job.progress"
WS_EVENT_WORKER_STATUS = "worker.status"
