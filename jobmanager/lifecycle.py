"""
Job lifecycle state machine.

The transition table is the single place that decides which status changes
are legal. The repository turns it into WHERE clauses so that every status
write is a conditional update enforced by the database, never a
read-modify-write from application memory.
"""

from jobmanager.constants import JobStatus

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.STOPPED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.RUNNING,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.STOPPED,
        }
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.STOPPED: frozenset({JobStatus.PENDING}),
}

TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STOPPED}
)

RESTARTABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.STOPPED})

# Targets reachable through a plain status update. RUNNING is only granted by
# a claim and PENDING only by a restart.
STATUS_UPDATE_TARGETS = TERMINAL_STATUSES


class InvalidTransitionError(ValueError):
    """Raised when an operation asks for a status it can never produce."""

    def __init__(self, target: JobStatus, operation: str):
        self.target = target
        self.operation = operation
        super().__init__(f"{operation} cannot move a job to {target}")


class LeaseLostError(RuntimeError):
    """Raised when a lease-guarded write finds the lease held by nobody or someone else."""

    def __init__(self, job_id: object, worker_id: str):
        self.job_id = job_id
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} no longer holds the lease on job {job_id}")


def can_transition(source: JobStatus, target: JobStatus) -> bool:
    """Check whether ``source -> target`` is a legal lifecycle step."""
    return target in TRANSITIONS[source]


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_restartable(status: JobStatus) -> bool:
    return status in RESTARTABLE_STATUSES


def sources_for(target: JobStatus) -> frozenset[JobStatus]:
    """
    Get every status a job may be in for an update to ``target`` to apply.

    Args:
        target: The requested status.

    Returns:
        Set of acceptable current statuses.
    """
    return frozenset(status for status in TRANSITIONS if can_transition(status, target))
