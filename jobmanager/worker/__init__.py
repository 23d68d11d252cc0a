"""
Worker module.
Contains the processing loop, registry membership and job handlers.
"""

from jobmanager.worker.handlers import (
    JobHandler,
    execute_job,
    get_handler,
    list_handlers,
    register_handler,
)
from jobmanager.worker.main import Worker
from jobmanager.worker.registry import WorkerRegistry

__all__ = [
    "Worker",
    "WorkerRegistry",
    "JobHandler",
    "execute_job",
    "get_handler",
    "list_handlers",
    "register_handler",
]
