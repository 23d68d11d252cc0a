"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobmanager.db.connection import (
    AsyncSessionLocal,
    close_db,
    create_schema,
    create_session_factory,
    get_async_session,
    get_engine,
    get_session_context,
    init_db,
)
from jobmanager.db.models import Base, Job, WorkerNode

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "create_schema",
    "create_session_factory",
    "AsyncSessionLocal",
    "Job",
    "WorkerNode",
    "Base",
]
