"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobmanager.observability.logging import (
    bind_context,
    clear_context,
    get_logger,
    log_context,
    setup_logging,
)
from jobmanager.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobmanager.observability.tracing import (
    get_tracer,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "instrument_fastapi",
    "instrument_sqlalchemy",
]
