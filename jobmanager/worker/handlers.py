"""
Job handlers registry and implementations.

A handler is the work a job performs once a worker holds its lease. Jobs may
be executed more than once (a stale lease is reclaimed by another worker and
the work starts over), so handlers must tolerate being re-run.

Handlers report progress through ``context.report_progress`` and signal
failure by raising; the processing loop turns the outcome into a terminal
status.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from jobmanager.config import get_settings
from jobmanager.constants import MAX_PROGRESS, MIN_PROGRESS
from jobmanager.lifecycle import LeaseLostError
from jobmanager.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]

# Handler registry
_handlers: dict[str, JobHandler] = {}


class UnknownHandlerError(LookupError):
    """Raised when the configured handler name is not registered."""


def register_handler(name: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        name: The name the handler is selected by.

    Returns:
        Decorator function.

    Example:
        @register_handler("resize_images")
        async def handle_resize(context: JobContext) -> JobResult:
            ...
    """

    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[name] = handler
        logger.debug(f"Registered job handler: {name}")
        return handler

    return decorator


def get_handler(name: str) -> JobHandler | None:
    """
    Get a handler by name.

    Args:
        name: The handler name.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(name)


def resolve_handler(name: str) -> JobHandler:
    """Get a handler by name, raising UnknownHandlerError when missing."""
    handler = get_handler(name)
    if handler is None:
        raise UnknownHandlerError(
            f"No job handler named {name!r}; known handlers: {', '.join(list_handlers())}"
        )
    return handler


def list_handlers() -> list[str]:
    """List all registered handler names."""
    return sorted(_handlers)


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("simulate")
async def handle_simulate(context: JobContext) -> JobResult:
    """
    Simulated unit of work.

    Advances progress from 0 to 100 in ``simulation_step_percent`` steps,
    sleeping ``simulation_step_seconds`` before each one.
    """
    settings = get_settings()
    step = settings.simulation_step_percent
    delay = settings.simulation_step_seconds

    logger.info(
        "Simulated job starting",
        extra={"job_id": str(context.job_id), "step_percent": step},
    )

    progress = MIN_PROGRESS
    while progress < MAX_PROGRESS:
        await asyncio.sleep(delay)
        progress = min(progress + step, MAX_PROGRESS)
        await context.report_progress(progress)

    return JobResult(success=True, output={"progress": progress})


@register_handler("failing")
async def handle_failing(context: JobContext) -> JobResult:
    """
    Handler that always fails after doing some work.
    """
    settings = get_settings()
    await asyncio.sleep(settings.simulation_step_seconds)
    await context.report_progress(settings.simulation_step_percent)

    raise RuntimeError(f"Intentional failure in job {context.name}")


async def execute_job(context: JobContext, handler: JobHandler) -> JobResult:
    """
    Execute a job with the given handler.

    Ordinary handler errors become a failed JobResult. Losing the lease and
    task cancellation propagate to the caller, which owns the terminal write.

    Args:
        context: The job context.
        handler: The handler to run.

    Returns:
        JobResult from the handler.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()

    try:
        result = await handler(context)
    except LeaseLostError:
        raise
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)},
        )
        result = JobResult(success=False, error=str(e) or type(e).__name__)

    result.duration_ms = (loop.time() - started) * 1000
    return result
