"""
Worker process for executing jobs.

The worker repeatedly claims the next eligible job, runs the configured
handler under its lease, and records the outcome. The only thing that
decides whether this process may work on a job is the lease on the job row;
the registry row maintained alongside is purely for observers.
"""

import asyncio
import logging
import signal
import socket
from functools import partial
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError

from jobmanager.config import get_settings
from jobmanager.constants import (
    SPAN_CLAIM_JOBS,
    SPAN_EXECUTE_JOB,
    STOPPED_BY_SHUTDOWN,
    JobStatus,
)
from jobmanager.db import close_db, get_session_context, init_db
from jobmanager.db.models import Job
from jobmanager.db.repository import JobRepository
from jobmanager.lifecycle import LeaseLostError
from jobmanager.notifications import Notifier, as_safe_notifier
from jobmanager.observability.logging import log_context, setup_logging
from jobmanager.observability.metrics import get_metrics
from jobmanager.observability.tracing import get_tracer
from jobmanager.types.events import JobProgressEvent
from jobmanager.types.job import JobContext
from jobmanager.worker.handlers import JobHandler, execute_job, resolve_handler
from jobmanager.worker.registry import SessionFactory, WorkerRegistry

logger = logging.getLogger(__name__)

STORE_ERRORS = (SQLAlchemyError, OSError)


class Worker:
    """
    Job worker that claims and executes jobs.

    Features:
    - Atomic claiming using FOR UPDATE SKIP LOCKED, including stale leases
    - Lease renewal through lease-guarded progress writes
    - Up to ``worker_max_concurrent_jobs`` jobs in flight (one by default)
    - Registry heartbeat and status announcements
    - Graceful shutdown on SIGTERM/SIGINT, recording held jobs as stopped
    """

    def __init__(
        self,
        worker_id: str | None = None,
        name: str | None = None,
        notifier: Notifier | None = None,
        handler: JobHandler | None = None,
        session_factory: SessionFactory = get_session_context,
        poll_interval: float | None = None,
        max_concurrent_jobs: int | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier. A fresh UUID per process by default.
            name: Display name. Defaults to the configured name or host name.
            notifier: Where progress and status events are sent.
            handler: The job handler. Defaults to the configured handler.
            session_factory: Returns a session context; commits on exit.
            poll_interval: Seconds to wait when no job could be claimed.
            max_concurrent_jobs: Number of jobs this worker may hold at once.
        """
        settings = get_settings()

        self.worker_id = worker_id or str(uuid4())
        self.name = name or settings.worker_name or socket.gethostname()
        self.poll_interval = (
            settings.worker_poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.max_concurrent_jobs = (
            settings.worker_max_concurrent_jobs
            if max_concurrent_jobs is None
            else max_concurrent_jobs
        )
        if self.max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")

        self._handler = handler or resolve_handler(settings.worker_job_handler)
        self._notifier = as_safe_notifier(notifier)
        self._session_factory = session_factory
        self._metrics = get_metrics()

        self.registry = WorkerRegistry(
            self.worker_id,
            self.name,
            notifier=self._notifier,
            session_factory=session_factory,
        )

        self._processing_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._stopping = False
        self._stopped = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._processing_task is not None and not self._processing_task.done()

    async def start(self) -> None:
        """Register, start processing and heartbeating, and wait until stopped."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "worker_name": self.name,
                "max_concurrent_jobs": self.max_concurrent_jobs,
            },
        )

        self._stopping = False
        self._stopped.clear()

        await self.registry.register()

        self._heartbeat_task = asyncio.create_task(
            self.registry.run_heartbeat_loop(), name=f"heartbeat-{self.worker_id}"
        )
        self._processing_task = asyncio.create_task(
            self._process_loop(), name=f"process-{self.worker_id}"
        )

        await self._stopped.wait()
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    def request_stop(self) -> asyncio.Task:
        """Schedule stop() from synchronous code such as a signal handler."""
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.create_task(self.stop(), name=f"stop-{self.worker_id}")
        return self._stop_task

    async def stop(self) -> None:
        """
        Stop the worker.

        Cancels the processing loop, which interrupts any sleep and any job
        in flight (such jobs are recorded as stopped), then the heartbeat,
        and finally marks the worker offline.
        """
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True

        logger.info("Worker stopping", extra={"worker_id": self.worker_id})

        tasks = [t for t in (self._processing_task, self._heartbeat_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.registry.deregister()
        self._stopped.set()

    async def _process_loop(self) -> None:
        """
        Claim and dispatch jobs until cancelled.

        Each job in flight holds one slot of a counting semaphore. With a
        single slot the worker holds at most one job at a time.
        """
        slots = asyncio.Semaphore(self.max_concurrent_jobs)
        in_flight: set[asyncio.Task] = set()

        def _release(task: asyncio.Task) -> None:
            in_flight.discard(task)
            slots.release()

        try:
            while True:
                await slots.acquire()
                try:
                    job = await self._claim_next()
                except asyncio.CancelledError:
                    slots.release()
                    raise
                except Exception as e:
                    logger.exception(
                        f"Error in worker loop: {e}",
                        extra={"worker_id": self.worker_id},
                    )
                    job = None

                if job is None:
                    slots.release()
                    await asyncio.sleep(self.poll_interval)
                    continue

                task = asyncio.create_task(
                    self._run_job(job, in_flight), name=f"job-{job.id}"
                )
                in_flight.add(task)
                task.add_done_callback(_release)
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def _claim_next(self) -> Job | None:
        """
        Claim one job.

        Returns:
            The leased job, or None if nothing was eligible or the store failed.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOBS) as span:
            span.set_attribute("worker_id", self.worker_id)
            try:
                async with self._session_factory() as session:
                    jobs = await JobRepository(session).claim_jobs(self.worker_id, max_jobs=1)
            except STORE_ERRORS:
                logger.exception("Claim failed", extra={"worker_id": self.worker_id})
                self._metrics.record_claim_error()
                return None
            span.set_attribute("claimed", len(jobs))

        if not jobs:
            return None

        job = jobs[0]
        reclaimed = job.started_at is not None and job.started_at < job.lease_time
        self._metrics.record_claim(self.worker_id, 1, reclaimed=int(reclaimed))
        return job

    async def _run_job(self, job: Job, in_flight: set[asyncio.Task]) -> None:
        """
        Execute a single claimed job and record its outcome.

        Outcomes:
        1. Handler succeeds: COMPLETED
        2. Handler fails or raises: FAILED with the error
        3. Worker shuts down mid-run: STOPPED
        4. Lease lost (job stopped, deleted or reclaimed): nothing is written

        Args:
            job: The leased job.
            in_flight: Jobs currently running in this worker, including this one.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        outcome: JobStatus | None = None
        error: str | None = None

        self._metrics.worker_busy.inc()

        with log_context(job_id=str(job.id), worker_id=self.worker_id):
            try:
                await self.registry.set_busy(job.id)
                await self._notifier.notify_job_progress(JobProgressEvent.from_job(job))

                context = JobContext(
                    job_id=job.id,
                    name=job.name,
                    priority=job.priority,
                    worker_id=self.worker_id,
                    started_at=job.started_at,
                    report_progress=partial(self._report_progress, job.id),
                )

                logger.info("Executing job", extra={"job_name": job.name})

                with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                    span.set_attribute("job_id", str(job.id))
                    span.set_attribute("worker_id", self.worker_id)
                    span.set_attribute("priority", job.priority.value)

                    result = await execute_job(context, self._handler)

                if result.success:
                    outcome = JobStatus.COMPLETED
                else:
                    outcome = JobStatus.FAILED
                    error = result.error or "Job failed"

            except LeaseLostError:
                logger.warning("Lease lost, abandoning job")

            except asyncio.CancelledError:
                outcome = JobStatus.STOPPED
                error = STOPPED_BY_SHUTDOWN
                raise

            except Exception as e:
                logger.exception("Exception executing job", extra={"error": str(e)})
                outcome = JobStatus.FAILED
                error = str(e) or type(e).__name__

            finally:
                if outcome is not None:
                    await self._finish(job.id, outcome, error, loop.time() - started)

                self._metrics.worker_busy.dec()
                if len(in_flight) <= 1:
                    await self.registry.set_available()

    async def _report_progress(self, job_id: UUID, progress: int) -> None:
        """
        Persist progress under this worker's lease and announce it.

        Raises:
            LeaseLostError: If the job is no longer running under our lease.
        """
        try:
            async with self._session_factory() as session:
                job = await JobRepository(session).update_progress(
                    job_id, progress, lease_holder=self.worker_id
                )
        except STORE_ERRORS:
            logger.warning(
                "Progress update failed",
                exc_info=True,
                extra={"progress": progress},
            )
            return

        if job is None:
            raise LeaseLostError(job_id, self.worker_id)

        await self._notifier.notify_job_progress(JobProgressEvent.from_job(job))

    async def _finish(
        self,
        job_id: UUID,
        outcome: JobStatus,
        error: str | None,
        duration: float,
    ) -> None:
        """Write the terminal status under this worker's lease."""
        try:
            async with self._session_factory() as session:
                job = await JobRepository(session).update_status(
                    job_id, outcome, error_message=error, lease_holder=self.worker_id
                )
        except STORE_ERRORS:
            logger.exception(
                "Failed to record job outcome",
                extra={"status": outcome.value},
            )
            return

        if job is None:
            logger.info(
                "Job outcome not recorded, lease no longer held",
                extra={"status": outcome.value},
            )
            return

        self._metrics.record_job_finished(outcome.value, duration)
        logger.info(
            "Job finished",
            extra={"status": outcome.value, "duration": f"{duration:.2f}s", "error": error},
        )
        await self._notifier.notify_job_progress(JobProgressEvent.from_job(job))


async def run_async() -> None:
    """Run a standalone worker until SIGTERM or SIGINT."""
    setup_logging()
    await init_db()

    worker = Worker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.request_stop)

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
