"""
Integration tests for the worker processing loop and registry.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobmanager.constants import JobPriority, JobStatus, WorkerStatus
from jobmanager.db.models import Job, WorkerNode
from jobmanager.db.repository import JobRepository, WorkerNodeRepository
from jobmanager.types.job import JobContext, JobResult
from jobmanager.worker.main import Worker
from jobmanager.worker.registry import WorkerRegistry


@asynccontextmanager
async def unreachable_store() -> AsyncIterator[AsyncSession]:
    raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))
    yield  # pragma: no cover


async def wait_for_job(
    session_factory: async_sessionmaker[AsyncSession],
    job_id: UUID,
    predicate: Callable[[Job], bool],
    timeout: float = 5.0,
) -> Job:
    """Poll the job row until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        async with session_factory() as session:
            job = await JobRepository(session).get_job(job_id)
        if job is not None and predicate(job):
            return job
        if loop.time() > deadline:
            raise AssertionError(f"Job {job_id} never reached the expected state: {job!r}")
        await asyncio.sleep(0.02)


async def enqueue(
    session_factory: async_sessionmaker[AsyncSession],
    name: str,
    priority: JobPriority = JobPriority.REGULAR,
) -> Job:
    async with session_factory() as session:
        job = await JobRepository(session).enqueue_job(name, priority=priority)
        await session.commit()
    return job


class TestWorkerRegistry:
    """Tests for WorkerRegistry."""

    @pytest.fixture
    def registry(self, session_context, notifier) -> WorkerRegistry:
        return WorkerRegistry("node-1", "box-a", notifier=notifier, session_factory=session_context)

    async def test_register_announces(self, registry: WorkerRegistry, notifier, db_session):
        worker = await registry.register()

        assert worker.status == WorkerStatus.AVAILABLE
        assert [e.node_id for e in notifier.worker_events] == ["node-1"]
        assert await WorkerNodeRepository(db_session).get_worker("node-1") is not None

    async def test_heartbeat_registers_missing_row(
        self,
        registry: WorkerRegistry,
        db_session: AsyncSession,
    ):
        await registry.register()
        await db_session.execute(delete(WorkerNode).where(WorkerNode.id == "node-1"))
        await db_session.commit()

        worker = await registry.heartbeat()

        assert worker is not None
        assert worker.active is True
        assert await WorkerNodeRepository(db_session).get_worker("node-1") is not None

    async def test_busy_then_available(self, registry: WorkerRegistry, notifier):
        job_id = UUID(int=7)
        await registry.register()

        busy = await registry.set_busy(job_id)
        available = await registry.set_available()

        assert busy.status == WorkerStatus.BUSY
        assert busy.current_job_id == job_id
        assert available.status == WorkerStatus.AVAILABLE
        assert [e.status for e in notifier.worker_events] == [
            WorkerStatus.AVAILABLE,
            WorkerStatus.BUSY,
            WorkerStatus.AVAILABLE,
        ]

    async def test_store_errors_are_tolerated(self, notifier):
        registry = WorkerRegistry(
            "node-1", "box-a", notifier=notifier, session_factory=unreachable_store
        )

        assert await registry.register() is None
        assert await registry.heartbeat() is None
        assert await registry.set_busy(UUID(int=1)) is None
        assert await registry.deregister() is None
        assert notifier.worker_events == []

    async def test_heartbeat_loop_runs_until_cancelled(self, registry: WorkerRegistry, notifier):
        await registry.register()
        task = asyncio.create_task(registry.run_heartbeat_loop())

        await asyncio.sleep(0.35)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(notifier.worker_events) >= 2


class TestWorkerLoop:
    """Tests for the Worker processing loop."""

    @pytest_asyncio.fixture
    async def run_worker(self, session_context, notifier):
        """Start workers in the background and stop them after the test."""
        started: list[tuple[Worker, asyncio.Task]] = []

        async def _run(handler, **kwargs) -> Worker:
            worker = Worker(
                worker_id=kwargs.pop("worker_id", None),
                name="test-worker",
                notifier=notifier,
                handler=handler,
                session_factory=kwargs.pop("session_factory", session_context),
                poll_interval=0.05,
                **kwargs,
            )
            started.append((worker, asyncio.create_task(worker.start())))
            return worker

        yield _run

        for worker, task in started:
            await worker.stop()
            await asyncio.wait_for(task, timeout=5)

    async def test_successful_job_completes(self, run_worker, session_factory, notifier):
        async def handler(context: JobContext) -> JobResult:
            await context.report_progress(40)
            await context.report_progress(90)
            return JobResult(success=True)

        job = await enqueue(session_factory, "ok")
        worker = await run_worker(handler)

        done = await wait_for_job(session_factory, job.id, lambda j: j.status == JobStatus.COMPLETED)

        assert done.progress == 90
        assert done.lease_holder == worker.worker_id
        assert done.completed_at is not None

        statuses = [(e.status, e.progress) for e in notifier.job_events if e.job_id == job.id]
        assert statuses[0] == (JobStatus.RUNNING, 0)
        assert (JobStatus.RUNNING, 40) in statuses
        assert statuses[-1] == (JobStatus.COMPLETED, 90)

    async def test_handler_exception_fails_job(self, run_worker, session_factory):
        async def handler(context: JobContext) -> JobResult:
            await context.report_progress(10)
            raise ValueError("disk full")

        job = await enqueue(session_factory, "broken")
        await run_worker(handler)

        failed = await wait_for_job(session_factory, job.id, lambda j: j.status == JobStatus.FAILED)

        assert failed.error_message == "disk full"
        assert failed.progress == 10

    async def test_unsuccessful_result_fails_job(self, run_worker, session_factory):
        async def handler(context: JobContext) -> JobResult:
            return JobResult(success=False, error="upstream said no")

        job = await enqueue(session_factory, "refused")
        await run_worker(handler)

        failed = await wait_for_job(session_factory, job.id, lambda j: j.status == JobStatus.FAILED)
        assert failed.error_message == "upstream said no"

    async def test_worker_keeps_going_after_failure(self, run_worker, session_factory):
        async def handler(context: JobContext) -> JobResult:
            if context.name == "first":
                raise RuntimeError("first one breaks")
            return JobResult(success=True)

        first = await enqueue(session_factory, "first", priority=JobPriority.HIGH)
        second = await enqueue(session_factory, "second")
        await run_worker(handler)

        await wait_for_job(session_factory, first.id, lambda j: j.status == JobStatus.FAILED)
        await wait_for_job(session_factory, second.id, lambda j: j.status == JobStatus.COMPLETED)

    async def test_shutdown_stops_held_job(self, session_context, session_factory, notifier):
        entered = asyncio.Event()

        async def handler(context: JobContext) -> JobResult:
            await context.report_progress(30)
            entered.set()
            await asyncio.sleep(3600)
            return JobResult(success=True)

        job = await enqueue(session_factory, "interrupted")
        worker = Worker(
            name="test-worker",
            notifier=notifier,
            handler=handler,
            session_factory=session_context,
            poll_interval=0.05,
        )
        task = asyncio.create_task(worker.start())

        await asyncio.wait_for(entered.wait(), timeout=5)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        async with session_factory() as session:
            stopped = await JobRepository(session).get_job(job.id)
            node = await WorkerNodeRepository(session).get_worker(worker.worker_id)

        assert stopped.status == JobStatus.STOPPED
        assert stopped.error_message == "Worker shutting down"
        assert stopped.progress == 30
        assert node.status == WorkerStatus.OFFLINE
        assert node.active is False

    async def test_lost_lease_is_abandoned(self, run_worker, session_factory):
        """A job stopped from outside is left alone by the worker running it."""
        entered = asyncio.Event()
        resume = asyncio.Event()
        finished = asyncio.Event()

        async def handler(context: JobContext) -> JobResult:
            try:
                await context.report_progress(20)
                entered.set()
                await resume.wait()
                await context.report_progress(80)
                return JobResult(success=True)
            finally:
                finished.set()

        job = await enqueue(session_factory, "cancelled-mid-run")
        await run_worker(handler)
        await asyncio.wait_for(entered.wait(), timeout=5)

        async with session_factory() as session:
            await JobRepository(session).stop_job(job.id)
            await session.commit()

        resume.set()
        await asyncio.wait_for(finished.wait(), timeout=5)
        await asyncio.sleep(0.1)

        async with session_factory() as session:
            after = await JobRepository(session).get_job(job.id)

        assert after.status == JobStatus.STOPPED
        assert after.error_message == "Stopped by request"
        assert after.progress == 20

    async def test_concurrent_slots(self, run_worker, session_factory):
        running: set[str] = set()
        both_running = asyncio.Event()
        release = asyncio.Event()

        async def handler(context: JobContext) -> JobResult:
            running.add(context.name)
            if len(running) == 2:
                both_running.set()
            await release.wait()
            return JobResult(success=True)

        first = await enqueue(session_factory, "a")
        second = await enqueue(session_factory, "b")
        await run_worker(handler, max_concurrent_jobs=2)

        await asyncio.wait_for(both_running.wait(), timeout=5)
        release.set()

        for job in (first, second):
            await wait_for_job(session_factory, job.id, lambda j: j.status == JobStatus.COMPLETED)

    async def test_single_slot_holds_one_job(self, run_worker, session_factory):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def handler(context: JobContext) -> JobResult:
            entered.set()
            await release.wait()
            return JobResult(success=True)

        first = await enqueue(session_factory, "a", priority=JobPriority.HIGH)
        second = await enqueue(session_factory, "b")
        await run_worker(handler)

        await asyncio.wait_for(entered.wait(), timeout=5)
        await asyncio.sleep(0.2)

        async with session_factory() as session:
            waiting = await JobRepository(session).get_job(second.id)
        assert waiting.status == JobStatus.PENDING

        release.set()
        await wait_for_job(session_factory, first.id, lambda j: j.status == JobStatus.COMPLETED)
        await wait_for_job(session_factory, second.id, lambda j: j.status == JobStatus.COMPLETED)

    async def test_unreachable_store_does_not_kill_worker(self, run_worker):
        async def handler(context: JobContext) -> JobResult:
            return JobResult(success=True)

        worker = await run_worker(handler, session_factory=unreachable_store)
        await asyncio.sleep(0.2)

        assert worker.is_running

    async def test_notifier_failure_does_not_affect_jobs(
        self,
        session_context,
        session_factory,
    ):
        class BrokenNotifier:
            async def notify_job_progress(self, event):
                raise ConnectionError("nobody listening")

            async def notify_worker_status(self, event):
                raise ConnectionError("nobody listening")

        async def handler(context: JobContext) -> JobResult:
            await context.report_progress(50)
            return JobResult(success=True)

        job = await enqueue(session_factory, "quiet")
        worker = Worker(
            name="test-worker",
            notifier=BrokenNotifier(),
            handler=handler,
            session_factory=session_context,
            poll_interval=0.05,
        )
        task = asyncio.create_task(worker.start())
        try:
            done = await wait_for_job(
                session_factory, job.id, lambda j: j.status == JobStatus.COMPLETED
            )
            assert done.progress == 50
        finally:
            await worker.stop()
            await asyncio.wait_for(task, timeout=5)

    async def test_stalled_notifier_does_not_hold_jobs(
        self,
        session_context,
        session_factory,
    ):
        class StalledNotifier:
            async def notify_job_progress(self, event):
                await asyncio.Event().wait()

            async def notify_worker_status(self, event):
                await asyncio.Event().wait()

        async def handler(context: JobContext) -> JobResult:
            await context.report_progress(60)
            return JobResult(success=True)

        first = await enqueue(session_factory, "first", priority=JobPriority.HIGH)
        second = await enqueue(session_factory, "second")
        worker = Worker(
            name="test-worker",
            notifier=StalledNotifier(),
            handler=handler,
            session_factory=session_context,
            poll_interval=0.05,
        )
        task = asyncio.create_task(worker.start())
        try:
            for job in (first, second):
                done = await wait_for_job(
                    session_factory, job.id, lambda j: j.status == JobStatus.COMPLETED
                )
                assert done.progress == 60
        finally:
            await worker.stop()
            await asyncio.wait_for(task, timeout=5)

    async def test_request_stop_from_sync_code(self, session_context, notifier):
        async def handler(context: JobContext) -> JobResult:
            return JobResult(success=True)

        worker = Worker(
            name="test-worker",
            notifier=notifier,
            handler=handler,
            session_factory=session_context,
            poll_interval=0.05,
        )
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.1)

        stop_task = worker.request_stop()

        assert worker.request_stop() is stop_task
        await asyncio.wait_for(task, timeout=5)
        assert stop_task.done()
        assert not worker.is_running


class TestWorkerSettings:

    def test_explicit_zero_poll_interval_is_kept(self):
        worker = Worker(name="test-worker", poll_interval=0)

        assert worker.poll_interval == 0

    def test_defaults_come_from_settings(self, settings):
        worker = Worker(name="test-worker")

        assert worker.poll_interval == settings.worker_poll_interval_seconds
        assert worker.max_concurrent_jobs == settings.worker_max_concurrent_jobs

    def test_zero_slots_rejected(self):
        with pytest.raises(ValueError, match="max_concurrent_jobs"):
            Worker(name="test-worker", max_concurrent_jobs=0)
