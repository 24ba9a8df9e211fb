r"""Job worker: claims queued jobs one at a time and runs them.

Lifecycle::

    idle -> claiming -> executing -> recording -> claiming ...
                \-> draining -> stopped

The loop ends when the queue is empty, when the job-count or runtime
ceiling is reached, or when SIGTERM/SIGINT requests a drain. Draining stops
the compute instance the worker runs on and shuts down the health server.

Every claimed job reaches a terminal status with its run time recorded,
whatever the sync function does.
"""

import asyncio
import contextlib
import logging
import signal
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from enum import StrEnum
from uuid import UUID

import uvicorn

from fantasy_pipeline.config import Settings
from fantasy_pipeline.db import Database
from fantasy_pipeline.registry import JobParameterError, SyncRegistry
from fantasy_pipeline.services.compute import ComputeLifecycleManager
from fantasy_pipeline.services.credentials import CredentialProvider
from fantasy_pipeline.services.job_queue import Job, JobQueue, JobStatus
from fantasy_pipeline.services.provider_client import ProviderClient

logger = logging.getLogger(__name__)


class WorkerState(StrEnum):
    IDLE = "idle"
    CLAIMING = "claiming"
    EXECUTING = "executing"
    RECORDING = "recording"
    DRAINING = "draining"
    STOPPED = "stopped"


class StopReason(StrEnum):
    QUEUE_EMPTY = "queue_empty"
    MAX_JOBS = "max_jobs"
    MAX_RUNTIME = "max_runtime"
    DRAIN_REQUESTED = "drain_requested"


class CredentialUnavailableError(RuntimeError):
    """No usable provider credential for the job's user."""


@dataclass(slots=True)
class WorkerContext:
    """Collaborators a worker and its sync functions run against."""

    settings: Settings
    db: Database
    queue: JobQueue
    provider: ProviderClient
    credentials: CredentialProvider
    registry: SyncRegistry
    lifecycle: ComputeLifecycleManager
    season_year: int


@dataclass(slots=True)
class JobOutcome:
    job_id: UUID
    name: str
    status: JobStatus
    run_time_ms: int
    records_processed: int = 0
    error_message: str | None = None


@dataclass(slots=True)
class WorkerSummary:
    executed: int = 0
    completed: int = 0
    failed: int = 0
    stop_reason: StopReason | None = None


class _HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the worker."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class Worker:
    """Runs jobs from the queue until a bound is hit or a drain is requested.

    Args:
        ctx: Worker collaborators.
        max_jobs: Job-count ceiling for one run.
        max_runtime_seconds: Wall-clock ceiling for one run.
        job_delay_seconds: Pause between jobs.
        serve_health: Serve ``/health`` while running.
        handle_signals: Install SIGTERM/SIGINT drain handlers.
        stop_instance: Stop the compute instance when draining.
        clock: Monotonic clock for the runtime ceiling.
        sleep: Coroutine used for the inter-job pause.
    """

    def __init__(
        self,
        ctx: WorkerContext,
        max_jobs: int = 50,
        max_runtime_seconds: float = 3 * 60 * 60,
        job_delay_seconds: float = 0.0,
        serve_health: bool = True,
        handle_signals: bool = True,
        stop_instance: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ctx = ctx
        self.max_jobs = max_jobs
        self.max_runtime_seconds = max_runtime_seconds
        self.job_delay_seconds = job_delay_seconds
        self.serve_health = serve_health
        self.handle_signals = handle_signals
        self.stop_instance = stop_instance
        self._clock = clock
        self._sleep = sleep

        self.state = WorkerState.IDLE
        self._drain_requested = False
        self._admin_user_id: str | None = None
        self._health_server: _HealthServer | None = None
        self._health_task: asyncio.Task | None = None
        self._signals_installed: list[signal.Signals] = []

    @classmethod
    def from_settings(cls, ctx: WorkerContext, **overrides) -> "Worker":
        settings = ctx.settings
        options = {
            "max_jobs": settings.worker_max_jobs,
            "max_runtime_seconds": settings.worker_max_runtime_seconds,
            "job_delay_seconds": settings.worker_job_delay_seconds,
        }
        options.update(overrides)
        return cls(ctx, **options)

    def request_drain(self) -> None:
        """Finish the current job, then drain. Safe to call repeatedly."""
        if not self._drain_requested:
            logger.info("Drain requested; finishing current job")
        self._drain_requested = True

    # =========================================================================
    # Main loop
    # =========================================================================

    async def run(self) -> WorkerSummary:
        """Process jobs until a stop condition, then drain.

        Raises:
            ConfigurationError: No administrative user is configured.
        """
        self._admin_user_id = self.ctx.settings.require_admin_user_id()

        summary = WorkerSummary()
        started = self._clock()
        self._install_signal_handlers()
        await self._start_health_server()
        logger.info(
            f"Worker started (max {self.max_jobs} jobs, "
            f"max {self.max_runtime_seconds:.0f}s runtime)"
        )

        try:
            while True:
                summary.stop_reason = self._stop_reason(summary, started)
                if summary.stop_reason is not None:
                    break

                self.state = WorkerState.CLAIMING
                job = await self.ctx.queue.claim_next()
                if job is None:
                    summary.stop_reason = StopReason.QUEUE_EMPTY
                    break

                outcome = await self.execute(job)
                summary.executed += 1
                if outcome.status is JobStatus.COMPLETED:
                    summary.completed += 1
                else:
                    summary.failed += 1

                self.state = WorkerState.IDLE
                if self.job_delay_seconds > 0 and not self._drain_requested:
                    await self._sleep(self.job_delay_seconds)
        finally:
            await self._drain()

        logger.info(
            f"Worker stopped ({summary.stop_reason}): {summary.executed} jobs, "
            f"{summary.completed} completed, {summary.failed} failed"
        )
        return summary

    def _stop_reason(self, summary: WorkerSummary, started: float) -> StopReason | None:
        if self._drain_requested:
            return StopReason.DRAIN_REQUESTED
        if summary.executed >= self.max_jobs:
            logger.info(f"Job ceiling of {self.max_jobs} reached")
            return StopReason.MAX_JOBS
        if self._clock() - started >= self.max_runtime_seconds:
            logger.info(f"Runtime ceiling of {self.max_runtime_seconds:.0f}s reached")
            return StopReason.MAX_RUNTIME
        return None

    async def execute(self, job: Job) -> JobOutcome:
        """Run one claimed job and record its terminal status."""
        self.state = WorkerState.EXECUTING
        logger.info(f"Executing job {job.id} ({job.name}, week={job.week}, user={job.user_id})")

        start = time.perf_counter()
        records = 0
        error_message: str | None = None
        try:
            function = self.ctx.registry.get(job.name)
            if function.requires_week and job.week is None:
                raise JobParameterError(f"Job {job.name} requires a week")
            if function.requires_user and not job.user_id:
                raise JobParameterError(f"Job {job.name} requires a user")

            user_id = job.user_id or self._admin_user_id or self.ctx.settings.require_admin_user_id()
            credential = await self.ctx.credentials.get_credential(user_id)
            if credential is None:
                raise CredentialUnavailableError(f"No provider credential for user {user_id}")

            result = await function.run(self.ctx, credential, job.week, job.user_id)
            records = result.records_processed
        except Exception as e:
            error_message = str(e) or type(e).__name__
            logger.error(f"Job {job.id} ({job.name}) failed: {type(e).__name__}: {e}")

        run_time_ms = int((time.perf_counter() - start) * 1000)

        self.state = WorkerState.RECORDING
        if error_message is None:
            await self.ctx.queue.mark_completed(job.id, run_time_ms)
            status = JobStatus.COMPLETED
            logger.info(f"Job {job.id} ({job.name}) completed in {run_time_ms}ms: {records} records")
        else:
            await self.ctx.queue.mark_failed(job.id, run_time_ms, error_message)
            status = JobStatus.FAILED

        return JobOutcome(
            job_id=job.id,
            name=job.name,
            status=status,
            run_time_ms=run_time_ms,
            records_processed=records,
            error_message=error_message,
        )

    # =========================================================================
    # Signals, health server and drain
    # =========================================================================

    def _install_signal_handlers(self) -> None:
        if not self.handle_signals:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_drain)
                self._signals_installed.append(sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.warning(f"Cannot install handler for {sig.name}: {e}")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    async def _start_health_server(self) -> None:
        if not self.serve_health:
            return
        # Imported here so the API app is only built when it is served
        from fantasy_pipeline.main import create_app

        settings = self.ctx.settings
        config = uvicorn.Config(
            create_app(database=self.ctx.db, settings=settings),
            host=settings.health_host,
            port=settings.health_port,
            log_level="warning",
        )
        self._health_server = _HealthServer(config)
        self._health_task = asyncio.create_task(self._health_server.serve())
        logger.info(f"Health server listening on {settings.health_host}:{settings.health_port}")

    async def _stop_health_server(self) -> None:
        if self._health_server is None or self._health_task is None:
            return
        self._health_server.should_exit = True
        try:
            await self._health_task
        except (OSError, SystemExit) as e:
            logger.warning(f"Health server exited with error: {e!r}")
        self._health_server = None
        self._health_task = None

    async def _drain(self) -> None:
        self.state = WorkerState.DRAINING
        self._remove_signal_handlers()
        try:
            if self.stop_instance:
                await self.ctx.lifecycle.stop()
        except Exception as e:
            logger.error(f"Compute stop failed during drain: {type(e).__name__}: {e}")
        finally:
            await self._stop_health_server()
            self.state = WorkerState.STOPPED
