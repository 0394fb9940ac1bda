# roster/infra/job_worker.py
"""
In-process async job worker with handler dispatch.

Polls the jobs table, claims due jobs (including durable wake-ups whose
``scheduled_at`` has passed) and routes them to registered handlers.
Claimed jobs run concurrently within a batch.

Per job type the worker can apply a start throttle ("at most one job of
this type per N seconds"). A throttled job is deferred back to pending
without consuming an attempt.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from roster.core.errors import NonRetriableError
from roster.infra.error_tracking import ErrorTracker, get_error_tracker, send_ops_alert
from roster.infra.logging_config import get_logger
from roster.infra.metrics import inc_counter
from roster.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job
from roster.infra.rate_limiter import InMemoryRateLimiter

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]
AlertSink = Callable[[str], Awaitable[bool]]


class JobWorker:
    """
    In-process async worker that polls the jobs table and executes handlers.

    Usage:
        worker = JobWorker(repo=get_job_repo())
        worker.register("crewing.contact_attempt", handler, throttle_seconds=5)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
        completed_ttl_days: int = 7,
        failed_ttl_days: int = 30,
        tracker: ErrorTracker | None = None,
        alert: AlertSink | None = None,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._completed_ttl_days = completed_ttl_days
        self._failed_ttl_days = failed_ttl_days
        self._tracker = tracker or get_error_tracker()
        self._alert = alert or send_ops_alert
        self._handlers: dict[str, JobHandler] = {}
        self._throttles: dict[str, InMemoryRateLimiter] = {}
        self._task: asyncio.Task | None = None
        self._running = False
        self._loop_count = 0

    def register(
        self,
        job_type: str,
        handler: JobHandler,
        *,
        throttle_seconds: float | None = None,
    ) -> None:
        """Register a handler for a job type, optionally limited to one start per window."""
        self._handlers[job_type] = handler
        if throttle_seconds:
            self._throttles[job_type] = InMemoryRateLimiter(1, throttle_seconds)

    @property
    def job_types(self) -> list[str]:
        return list(self._handlers)

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="job_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job worker started: poll={self._poll_interval}s, "
            f"batch={self._batch_size}, handlers={self.job_types}",
        )

    async def stop(self) -> None:
        """Graceful shutdown: stop polling and cancel the loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job worker stopped")

    async def run_once(self) -> int:
        """Claim and execute one batch. Returns the number of jobs claimed."""
        jobs = await self._repo.claim_batch(self._batch_size)
        if jobs:
            await asyncio.gather(*(self._execute(job) for job in jobs), return_exceptions=True)
        return len(jobs)

    async def _loop(self) -> None:
        while self._running:
            try:
                self._loop_count += 1

                if self._loop_count % 60 == 0:
                    await self._housekeeping()

                if await self.run_once():
                    await asyncio.sleep(0.1)
                else:
                    await asyncio.sleep(self._poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job worker loop error: {exc}", exc_info=True)
                inc_counter("job_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    async def _housekeeping(self) -> None:
        try:
            await self._repo.reset_stale_running(self._stale_timeout)
        except Exception as exc:
            logger.warning(f"Stale job reset failed: {exc}")

        # ~hourly at the default 1s poll interval
        if self._loop_count % 3600 == 0:
            try:
                await self._repo.cleanup_completed(self._completed_ttl_days)
                await self._repo.cleanup_failed(self._failed_ttl_days)
            except Exception as exc:
                logger.warning(f"Job cleanup failed: {exc}")

    async def _execute(self, job: Job) -> None:
        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = f"No handler registered for job_type={job.job_type}"
            logger.error(error)
            await self._repo.fail_permanently(job.id, error)
            inc_counter("jobs_unknown_type")
            return

        throttle = self._throttles.get(job.job_type)
        if throttle is not None:
            allowed, retry_after = throttle.is_allowed(job.job_type)
            if not allowed:
                await self._repo.defer(job.id, retry_after or 1.0)
                inc_counter("jobs_throttled", job_type=job.job_type)
                return

        try:
            await handler(job)
        except NonRetriableError as exc:
            await self._repo.fail_permanently(job.id, f"NonRetriableError: {exc}")
            inc_counter("jobs_non_retriable", job_type=job.job_type)
            self._tracker.capture(exc, job_id=job.id, job_type=job.job_type, entity=exc.entity)
            await self._alert(
                f"Job `{job.job_type}` failed permanently for {exc.entity or 'unknown entity'}: {exc}"
            )
            return
        except Exception as exc:
            error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
            await self._repo.fail(job.id, error_msg, base_delay=self._base_retry_delay)
            inc_counter("jobs_failed_attempt", job_type=job.job_type)
            if job.attempts + 1 >= job.max_attempts:
                self._tracker.capture(exc, job_id=job.id, job_type=job.job_type)
            logger.warning(
                f"Job failed: id={job.id[:8]}, type={job.job_type}, "
                f"attempt={job.attempts + 1}/{job.max_attempts}, error={error_msg[:100]}",
            )
            return

        await self._repo.complete(job.id)
        inc_counter("jobs_completed", job_type=job.job_type)
        logger.info(
            f"Job completed: id={job.id[:8]}, type={job.job_type}, "
            f"attempt={job.attempts + 1}",
        )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Job worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
