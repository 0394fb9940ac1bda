# roster/infra/pg_job_repo_async.py
"""
Async PostgreSQL job repository (asyncpg).

DB-backed job queue with claim/complete/fail semantics. It is also the
durable timer: a job whose ``scheduled_at`` lies in the future is a
persisted wake-up that survives process restarts.

Uses FOR UPDATE SKIP LOCKED for safe concurrent claiming.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from roster.infra.db_resilience_async import safe_db_conn
from roster.infra.logging_config import get_logger
from roster.infra.metrics import inc_counter

logger = get_logger(__name__)


@dataclass
class Job:
    """A background job from the jobs table."""

    id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    created_at: datetime
    dedupe_key: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _row_to_job(row) -> Job:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=str(row["id"]),
        job_type=row["job_type"],
        payload=payload,
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        dedupe_key=row.get("dedupe_key"),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


def _affected(result: str | None) -> int:
    return int(result.split()[-1]) if result else 0


class AsyncPostgresJobRepository:
    """DB-backed job queue with claim/complete/fail semantics."""

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
        run_at: datetime | None = None,
        dedupe_key: str | None = None,
    ) -> str:
        """
        Insert a new pending job.

        Args:
            job_type: Job type string (e.g., 'crewing.contact_attempt')
            payload: JSON-serializable job data
            priority: Lower = higher priority (default 0, use -1 for high priority)
            max_attempts: Max attempts before marking as failed (1 = at-most-once)
            delay_seconds: Delay before first execution (ignored when run_at is given)
            run_at: Absolute wake-up time (timezone-aware)
            dedupe_key: Unique key; enqueueing the same key again is a no-op

        Returns:
            Job ID (UUID string). For a duplicate dedupe_key, the existing job's ID.
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO jobs (job_type, payload, priority, max_attempts, dedupe_key, scheduled_at)
                VALUES (
                    $1, $2::jsonb, $3, $4, $5,
                    COALESCE($6::timestamptz, now() + make_interval(secs => $7))
                )
                ON CONFLICT (dedupe_key) DO NOTHING
                RETURNING id
                """,
                job_type,
                json.dumps(payload),
                priority,
                max_attempts,
                dedupe_key,
                run_at,
                float(delay_seconds),
            )
            if row is None:
                existing = await conn.fetchval(
                    "SELECT id FROM jobs WHERE dedupe_key = $1", dedupe_key,
                )
                logger.debug(f"Job deduplicated: type={job_type}, key={dedupe_key}")
                inc_counter("jobs_deduplicated", job_type=job_type)
                return str(existing)

            job_id = str(row["id"])
            logger.debug(
                f"Job enqueued: id={job_id[:8]}, type={job_type}, priority={priority}",
                extra={"job_id": job_id, "job_type": job_type},
            )
            inc_counter("jobs_enqueued", job_type=job_type)
            return job_id

    async def claim_batch(self, batch_size: int = 5) -> list[Job]:
        """
        Atomically claim up to batch_size pending jobs that are due.

        Returns:
            List of claimed Job objects (status changed to 'running')
        """
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH claimed AS (
                    SELECT id FROM jobs
                    WHERE status = 'pending'
                      AND scheduled_at <= now()
                    ORDER BY priority, scheduled_at, created_at
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE jobs
                SET status = 'running', started_at = now()
                WHERE id IN (SELECT id FROM claimed)
                RETURNING *
                """,
                batch_size,
            )
            return [_row_to_job(row) for row in rows]

    async def complete(self, job_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET status = 'completed', completed_at = now()
                WHERE id = $1
                """,
                job_id,
            )

    async def fail(
        self,
        job_id: str,
        error_message: str,
        *,
        base_delay: float = 5.0,
    ) -> None:
        """
        Record a job failure.

        If attempts < max_attempts, reschedule with exponential backoff.
        Otherwise mark as 'failed' permanently.

        Backoff formula: base_delay * 2^(attempts)
        With base_delay=5: 5s, 10s, 20s, 40s, 80s
        """
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET
                  attempts = attempts + 1,
                  error_message = $2,
                  status = CASE
                    WHEN attempts + 1 < max_attempts THEN 'pending'
                    ELSE 'failed'
                  END,
                  scheduled_at = CASE
                    WHEN attempts + 1 < max_attempts
                      THEN now() + make_interval(secs => $3 * power(2, attempts))
                    ELSE scheduled_at
                  END,
                  completed_at = CASE
                    WHEN attempts + 1 >= max_attempts THEN now()
                    ELSE NULL
                  END
                WHERE id = $1
                """,
                job_id,
                error_message[:2000],
                base_delay,
            )

    async def fail_permanently(self, job_id: str, error_message: str) -> None:
        """Mark a job failed without further attempts (non-retriable errors)."""
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET attempts = attempts + 1,
                    error_message = $2,
                    status = 'failed',
                    completed_at = now()
                WHERE id = $1
                """,
                job_id,
                error_message[:2000],
            )
        inc_counter("jobs_failed_permanently")

    async def defer(self, job_id: str, delay_seconds: float) -> None:
        """Put a claimed job back to pending without consuming an attempt (throttling)."""
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET status = 'pending',
                    started_at = NULL,
                    scheduled_at = now() + make_interval(secs => $2)
                WHERE id = $1 AND status = 'running'
                """,
                job_id,
                float(delay_seconds),
            )

    async def count_by_status(self) -> dict[str, int]:
        """Return {status: count} for admin visibility."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT status, count(*)::int as cnt FROM jobs GROUP BY status",
            )
            return {row["status"]: row["cnt"] for row in rows}

    async def get_recent(self, limit: int = 50, status: str | None = None) -> list[Job]:
        async with safe_db_conn() as conn:
            if status:
                rows = await conn.fetch(
                    "SELECT * FROM jobs WHERE status = $1 ORDER BY created_at DESC LIMIT $2",
                    status, limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM jobs ORDER BY created_at DESC LIMIT $1",
                    limit,
                )
            return [_row_to_job(row) for row in rows]

    async def cleanup_completed(self, ttl_days: int = 7) -> int:
        """Delete completed jobs older than TTL. Returns count deleted."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM jobs
                WHERE status = 'completed'
                  AND completed_at < now() - make_interval(days => $1)
                """,
                ttl_days,
            )
            count = _affected(result)
            if count > 0:
                logger.info(f"Cleaned up {count} completed jobs older than {ttl_days} days")
            return count

    async def cleanup_failed(self, ttl_days: int = 30) -> int:
        """Delete failed jobs older than TTL. Returns count deleted."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM jobs
                WHERE status = 'failed'
                  AND completed_at < now() - make_interval(days => $1)
                """,
                ttl_days,
            )
            count = _affected(result)
            if count > 0:
                logger.info(f"Cleaned up {count} failed jobs older than {ttl_days} days")
            return count

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """
        Recover jobs stuck in 'running' longer than timeout (process crash).

        A stale run consumes an attempt: jobs with attempts left go back to
        pending, jobs without (e.g. at-most-once outreach) are failed rather
        than re-run.
        """
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET attempts = attempts + 1,
                    error_message = 'stale: worker stopped while running',
                    status = CASE
                      WHEN attempts + 1 < max_attempts THEN 'pending'
                      ELSE 'failed'
                    END,
                    scheduled_at = now(),
                    completed_at = CASE
                      WHEN attempts + 1 >= max_attempts THEN now()
                      ELSE NULL
                    END
                WHERE status = 'running'
                  AND started_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
            count = _affected(result)
            if count > 0:
                logger.warning(f"Recovered {count} stale running jobs (stuck > {timeout_seconds}s)")
                inc_counter("jobs_stale_reset", amount=count)
            return count


# Global singleton
_job_repo: AsyncPostgresJobRepository | None = None


def get_job_repo() -> AsyncPostgresJobRepository:
    """Get the global job repository instance."""
    global _job_repo
    if _job_repo is None:
        _job_repo = AsyncPostgresJobRepository()
    return _job_repo
