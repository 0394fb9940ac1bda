# tests/test_job_queue.py
"""
Tests for the DB-backed job queue:
- Job dataclass
- Job repository (pg_job_repo_async.py)
- Job worker dispatch logic (job_worker.py)
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from roster.core.errors import NonRetriableError
from roster.infra.job_worker import JobWorker
from roster.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job, _row_to_job


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_job(
    *,
    job_type: str = "crewing.contact_attempt_queue",
    payload: dict | None = None,
    status: str = "running",
    attempts: int = 0,
    max_attempts: int = 5,
) -> Job:
    return Job(
        id="aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
        job_type=job_type,
        payload=payload or {},
        status=status,
        priority=0,
        attempts=attempts,
        max_attempts=max_attempts,
        error_message=None,
        scheduled_at=datetime.now(timezone.utc),
        created_at=datetime.now(timezone.utc),
        started_at=datetime.now(timezone.utc),
    )


def _make_row(overrides: dict | None = None) -> dict:
    """Create a dict that mimics an asyncpg Record for _row_to_job."""
    now = datetime.now(timezone.utc)
    row = {
        "id": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
        "job_type": "crewing.contact_attempt",
        "payload": '{"position_id": 1, "candidate_id": 11}',
        "status": "pending",
        "priority": 0,
        "attempts": 0,
        "max_attempts": 1,
        "error_message": None,
        "scheduled_at": now,
        "created_at": now,
        "dedupe_key": "position:1:candidate:11",
        "started_at": None,
        "completed_at": None,
    }
    if overrides:
        row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Job Dataclass
# ---------------------------------------------------------------------------

class TestJobDataclass:
    def test_row_to_job_parses_json_string(self):
        job = _row_to_job(_make_row())
        assert job.payload == {"position_id": 1, "candidate_id": 11}
        assert job.dedupe_key == "position:1:candidate:11"
        assert job.status == "pending"

    def test_row_to_job_handles_dict_payload(self):
        """When asyncpg auto-parses JSONB, payload is already a dict."""
        job = _row_to_job(_make_row({"payload": {"key": "value"}}))
        assert job.payload == {"key": "value"}


# ---------------------------------------------------------------------------
# Job Repository
# ---------------------------------------------------------------------------

class TestJobRepository:
    @pytest.mark.asyncio
    async def test_enqueue_returns_uuid(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={"id": "some-uuid-1234"})

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            result = await repo.enqueue(
                "crewing.contact_attempt",
                {"position_id": 1, "candidate_id": 11},
                max_attempts=1,
                dedupe_key="position:1:candidate:11",
            )

        assert result == "some-uuid-1234"
        args = mock_conn.fetchrow.call_args[0]
        assert "INSERT INTO jobs" in args[0]
        assert "ON CONFLICT (dedupe_key) DO NOTHING" in args[0]
        assert json.loads(args[2]) == {"position_id": 1, "candidate_id": 11}
        assert args[4] == 1
        assert args[5] == "position:1:candidate:11"
        mock_conn.fetchval.assert_not_called()

    @pytest.mark.asyncio
    async def test_enqueue_duplicate_returns_existing_id(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        mock_conn.fetchval = AsyncMock(return_value="existing-uuid")

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            result = await repo.enqueue("crewing.contact_attempt_queue", {"position_id": 1}, dedupe_key="k")

        assert result == "existing-uuid"
        assert mock_conn.fetchval.call_args[0][1] == "k"

    @pytest.mark.asyncio
    async def test_enqueue_at_absolute_time(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={"id": "u"})
        run_at = datetime(2026, 3, 1, 16, 0, tzinfo=timezone.utc)

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            await repo.enqueue("crewing.contact_attempt_deadline", {"attempt_id": 5}, run_at=run_at)

        args = mock_conn.fetchrow.call_args[0]
        assert args[6] == run_at
        assert args[7] == 0.0

    @pytest.mark.asyncio
    async def test_claim_batch_returns_jobs(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[_make_row({"status": "running"})])

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            jobs = await repo.claim_batch(batch_size=5)

        assert len(jobs) == 1
        assert jobs[0].status == "running"
        assert "FOR UPDATE SKIP LOCKED" in mock_conn.fetch.call_args[0][0]

    @pytest.mark.asyncio
    async def test_complete_updates_status(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="UPDATE 1")

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            await repo.complete("job-id-123")

        assert "completed" in mock_conn.execute.call_args[0][0]
        assert mock_conn.execute.call_args[0][1] == "job-id-123"

    @pytest.mark.asyncio
    async def test_fail_with_retry(self):
        """When attempts < max_attempts, job should be rescheduled."""
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="UPDATE 1")

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            await repo.fail("job-id-123", "Connection timeout", base_delay=5.0)

        sql_arg = mock_conn.execute.call_args[0][0]
        assert "CASE" in sql_arg
        assert "pending" in sql_arg
        assert "failed" in sql_arg
        assert mock_conn.execute.call_args[0][2] == "Connection timeout"

    @pytest.mark.asyncio
    async def test_defer_does_not_consume_attempt(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="UPDATE 1")

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            await repo.defer("job-id-123", 2.5)

        sql_arg = mock_conn.execute.call_args[0][0]
        assert "attempts" not in sql_arg
        assert mock_conn.execute.call_args[0][2] == 2.5

    @pytest.mark.asyncio
    async def test_cleanup_completed(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="DELETE 5")

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            count = await repo.cleanup_completed(ttl_days=7)

        assert count == 5

    @pytest.mark.asyncio
    async def test_reset_stale_running(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="UPDATE 2")

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            count = await repo.reset_stale_running(timeout_seconds=300)

        assert count == 2

    @pytest.mark.asyncio
    async def test_count_by_status(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[
            {"status": "pending", "cnt": 3},
            {"status": "completed", "cnt": 10},
        ])

        with patch("roster.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            counts = await repo.count_by_status()

        assert counts == {"pending": 3, "completed": 10}


# ---------------------------------------------------------------------------
# Job Worker
# ---------------------------------------------------------------------------

class TestJobWorker:
    def _worker(self, repo=None, **kwargs):
        repo = repo or AsyncMock(spec=AsyncPostgresJobRepository)
        tracker = MagicMock()
        alert = AsyncMock(return_value=True)
        worker = JobWorker(repo=repo, tracker=tracker, alert=alert, **kwargs)
        return worker, repo, tracker, alert

    @pytest.mark.asyncio
    async def test_successful_job_completed(self):
        worker, repo, _, _ = self._worker()
        handler = AsyncMock()
        worker.register("crewing.contact_attempt_queue", handler)
        job = _make_job(payload={"position_id": 1})

        await worker._execute(job)

        handler.assert_awaited_once_with(job)
        repo.complete.assert_awaited_once_with(job.id)

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails_permanently(self):
        worker, repo, _, _ = self._worker()

        await worker._execute(_make_job(job_type="unknown"))

        repo.fail_permanently.assert_awaited_once()
        assert "No handler registered" in repo.fail_permanently.call_args[0][1]

    @pytest.mark.asyncio
    async def test_handler_error_schedules_retry(self):
        worker, repo, tracker, _ = self._worker(base_retry_delay=3.0)
        worker.register("crewing.contact_attempt_queue", AsyncMock(side_effect=ConnectionError("db down")))

        await worker._execute(_make_job(attempts=0, max_attempts=5))

        repo.fail.assert_awaited_once()
        assert repo.fail.call_args[0][1] == "ConnectionError: db down"
        assert repo.fail.call_args[1]["base_delay"] == 3.0
        tracker.capture.assert_not_called()
        repo.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_last_attempt_is_captured(self):
        worker, repo, tracker, _ = self._worker()
        worker.register("crewing.contact_attempt_queue", AsyncMock(side_effect=RuntimeError("boom")))

        await worker._execute(_make_job(attempts=4, max_attempts=5))

        tracker.capture.assert_called_once()

    @pytest.mark.asyncio
    async def test_non_retriable_fails_once_and_alerts(self):
        worker, repo, tracker, alert = self._worker()
        worker.register(
            "crewing.contact_attempt_deadline",
            AsyncMock(side_effect=NonRetriableError("Contact attempt 5 not found", entity="attempt:5")),
        )

        await worker._execute(_make_job(job_type="crewing.contact_attempt_deadline"))

        repo.fail_permanently.assert_awaited_once()
        repo.fail.assert_not_called()
        tracker.capture.assert_called_once()
        alert.assert_awaited_once()
        text = alert.call_args[0][0]
        assert "crewing.contact_attempt_deadline" in text
        assert "attempt:5" in text

    @pytest.mark.asyncio
    async def test_throttled_job_is_deferred(self):
        worker, repo, _, _ = self._worker()
        handler = AsyncMock()
        worker.register("crewing.contact_attempt", handler, throttle_seconds=10)

        await worker._execute(_make_job(job_type="crewing.contact_attempt"))
        await worker._execute(_make_job(job_type="crewing.contact_attempt"))

        assert handler.await_count == 1
        repo.complete.assert_awaited_once()
        repo.defer.assert_awaited_once()
        assert 0 < repo.defer.call_args[0][1] <= 10

    @pytest.mark.asyncio
    async def test_throttle_is_per_job_type(self):
        worker, repo, _, _ = self._worker()
        handler = AsyncMock()
        worker.register("crewing.contact_attempt", handler, throttle_seconds=10)
        worker.register("crewing.contact_attempt_queue", handler)

        await worker._execute(_make_job(job_type="crewing.contact_attempt"))
        await worker._execute(_make_job(job_type="crewing.contact_attempt_queue"))
        await worker._execute(_make_job(job_type="crewing.contact_attempt_queue"))

        assert handler.await_count == 3
        repo.defer.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_once_executes_claimed_batch(self):
        worker, repo, _, _ = self._worker(batch_size=3)
        repo.claim_batch = AsyncMock(return_value=[_make_job(), _make_job()])
        handler = AsyncMock()
        worker.register("crewing.contact_attempt_queue", handler)

        count = await worker.run_once()

        assert count == 2
        repo.claim_batch.assert_awaited_once_with(3)
        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_run_once_empty(self):
        worker, repo, _, _ = self._worker()
        repo.claim_batch = AsyncMock(return_value=[])

        assert await worker.run_once() == 0

    def test_job_types(self):
        worker, _, _, _ = self._worker()
        worker.register("a", AsyncMock())
        worker.register("b", AsyncMock())
        assert worker.job_types == ["a", "b"]
