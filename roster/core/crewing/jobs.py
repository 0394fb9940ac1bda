# roster/core/crewing/jobs.py
"""
Crewing job handlers.

Each workflow step runs as a job on the durable queue:

- ``crewing.contact_attempt``: Create + Send + schedule the deadline
  wake-up. Enqueued with max_attempts=1 (outreach is at-most-once) and
  throttled per job type.
- ``crewing.contact_attempt_deadline``: the wake-up itself.
- ``crewing.contact_attempt_queue``: run the queue advancer.
- ``crewing.contact_attempt_response``: classify an inbound reply.

A vanished position / candidate / attempt is non-retriable: the worker
fails the job at once and sends one operational alert.
"""
from __future__ import annotations

from datetime import datetime

from roster.core.crewing.contact_attempt import (
    JOB_CONTACT_ATTEMPT,
    JOB_CONTACT_ATTEMPT_DEADLINE,
    JOB_CONTACT_ATTEMPT_QUEUE,
    JOB_CONTACT_ATTEMPT_RESPONSE,
    ContactAttemptService,
)
from roster.core.crewing.queue_advancer import PositionQueueAdvancer
from roster.core.errors import ConflictError, NonRetriableError, NotFoundError
from roster.infra.job_worker import JobWorker
from roster.infra.logging_config import get_logger
from roster.infra.pg_job_repo_async import Job

logger = get_logger(__name__)


class CrewingJobHandlers:
    def __init__(self, attempts: ContactAttemptService, advancer: PositionQueueAdvancer):
        self._attempts = attempts
        self._advancer = advancer

    def register(self, worker: JobWorker, *, throttle_seconds: float | None = None) -> None:
        worker.register(JOB_CONTACT_ATTEMPT, self.contact_attempt, throttle_seconds=throttle_seconds)
        worker.register(JOB_CONTACT_ATTEMPT_DEADLINE, self.deadline)
        worker.register(JOB_CONTACT_ATTEMPT_QUEUE, self.queue)
        worker.register(JOB_CONTACT_ATTEMPT_RESPONSE, self.response)

    async def contact_attempt(self, job: Job) -> None:
        payload = job.payload
        deadline = payload.get("response_deadline")
        try:
            await self._attempts.start(
                int(payload["position_id"]),
                int(payload["candidate_id"]),
                datetime.fromisoformat(deadline) if deadline else None,
            )
        except ConflictError as exc:
            logger.warning(f"Contact attempt skipped: {exc.detail}")
        except NotFoundError as exc:
            raise NonRetriableError(exc.detail, entity=f"position:{payload.get('position_id')}") from exc

    async def deadline(self, job: Job) -> None:
        attempt_id = int(job.payload["attempt_id"])
        try:
            await self._attempts.on_deadline(attempt_id)
        except NotFoundError as exc:
            raise NonRetriableError(exc.detail, entity=f"attempt:{attempt_id}") from exc

    async def queue(self, job: Job) -> None:
        position_id = int(job.payload["position_id"])
        try:
            await self._advancer.advance(position_id)
        except NotFoundError as exc:
            raise NonRetriableError(exc.detail, entity=f"position:{position_id}") from exc

    async def response(self, job: Job) -> None:
        payload = job.payload
        try:
            await self._attempts.handle_reply(
                payload["from"], payload.get("body", ""), message_sid=payload.get("message_sid"),
            )
        except NotFoundError as exc:
            raise NonRetriableError(exc.detail, entity=f"reply:{payload.get('message_sid')}") from exc
