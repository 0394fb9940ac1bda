# roster/core/crewing/queue_advancer.py
"""
Position queue advancer.

Given a position, starts an attempt for the next untried candidate in
ascending priority. Before that it checks, in order:

1. the position is still `open` (closed/completed positions never get
   new attempts; in-flight attempts run to completion on their own);
2. confirmed attempts have not already met the required quantity, in
   which case the position moves `open → completed`;
3. no attempt for the position is active, so attempts never overlap.

When every candidate has been tried the position keeps its
hiring_status: it stays visibly understaffed, which is not an error.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from roster.core.crewing.contact_attempt import JOB_CONTACT_ATTEMPT, JOB_CONTACT_ATTEMPT_QUEUE
from roster.core.crewing.domain import Candidate, HiringStatus
from roster.core.errors import NotFoundError, ValidationError
from roster.core.ports import AsyncCrewingRepository, JobQueue
from roster.infra.audit_log import audit_event
from roster.infra.logging_config import LogContext, get_logger
from roster.infra.metrics import AppMetrics

logger = get_logger(__name__)


class AdvanceResult(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    NOT_OPEN = "not_open"
    BUSY = "busy"
    EXHAUSTED = "exhausted"


@dataclass
class AdvanceOutcome:
    result: AdvanceResult
    candidate_id: Optional[int] = None
    job_id: Optional[str] = None


def next_candidate(candidates: Iterable[Candidate]) -> Optional[Candidate]:
    """First candidate by (priority, id) that has never been attempted."""
    for candidate in sorted(candidates, key=lambda c: (c.priority, c.id)):
        if candidate.attempt_count == 0:
            return candidate
    return None


class PositionQueueAdvancer:
    def __init__(self, repo: AsyncCrewingRepository, queue: JobQueue):
        self._repo = repo
        self._queue = queue

    async def request(self, position_id: int) -> str:
        """Schedule an advance (used to start filling a position)."""
        return await self._queue.enqueue(JOB_CONTACT_ATTEMPT_QUEUE, {"position_id": position_id})

    async def fill(self, position_id: int, *, requested_by: Optional[str] = None) -> str:
        """Operator entry point: start working through an open position's candidate queue."""
        position = await self._repo.get_position(position_id)
        if position is None:
            raise NotFoundError(f"Position {position_id} not found")
        if position.hiring_status != HiringStatus.OPEN:
            raise ValidationError(f"Position {position_id} is {position.hiring_status.value}")

        job_id = await self.request(position.id)
        audit_event(
            "position.fill",
            company_id=position.company_id,
            entity=f"position:{position.id}",
            detail=f"quantity={position.quantity} by={requested_by or '-'}",
        )
        return job_id

    async def advance(self, position_id: int) -> AdvanceOutcome:
        position = await self._repo.get_position(position_id)
        if position is None:
            raise NotFoundError(f"Position {position_id} not found")
        ctx = LogContext(logger, company_id=position.company_id, position_id=str(position.id))

        if position.hiring_status != HiringStatus.OPEN:
            ctx.info(f"Position is {position.hiring_status.value}, not advancing")
            return AdvanceOutcome(AdvanceResult.NOT_OPEN)

        confirmed = await self._repo.count_confirmed(position.id)
        if confirmed >= position.quantity:
            if await self._repo.set_hiring_status(position.id, HiringStatus.OPEN, HiringStatus.COMPLETED):
                AppMetrics.position_completed()
                ctx.info(f"Position filled ({confirmed}/{position.quantity}), marked completed")
            return AdvanceOutcome(AdvanceResult.COMPLETED)

        if await self._repo.has_active_attempt(position.id):
            ctx.info("An attempt is already in flight")
            return AdvanceOutcome(AdvanceResult.BUSY)

        candidate = next_candidate(await self._repo.list_candidates(position.id))
        if candidate is None:
            AppMetrics.position_queue_exhausted()
            ctx.warning(
                f"Candidate queue exhausted with {confirmed}/{position.quantity} confirmed"
            )
            return AdvanceOutcome(AdvanceResult.EXHAUSTED)

        job_id = await self._queue.enqueue(
            JOB_CONTACT_ATTEMPT,
            {"position_id": position.id, "candidate_id": candidate.id},
            max_attempts=1,
            dedupe_key=f"position:{position.id}:candidate:{candidate.id}",
        )
        ctx.info(f"Next candidate {candidate.id} (priority {candidate.priority}) queued for contact")
        return AdvanceOutcome(AdvanceResult.STARTED, candidate_id=candidate.id, job_id=job_id)
