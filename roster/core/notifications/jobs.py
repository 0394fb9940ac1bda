# roster/core/notifications/jobs.py
"""
Call-sheet job handlers.

- ``call_sheet.call_cards``: bulk / single / custom call-card runs.
  The job id doubles as the run id in per-recipient idempotency keys,
  so a retried job does not log the same send twice.
- ``call_sheet.push_call_notification``: push notification or reset.
"""
from __future__ import annotations

from roster.core.errors import NonRetriableError, NotFoundError, ValidationError
from roster.core.notifications.call_cards import CallCardService
from roster.core.notifications.push import JOB_PUSH_CALL_NOTIFICATION, PushResetCoordinator
from roster.infra.job_worker import JobWorker
from roster.infra.pg_job_repo_async import Job

JOB_CALL_CARDS = "call_sheet.call_cards"


class NotificationJobHandlers:
    def __init__(self, call_cards: CallCardService, push: PushResetCoordinator):
        self._call_cards = call_cards
        self._push = push

    def register(self, worker: JobWorker) -> None:
        worker.register(JOB_CALL_CARDS, self.call_cards)
        worker.register(JOB_PUSH_CALL_NOTIFICATION, self.push_call_notification)

    async def call_cards(self, job: Job) -> None:
        payload = job.payload
        mode = payload.get("mode", "bulk")
        try:
            if mode == "bulk":
                await self._call_cards.send_bulk(payload["call_sheet_id"], run_id=job.id)
            elif mode == "single":
                await self._call_cards.send_single(payload["member_id"], run_id=job.id)
            elif mode == "custom":
                await self._call_cards.send_custom(
                    payload["call_sheet_id"],
                    payload.get("member_ids", []),
                    payload["body"],
                    subject=payload.get("subject"),
                    run_id=job.id,
                )
            else:
                raise NonRetriableError(f"Unknown call card mode: {mode}", entity=f"job:{job.id}")
        except (NotFoundError, ValidationError) as exc:
            entity = payload.get("call_sheet_id") or payload.get("member_id")
            raise NonRetriableError(exc.detail, entity=f"call_sheet:{entity}") from exc

    async def push_call_notification(self, job: Job) -> None:
        call_sheet_id = job.payload["call_sheet_id"]
        try:
            await self._push.run(call_sheet_id, job.payload["push_id"])
        except NotFoundError as exc:
            raise NonRetriableError(exc.detail, entity=f"call_sheet:{call_sheet_id}") from exc
