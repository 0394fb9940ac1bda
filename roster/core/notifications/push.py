# roster/core/notifications/push.py
"""
Push/Reset coordinator.

Applying a push stores it as the call sheet's only push (replacing any
previous one) and schedules the notification job. When the job runs:

- ``notify=True``: every member with a phone gets an SMS. Members who
  were already sent a call card get the "ALL CALLS PUSHED BY ..." text;
  members still `pending` get a normal call card with the shifted time.
  Each success logs ``call_card_push_sent`` and marks the member
  `sent-call-card`. First contacts get the contact card attached.
- ``notify=False``: no message is sent; every member's status goes back
  to `pending`. Running it twice leaves the same state.

A job whose push has since been replaced does nothing.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Optional

from roster.core.errors import NotFoundError, ValidationError
from roster.core.notifications.call_cards import call_card_sms_text, member_call_time
from roster.core.notifications.call_times import describe_push
from roster.core.notifications.delivery import BatchedDeliveryPipeline
from roster.core.notifications.domain import CallCardPush, CallSheet, CallSheetMember, MemberStatus
from roster.core.notifications.payloads import (
    DeliverySummary,
    NotificationType,
    RecipientRef,
    SmsPayload,
)
from roster.core.ports import AsyncCallSheetRepository, JobQueue
from roster.infra.audit_log import audit_event
from roster.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)

JOB_PUSH_CALL_NOTIFICATION = "call_sheet.push_call_notification"


def pushed_text(member: CallSheetMember, push: CallCardPush, site_url: str) -> str:
    return (
        f"Hey {member.name}, ALL CALLS PUSHED BY {describe_push(push.hours, push.minutes)}\n\n"
        f"--\nClick here to confirm update:\n{site_url}/call/{member.short_id}"
    )


@dataclass
class PushOutcome:
    push_id: str
    notified: bool
    superseded: bool = False
    reset_count: int = 0
    summary: DeliverySummary = field(default_factory=DeliverySummary)


class PushResetCoordinator:
    def __init__(
        self,
        call_sheets: AsyncCallSheetRepository,
        pipeline: BatchedDeliveryPipeline,
        queue: JobQueue,
        *,
        site_url: str,
        status_callback_url: Optional[str] = None,
    ):
        self._call_sheets = call_sheets
        self._pipeline = pipeline
        self._queue = queue
        self._site_url = site_url.rstrip("/")
        self._status_callback_url = status_callback_url

    async def apply_push(
        self,
        call_sheet_id: str,
        *,
        hours: int = 0,
        minutes: int = 0,
        notify: bool = True,
        pushed_by: Optional[str] = None,
        document_ref: Optional[str] = None,
    ) -> CallCardPush:
        """Store the push (replacing the previous one) and schedule its notification job."""
        if hours < 0 or minutes < 0 or minutes > 59:
            raise ValidationError("hours must be >= 0 and minutes within 0-59")

        sheet = await self._call_sheets.get_call_sheet(call_sheet_id)
        if sheet is None:
            raise NotFoundError(f"Call sheet {call_sheet_id} not found")

        push = await self._call_sheets.replace_push(CallCardPush(
            id=str(uuid.uuid4()),
            call_sheet_id=sheet.id,
            hours=hours,
            minutes=minutes,
            notify=notify,
            pushed_by=pushed_by,
            document_ref=document_ref,
        ))
        await self._queue.enqueue(
            JOB_PUSH_CALL_NOTIFICATION,
            {"call_sheet_id": sheet.id, "push_id": push.id},
            dedupe_key=f"push:{push.id}",
        )
        audit_event(
            "call_sheet.push",
            company_id=sheet.company_id,
            entity=f"call_sheet:{sheet.id}",
            detail=f"hours={hours} minutes={minutes} notify={notify}",
        )
        return push

    async def run(self, call_sheet_id: str, push_id: str) -> PushOutcome:
        """Execute the notification (or reset) for the call sheet's current push."""
        sheet = await self._call_sheets.get_call_sheet(call_sheet_id)
        if sheet is None:
            raise NotFoundError(f"Call sheet {call_sheet_id} not found")
        log = LogContext(logger, company_id=sheet.company_id, call_sheet_id=sheet.id)

        push = await self._call_sheets.get_push(sheet.id)
        if push is None or push.id != push_id:
            log.info(f"Push {push_id} was replaced, nothing to do")
            return PushOutcome(push_id=push_id, notified=False, superseded=True)

        if not push.notify:
            count = await self._call_sheets.reset_statuses(sheet.id)
            log.info(f"Push {push.id} without notify: reset {count} member statuses to pending")
            return PushOutcome(push_id=push.id, notified=False, reset_count=count)

        members = await self._call_sheets.list_members(sheet.id)
        payloads = [self._payload(sheet, member, push) for member in members if member.phone]
        summary = await self._pipeline.deliver(payloads, first_contact=True)
        log.info(f"Push {push.id} notification {summary.report()}")
        return PushOutcome(push_id=push.id, notified=True, summary=summary)

    def _payload(self, sheet: CallSheet, member: CallSheetMember, push: CallCardPush) -> SmsPayload:
        if member.status != MemberStatus.PENDING:
            body = pushed_text(member, push, self._site_url)
        else:
            call_time = member_call_time(member, sheet, push)
            body = call_card_sms_text(member, sheet, call_time, self._site_url)

        callback = (
            f"{self._status_callback_url}?member_id={member.id}"
            if self._status_callback_url else None
        )
        return SmsPayload(
            to=member.phone,
            body=body,
            status_callback=callback,
            record_type=NotificationType.CALL_CARD_PUSH_SENT,
            ref=RecipientRef(company_id=sheet.company_id, call_sheet_id=sheet.id, member_id=member.id),
            idempotency_key=f"push:{push.id}:{member.id}",
            mark_status=MemberStatus.SENT_CALL_CARD.value,
        )
