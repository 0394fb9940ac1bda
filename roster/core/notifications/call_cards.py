# roster/core/notifications/call_cards.py
"""
Call-card sends.

A call card tells a crew member their (push-adjusted) call time and
links to the confirmation page. Three entry points reuse the delivery
pipeline directly, without the crewing state machine:

- ``send_bulk``: every `pending` member of a call sheet
- ``send_single``: one member, regardless of status
- ``send_custom``: free-text message to selected members, no status change

Delivery-status callbacks from the SMS provider are folded back in by
``record_delivery_status``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from roster.core.errors import NotFoundError, ValidationError
from roster.core.notifications.call_times import (
    adjust_call_time,
    format_call_time,
    format_full_date,
)
from roster.core.notifications.delivery import BatchedDeliveryPipeline
from roster.core.notifications.domain import (
    CallCardPush,
    CallSheet,
    CallSheetMember,
    MemberStatus,
    NotificationRecord,
)
from roster.core.notifications.payloads import (
    DeliverySummary,
    EmailPayload,
    NotificationType,
    Payload,
    RecipientRef,
    SmsPayload,
)
from roster.core.ports import AsyncCallSheetRepository, AsyncNotificationLog
from roster.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)

AlertSink = Callable[[str], Awaitable[bool]]

# Provider statuses that settle a call card; queued/sending/sent are interim
_FINAL_SMS_STATUSES = {
    "delivered": (NotificationType.CALL_CARD_DELIVERED, MemberStatus.SMS_DELIVERED),
    "undelivered": (NotificationType.CALL_CARD_FAILED, MemberStatus.SMS_FAILED),
    "failed": (NotificationType.CALL_CARD_FAILED, MemberStatus.SMS_FAILED),
}

# Custom messages are logged but never move the member's call-card status
_FINAL_MESSAGE_STATUSES = {
    "delivered": (NotificationType.MESSAGE_DELIVERED, None),
    "undelivered": (NotificationType.MESSAGE_FAILED, None),
    "failed": (NotificationType.MESSAGE_FAILED, None),
}

STATUS_KIND_CALL_CARD = "call_card"
STATUS_KIND_MESSAGE = "message"


def call_card_sms_text(member: CallSheetMember, sheet: CallSheet, call_time: str, site_url: str) -> str:
    return (
        f"Hey {member.name}, your call time for {sheet.job_name} is {call_time} "
        f"on {format_full_date(sheet.full_date)}.\n\n"
        f"View details and confirm: {site_url}/c/{member.short_id}\n"
    )


def call_card_email_text(member: CallSheetMember, sheet: CallSheet, call_time: str, site_url: str) -> str:
    return (
        f"Hi {member.name},\n\n"
        f"Your call time for {sheet.job_name} is {call_time} on {format_full_date(sheet.full_date)}.\n\n"
        f"View details and confirm: {site_url}/c/{member.short_id}\n\n"
        f"- {sheet.company_name}\n"
    )


def custom_message_text(member: CallSheetMember, body: str, site_url: str) -> str:
    text = f"{body.strip()}\n\nView details: {site_url}/c/{member.short_id}"
    return re.sub(r"[ \t]+", " ", text).strip()


def member_call_time(member: CallSheetMember, sheet: CallSheet, push: Optional[CallCardPush]) -> str:
    formatted = format_call_time(member.call_time, sheet.general_crew_call)
    if push is None:
        return formatted
    return adjust_call_time(formatted, push.hours, push.minutes)


@dataclass
class DeliveryStatusOutcome:
    recorded: bool
    member_status: Optional[MemberStatus] = None


class CallCardService:
    def __init__(
        self,
        call_sheets: AsyncCallSheetRepository,
        log: AsyncNotificationLog,
        pipeline: BatchedDeliveryPipeline,
        *,
        site_url: str,
        status_callback_url: Optional[str] = None,
        alert: Optional[AlertSink] = None,
    ):
        self._call_sheets = call_sheets
        self._log = log
        self._pipeline = pipeline
        self._site_url = site_url.rstrip("/")
        self._status_callback_url = status_callback_url
        self._alert = alert

    def status_callback_for(
        self, member: CallSheetMember, kind: str = STATUS_KIND_CALL_CARD,
    ) -> Optional[str]:
        if not self._status_callback_url:
            return None
        url = f"{self._status_callback_url}?member_id={member.id}"
        if kind != STATUS_KIND_CALL_CARD:
            url += f"&kind={kind}"
        return url

    async def _load_sheet(self, call_sheet_id: str) -> CallSheet:
        sheet = await self._call_sheets.get_call_sheet(call_sheet_id)
        if sheet is None:
            raise NotFoundError(f"Call sheet {call_sheet_id} not found")
        return sheet

    def _call_card_payloads(
        self,
        sheet: CallSheet,
        members: Iterable[CallSheetMember],
        push: Optional[CallCardPush],
        run_id: str,
    ) -> list[Payload]:
        payloads: list[Payload] = []
        for member in members:
            call_time = member_call_time(member, sheet, push)
            ref = RecipientRef(
                company_id=sheet.company_id, call_sheet_id=sheet.id, member_id=member.id,
            )
            if member.phone:
                payloads.append(SmsPayload(
                    to=member.phone,
                    body=call_card_sms_text(member, sheet, call_time, self._site_url),
                    status_callback=self.status_callback_for(member),
                    record_type=NotificationType.CALL_CARD_SENT,
                    ref=ref,
                    idempotency_key=f"callcard:{run_id}:{member.id}:sms",
                    mark_status=MemberStatus.SENT_CALL_CARD.value,
                ))
            if member.email:
                payloads.append(EmailPayload(
                    to=member.email,
                    subject=f"Your call time for {sheet.job_name}",
                    body=call_card_email_text(member, sheet, call_time, self._site_url),
                    tags=(
                        f"member:{member.id}",
                        "type:call_card_email",
                        f"company:{sheet.company_id}",
                        f"call_sheet:{sheet.id}",
                    ),
                    record_type=NotificationType.CALL_CARD_EMAIL_SENT,
                    ref=ref,
                    idempotency_key=f"callcard:{run_id}:{member.id}:email",
                    mark_status=MemberStatus.SENT_CALL_CARD.value,
                ))
        return payloads

    async def send_bulk(self, call_sheet_id: str, *, run_id: str) -> DeliverySummary:
        """Send call cards to every member still `pending`."""
        sheet = await self._load_sheet(call_sheet_id)
        log = LogContext(logger, company_id=sheet.company_id, call_sheet_id=sheet.id)

        members = await self._call_sheets.list_members(sheet.id, statuses=[MemberStatus.PENDING])
        push = await self._call_sheets.get_push(sheet.id)
        payloads = self._call_card_payloads(sheet, members, push, run_id)

        log.info(f"Sending call cards: members={len(members)}, messages={len(payloads)}")
        summary = await self._pipeline.deliver(payloads, first_contact=True)
        log.info(f"Call cards {summary.report()}")

        await self._notify_ops(sheet, summary)
        return summary

    async def send_single(self, member_id: str, *, run_id: str) -> DeliverySummary:
        """(Re)send one member's call card, whatever their current status."""
        member = await self._call_sheets.get_member(member_id)
        if member is None:
            raise NotFoundError(f"Call sheet member {member_id} not found")
        sheet = await self._load_sheet(member.call_sheet_id)
        push = await self._call_sheets.get_push(sheet.id)

        payloads = self._call_card_payloads(sheet, [member], push, run_id)
        if not payloads:
            raise ValidationError(f"Member {member_id} has neither phone nor email")

        summary = await self._pipeline.deliver(payloads, first_contact=True)
        await self._notify_ops(sheet, summary)
        return summary

    async def send_custom(
        self,
        call_sheet_id: str,
        member_ids: Iterable[str],
        body: str,
        *,
        run_id: str,
        subject: Optional[str] = None,
    ) -> DeliverySummary:
        """Free-text message to selected members. Member statuses are left alone."""
        if not body.strip():
            raise ValidationError("Message body is empty")

        sheet = await self._load_sheet(call_sheet_id)
        wanted = set(member_ids)
        members = [m for m in await self._call_sheets.list_members(sheet.id) if m.id in wanted]

        payloads: list[Payload] = []
        for member in members:
            ref = RecipientRef(company_id=sheet.company_id, call_sheet_id=sheet.id, member_id=member.id)
            text = custom_message_text(member, body, self._site_url)
            if member.phone:
                payloads.append(SmsPayload(
                    to=member.phone,
                    body=text,
                    status_callback=self.status_callback_for(member, STATUS_KIND_MESSAGE),
                    record_type=NotificationType.MESSAGE,
                    ref=ref,
                    idempotency_key=f"custom:{run_id}:{member.id}:sms",
                ))
            if member.email:
                payloads.append(EmailPayload(
                    to=member.email,
                    subject=subject or f"New message from {sheet.job_name}",
                    body=text,
                    tags=(f"member:{member.id}", "type:message_email", f"call_sheet:{sheet.id}"),
                    record_type=NotificationType.MESSAGE_EMAIL,
                    ref=ref,
                    idempotency_key=f"custom:{run_id}:{member.id}:email",
                ))

        summary = await self._pipeline.deliver(payloads, first_contact=True)
        LogContext(logger, call_sheet_id=sheet.id).info(f"Custom message {summary.report()}")
        return summary

    async def record_delivery_status(
        self,
        member_id: str,
        message_sid: str,
        message_status: str,
        kind: str = STATUS_KIND_CALL_CARD,
    ) -> DeliveryStatusOutcome:
        """Fold a provider status callback into the log and, for call cards, the member's status."""
        statuses = _FINAL_MESSAGE_STATUSES if kind == STATUS_KIND_MESSAGE else _FINAL_SMS_STATUSES
        final = statuses.get((message_status or "").lower())
        if final is None:
            return DeliveryStatusOutcome(recorded=False)

        member = await self._call_sheets.get_member(member_id)
        if member is None:
            raise NotFoundError(f"Call sheet member {member_id} not found")
        sheet = await self._load_sheet(member.call_sheet_id)

        record_type, member_status = final
        written = await self._log.append(NotificationRecord(
            type=record_type,
            company_id=sheet.company_id,
            call_sheet_id=sheet.id,
            member_id=member.id,
            recipient_address=member.phone,
            external_id=message_sid,
            idempotency_key=f"status:{message_sid}:{message_status.lower()}",
        ))
        if not written:
            return DeliveryStatusOutcome(recorded=False)
        if member_status is None:
            return DeliveryStatusOutcome(recorded=True)

        # A confirmation outranks any later delivery receipt
        if member.status != MemberStatus.CONFIRMED:
            await self._call_sheets.update_member_status(member.id, member_status)
        return DeliveryStatusOutcome(recorded=True, member_status=member_status)

    async def activity(self, call_sheet_id: str, limit: int = 50) -> list[NotificationRecord]:
        """Recent notification records for a call sheet, newest first."""
        await self._load_sheet(call_sheet_id)
        return await self._log.recent_for_call_sheet(call_sheet_id, limit)

    async def _notify_ops(self, sheet: CallSheet, summary: DeliverySummary) -> None:
        if self._alert is None or not summary.attempted:
            return
        await self._alert(
            f"Org `{sheet.company_name}` sent {summary.succeeded} call cards "
            f"from callsheet `{sheet.job_name}` ({summary.report()})"
        )
