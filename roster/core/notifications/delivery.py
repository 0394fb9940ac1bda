# roster/core/notifications/delivery.py
"""
Batched multi-channel delivery pipeline.

Fans a notification out to N recipients without exceeding provider
throughput, and without one bad recipient failing the run:

- payloads are split per channel into fixed-size chunks
  (``DeliveryConfig.batch_size(channel)``);
- the SMS and email lanes run side by side, each processing its chunks
  in order with ``inter_batch_delay`` seconds between chunks;
- inside an SMS chunk every recipient is sent concurrently, an email
  chunk goes out as one ``send_batch`` call with per-item results;
- a failed send is captured to the error sink and counted, never
  retried here and never raised to the caller;
- a successful send appends a NotificationRecord and, when the payload
  asks for it, updates the call-sheet member's status and ``sent_at``.

The result is a ``DeliverySummary`` ("sent to K of N").
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Iterator, Optional, Sequence, TypeVar

from roster.core.notifications.domain import MemberStatus, NotificationRecord
from roster.core.notifications.first_contact import FirstContactDetector
from roster.core.notifications.payloads import (
    Channel,
    DeliveryConfig,
    DeliveryResult,
    DeliverySummary,
    EmailPayload,
    EmailResult,
    Payload,
    SmsPayload,
)
from roster.core.ports import (
    AsyncCallSheetRepository,
    AsyncNotificationLog,
    EmailSender,
    ErrorSink,
    SmsSender,
)
from roster.infra.logging_config import get_logger, mask_address
from roster.infra.metrics import AppMetrics

logger = get_logger(__name__)

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchedDeliveryPipeline:
    def __init__(
        self,
        sms: SmsSender,
        email: EmailSender,
        log: AsyncNotificationLog,
        config: DeliveryConfig,
        *,
        tracker: ErrorSink,
        members: Optional[AsyncCallSheetRepository] = None,
        first_contact: Optional[FirstContactDetector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._sms = sms
        self._email = email
        self._log = log
        self._config = config
        self._tracker = tracker
        self._members = members
        self._first_contact = first_contact
        self._sleep = sleep
        self._clock = clock

    @property
    def config(self) -> DeliveryConfig:
        return self._config

    async def deliver(
        self,
        payloads: Iterable[Payload],
        *,
        first_contact: bool = False,
    ) -> DeliverySummary:
        """
        Send every payload. Never raises for a per-recipient failure.

        Args:
            payloads: SmsPayload / EmailPayload items, in send order
            first_contact: attach the one-time contact card to SMS
                recipients that have never been contacted before
        """
        sms_items: list[SmsPayload] = []
        email_items: list[EmailPayload] = []
        for payload in payloads:
            if isinstance(payload, SmsPayload):
                sms_items.append(payload)
            elif isinstance(payload, EmailPayload):
                email_items.append(payload)
            else:
                raise TypeError(f"Unsupported payload type: {type(payload).__name__}")

        summary = DeliverySummary()
        await asyncio.gather(
            self._sms_lane(sms_items, summary, first_contact),
            self._email_lane(email_items, summary),
        )

        logger.info(
            f"Delivery finished: {summary.report()} "
            f"(sms {summary.sms.succeeded}/{summary.sms.attempted}, "
            f"email {summary.email.succeeded}/{summary.email.attempted})"
        )
        return summary

    # ------------------------------------------------------------------
    # Lanes
    # ------------------------------------------------------------------

    async def _sms_lane(
        self, items: list[SmsPayload], summary: DeliverySummary, first_contact: bool,
    ) -> None:
        for index, chunk in enumerate(chunked(items, self._config.batch_size(Channel.SMS))):
            if index:
                await self._sleep(self._config.inter_batch_delay)
            with AppMetrics.track_batch_time(Channel.SMS.value):
                results = await asyncio.gather(
                    *(self._send_sms(payload, first_contact) for payload in chunk)
                )
            for result in results:
                self._tally(summary, Channel.SMS, result)

    async def _email_lane(self, items: list[EmailPayload], summary: DeliverySummary) -> None:
        for index, chunk in enumerate(chunked(items, self._config.batch_size(Channel.EMAIL))):
            if index:
                await self._sleep(self._config.inter_batch_delay)
            with AppMetrics.track_batch_time(Channel.EMAIL.value):
                results = await self._send_email_chunk(chunk)
            for result in results:
                self._tally(summary, Channel.EMAIL, result)

    # ------------------------------------------------------------------
    # Per-recipient sends
    # ------------------------------------------------------------------

    async def _send_sms(self, payload: SmsPayload, first_contact: bool) -> DeliveryResult:
        try:
            if first_contact and self._first_contact is not None:
                payload = await self._first_contact.prepare(payload)
            external_id = await self._sms.send(
                payload.to,
                payload.body,
                status_callback=payload.status_callback,
                media_urls=list(payload.media_urls) or None,
            )
        except Exception as exc:
            self._capture(exc, payload)
            return DeliveryResult(payload=payload, ok=False, error=str(exc))

        await self._record_success(payload, external_id)
        return DeliveryResult(payload=payload, ok=True, external_id=external_id)

    async def _send_email_chunk(self, chunk: Sequence[EmailPayload]) -> list[DeliveryResult]:
        try:
            outcomes: list[EmailResult] = await self._email.send_batch(chunk)
        except Exception as exc:
            for payload in chunk:
                self._capture(exc, payload)
            return [DeliveryResult(payload=p, ok=False, error=str(exc)) for p in chunk]

        results: list[DeliveryResult] = []
        for position, payload in enumerate(chunk):
            outcome = outcomes[position] if position < len(outcomes) else None
            if outcome is None or not outcome.ok:
                error = outcome.error if outcome else "no result returned by email sender"
                self._capture(RuntimeError(error or "email rejected"), payload)
                results.append(DeliveryResult(payload=payload, ok=False, error=error))
                continue
            await self._record_success(payload, outcome.message_id)
            results.append(DeliveryResult(payload=payload, ok=True, external_id=outcome.message_id))
        return results

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _record_success(self, payload: Payload, external_id: str | None) -> None:
        """The message is out: record it. A bookkeeping failure does not undo the send."""
        ref = payload.ref
        record = NotificationRecord(
            type=payload.record_type,
            company_id=ref.company_id,
            call_sheet_id=ref.call_sheet_id,
            member_id=ref.member_id,
            attempt_id=ref.attempt_id,
            recipient_address=payload.to,
            content=payload.body,
            external_id=external_id,
            idempotency_key=payload.idempotency_key,
        )
        try:
            written = await self._log.append(record)
            if not written:
                logger.info(f"Notification record already present: key={payload.idempotency_key}")

            if payload.mark_status and ref.member_id and self._members is not None:
                await self._members.update_member_status(
                    ref.member_id, MemberStatus(payload.mark_status), sent_at=self._clock(),
                )
        except Exception as exc:
            logger.error(
                f"Post-send bookkeeping failed for {mask_address(payload.to)}: {exc}",
                exc_info=True,
            )
            self._tracker.capture(exc, stage="record", channel=payload.channel.value)

    def _capture(self, exc: BaseException, payload: Payload) -> None:
        ref = payload.ref
        logger.warning(
            f"{payload.channel.value} send failed to {mask_address(payload.to)}: "
            f"{exc.__class__.__name__}: {exc}"
        )
        self._tracker.capture(
            exc,
            stage="send",
            channel=payload.channel.value,
            recipient=mask_address(payload.to),
            **{k: v for k, v in {
                "call_sheet_id": ref.call_sheet_id,
                "member_id": ref.member_id,
                "attempt_id": ref.attempt_id,
            }.items() if v is not None},
        )

    @staticmethod
    def _tally(summary: DeliverySummary, channel: Channel, result: DeliveryResult) -> None:
        counts = summary.for_channel(channel)
        counts.attempted += 1
        if result.ok:
            counts.succeeded += 1
        else:
            counts.failed += 1
        summary.results.append(result)
        AppMetrics.delivery(channel.value, "sent" if result.ok else "failed")
