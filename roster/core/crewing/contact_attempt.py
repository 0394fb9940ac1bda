# roster/core/crewing/contact_attempt.py
"""
Contact-attempt state machine.

    pending ──send ok──▶ contacted ──reply yes──▶ confirmed
                                   ├─reply no───▶ declined
                                   └─deadline───▶ no_response

`pending` and `contacted` are the only non-terminal states. Every
transition is ``UPDATE ... WHERE status = <expected>``; when a reply and
the deadline wake-up race, exactly one update matches.

Outreach is at-most-once: a failed send leaves the attempt `pending`
and nothing retries it automatically. ``resend`` is the explicit way
to try again. A sender first takes the attempt's send claim (a
conditional update), so overlapping sends of one attempt deliver at
most one message; the claim is dropped only when the provider rejects
the send.

The wait for the reply deadline is a job scheduled at
``response_deadline`` on the durable job queue, so it survives
restarts. Queue advancement after declined / no_response is enqueued
with a per-attempt dedupe key, so re-running a step never advances the
queue twice.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from roster.core.crewing.classifier import classify_reply
from roster.core.crewing.domain import (
    AttemptStatus,
    Candidate,
    ContactAttempt,
    OutboundMessage,
    Position,
    ReplyClass,
)
from roster.core.crewing.messages import acknowledgement_text, outreach_subject, outreach_text
from roster.core.errors import NotFoundError
from roster.core.notifications.delivery import BatchedDeliveryPipeline
from roster.core.notifications.domain import NotificationRecord
from roster.core.notifications.payloads import (
    EmailPayload,
    NotificationType,
    Payload,
    RecipientRef,
    SmsPayload,
)
from roster.core.ports import AsyncCrewingRepository, AsyncNotificationLog, ErrorSink, JobQueue
from roster.infra.logging_config import LogContext, get_logger, mask_address
from roster.infra.metrics import AppMetrics

logger = get_logger(__name__)

JOB_CONTACT_ATTEMPT = "crewing.contact_attempt"
JOB_CONTACT_ATTEMPT_DEADLINE = "crewing.contact_attempt_deadline"
JOB_CONTACT_ATTEMPT_QUEUE = "crewing.contact_attempt_queue"
JOB_CONTACT_ATTEMPT_RESPONSE = "crewing.contact_attempt_response"

AlertSink = Callable[[str], Awaitable[bool]]

_REPLY_TARGET = {
    ReplyClass.POSITIVE: AttemptStatus.CONFIRMED,
    ReplyClass.NEGATIVE: AttemptStatus.DECLINED,
}


def new_short_id() -> str:
    return secrets.token_urlsafe(6)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReplyOutcome:
    reply: ReplyClass
    action: str  # unknown | no_message | stale | already_resolved | resolved | lost_race
    attempt_id: Optional[int] = None


class ContactAttemptService:
    def __init__(
        self,
        repo: AsyncCrewingRepository,
        log: AsyncNotificationLog,
        pipeline: BatchedDeliveryPipeline,
        queue: JobQueue,
        *,
        site_url: str,
        response_window: timedelta = timedelta(hours=4),
        tracker: Optional[ErrorSink] = None,
        alert: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = _utcnow,
        short_id_factory: Callable[[], str] = new_short_id,
    ):
        self._repo = repo
        self._log = log
        self._pipeline = pipeline
        self._queue = queue
        self._site_url = site_url.rstrip("/")
        self._response_window = response_window
        self._tracker = tracker
        self._alert = alert
        self._clock = clock
        self._short_id = short_id_factory

    # ------------------------------------------------------------------
    # Create / Send / Suspend
    # ------------------------------------------------------------------

    async def create(
        self, position_id: int, candidate_id: int, response_deadline: datetime,
    ) -> ContactAttempt:
        """Insert a `pending` attempt. Raises ConflictError if the pair already has an active one."""
        attempt = await self._repo.create_attempt(
            position_id, candidate_id, response_deadline, self._short_id(),
        )
        AppMetrics.contact_attempt_created()
        LogContext(logger, position_id=str(position_id), attempt_id=str(attempt.id)).info(
            f"Contact attempt created for candidate {candidate_id}, deadline {response_deadline.isoformat()}"
        )
        return attempt

    async def send(self, attempt: ContactAttempt) -> bool:
        """
        Deliver the outreach message once. On success the attempt becomes
        `contacted` and the outbound message is recorded; on failure it
        stays `pending`. Returns True when the attempt is now `contacted`.
        """
        ctx = LogContext(logger, position_id=str(attempt.position_id), attempt_id=str(attempt.id))
        if attempt.status != AttemptStatus.PENDING:
            ctx.warning(f"Not sending: attempt is {attempt.status.value}")
            return False

        position, candidate = await self._load(attempt)
        payload = self._outreach_payload(attempt, position, candidate)
        if payload is None:
            ctx.warning(f"Candidate {candidate.id} has no phone or email")
            await self._send_failed(attempt, "candidate has no phone or email")
            return False

        if not await self._repo.claim_send(attempt.id):
            ctx.warning("Not sending: another send holds the claim or the attempt left pending")
            return False

        summary = await self._pipeline.deliver([payload], first_contact=True)
        result = summary.results[0]
        if not result.ok:
            await self._repo.release_send_claim(attempt.id)
            await self._send_failed(attempt, result.error or "send failed")
            return False

        won = await self._repo.mark_contacted(attempt.id, OutboundMessage(
            attempt_id=attempt.id,
            channel=payload.channel.value,
            recipient=payload.to,
            external_id=result.external_id,
            source="twilio" if isinstance(payload, SmsPayload) else "smtp",
        ))
        if won:
            ctx.info(f"Candidate contacted via {payload.channel.value} at {mask_address(payload.to)}")
        else:
            ctx.warning("Outreach sent but attempt was no longer pending")
        return won

    async def schedule_deadline(self, attempt: ContactAttempt) -> str:
        """Persist the wake-up at the response deadline."""
        return await self._queue.enqueue(
            JOB_CONTACT_ATTEMPT_DEADLINE,
            {"attempt_id": attempt.id},
            run_at=attempt.response_deadline,
            dedupe_key=f"attempt:{attempt.id}:deadline",
        )

    async def start(
        self,
        position_id: int,
        candidate_id: int,
        response_deadline: Optional[datetime] = None,
    ) -> ContactAttempt:
        """Create + Send, then suspend until the deadline if the send went out."""
        deadline = response_deadline or self._clock() + self._response_window
        attempt = await self.create(position_id, candidate_id, deadline)
        if await self.send(attempt):
            attempt.status = AttemptStatus.CONTACTED
            await self.schedule_deadline(attempt)
        return attempt

    async def resend(self, attempt_id: int) -> bool:
        """Explicit operator retry for an attempt whose send failed."""
        attempt = await self._get(attempt_id)
        if attempt.status != AttemptStatus.PENDING:
            return False
        if await self.send(attempt):
            if attempt.response_deadline <= self._clock():
                # The first response window passed while the attempt sat pending
                attempt.response_deadline = self._clock() + self._response_window
            await self.schedule_deadline(attempt)
            return True
        return False

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def on_deadline(self, attempt_id: int) -> bool:
        """
        Deadline wake-up. Only a still-`contacted` attempt moves to
        `no_response` (and advances the queue); anything else is a no-op.
        """
        attempt = await self._get(attempt_id)
        ctx = LogContext(logger, position_id=str(attempt.position_id), attempt_id=str(attempt.id))

        if attempt.status == AttemptStatus.NO_RESPONSE:
            # Step re-run after the transition committed: finish the advance
            await self._advance(attempt)
            return False
        if attempt.status != AttemptStatus.CONTACTED:
            ctx.info(f"Deadline reached, attempt already {attempt.status.value}")
            return False

        won = await self._repo.transition_attempt(
            attempt.id, AttemptStatus.CONTACTED, AttemptStatus.NO_RESPONSE,
        )
        if not won:
            ctx.info("Deadline lost the race to a reply")
            return False

        AppMetrics.contact_attempt_resolved(AttemptStatus.NO_RESPONSE.value)
        ctx.info("No response before deadline")
        await self._advance(attempt)
        return True

    async def resolve_reply(
        self, attempt: ContactAttempt, reply: ReplyClass, recipient: str,
    ) -> bool:
        """`contacted` → confirmed / declined. Acknowledges the candidate and advances the queue."""
        target = _REPLY_TARGET.get(reply)
        if target is None:
            return False

        won = await self._repo.transition_attempt(attempt.id, AttemptStatus.CONTACTED, target)
        if not won:
            return False

        AppMetrics.contact_attempt_resolved(target.value)
        LogContext(logger, position_id=str(attempt.position_id), attempt_id=str(attempt.id)).info(
            f"Candidate replied: {target.value}"
        )
        await self._advance(attempt)
        await self._acknowledge(attempt, reply, recipient)
        return True

    async def handle_reply(
        self, from_address: str, body: str, *, message_sid: Optional[str] = None,
    ) -> ReplyOutcome:
        """Classify an inbound message and resolve the attempt it answers."""
        reply = classify_reply(body)
        AppMetrics.reply_classified(reply.value)

        if reply is ReplyClass.UNKNOWN:
            logger.info(f"Unrecognised reply from {mask_address(from_address)} ignored")
            return ReplyOutcome(reply=reply, action="unknown")

        message = await self._repo.latest_message_to(from_address)
        if message is None:
            logger.info(f"Reply from {mask_address(from_address)} matches no outreach message")
            return ReplyOutcome(reply=reply, action="no_message")

        attempt = await self._get(message.attempt_id)
        await self._log.append(NotificationRecord(
            type=NotificationType.OUTREACH_REPLY,
            attempt_id=attempt.id,
            recipient_address=from_address,
            content=body,
            external_id=message_sid,
            idempotency_key=f"reply:{message_sid}" if message_sid else None,
        ))

        target = _REPLY_TARGET[reply]
        if attempt.status == target:
            await self._advance(attempt)
            return ReplyOutcome(reply=reply, action="already_resolved", attempt_id=attempt.id)
        if attempt.status != AttemptStatus.CONTACTED:
            logger.info(f"Reply to attempt {attempt.id} ignored: attempt is {attempt.status.value}")
            return ReplyOutcome(reply=reply, action="stale", attempt_id=attempt.id)

        won = await self.resolve_reply(attempt, reply, message.recipient)
        return ReplyOutcome(
            reply=reply, action="resolved" if won else "lost_race", attempt_id=attempt.id,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get(self, attempt_id: int) -> ContactAttempt:
        attempt = await self._repo.get_attempt(attempt_id)
        if attempt is None:
            raise NotFoundError(f"Contact attempt {attempt_id} not found")
        return attempt

    async def _load(self, attempt: ContactAttempt) -> tuple[Position, Candidate]:
        position = await self._repo.get_position(attempt.position_id)
        if position is None:
            raise NotFoundError(f"Position {attempt.position_id} not found")
        candidate = await self._repo.get_candidate(attempt.candidate_id)
        if candidate is None:
            raise NotFoundError(f"Candidate {attempt.candidate_id} not found")
        return position, candidate

    def _outreach_payload(
        self, attempt: ContactAttempt, position: Position, candidate: Candidate,
    ) -> Optional[Payload]:
        body = outreach_text(candidate, position, attempt.short_id, self._site_url)
        ref = RecipientRef(company_id=position.company_id, attempt_id=attempt.id)
        if candidate.phone:
            return SmsPayload(
                to=candidate.phone,
                body=body,
                record_type=NotificationType.OUTREACH_SENT,
                ref=ref,
                idempotency_key=f"attempt:{attempt.id}:outreach",
            )
        if candidate.email:
            return EmailPayload(
                to=candidate.email,
                subject=outreach_subject(position),
                body=body,
                tags=(f"attempt:{attempt.id}", "type:outreach"),
                record_type=NotificationType.OUTREACH_EMAIL_SENT,
                ref=ref,
                idempotency_key=f"attempt:{attempt.id}:outreach",
            )
        return None

    async def _send_failed(self, attempt: ContactAttempt, reason: str) -> None:
        AppMetrics.contact_attempt_send_failed()
        LogContext(logger, position_id=str(attempt.position_id), attempt_id=str(attempt.id)).warning(
            f"Outreach not delivered, attempt left pending: {reason}"
        )
        if self._alert is not None:
            await self._alert(
                f"Outreach for position {attempt.position_id} (attempt {attempt.id}) was not delivered: "
                f"{reason}. The attempt stays pending until it is resent."
            )

    async def _advance(self, attempt: ContactAttempt) -> str:
        return await self._queue.enqueue(
            JOB_CONTACT_ATTEMPT_QUEUE,
            {"position_id": attempt.position_id},
            dedupe_key=f"attempt:{attempt.id}:advance",
        )

    async def _acknowledge(self, attempt: ContactAttempt, reply: ReplyClass, recipient: str) -> None:
        """Best-effort: a failed acknowledgement is logged and never undoes the resolution."""
        try:
            position = await self._repo.get_position(attempt.position_id)
            company = position.company_name if position else ""
            body = acknowledgement_text(reply, company)
            ref = RecipientRef(company_id=position.company_id if position else None, attempt_id=attempt.id)
            key = f"attempt:{attempt.id}:ack"
            if "@" in recipient:
                payload: Payload = EmailPayload(
                    to=recipient, subject="Thanks for your reply", body=body,
                    record_type=NotificationType.MESSAGE_EMAIL, ref=ref, idempotency_key=key,
                )
            else:
                payload = SmsPayload(
                    to=recipient, body=body,
                    record_type=NotificationType.MESSAGE, ref=ref, idempotency_key=key,
                )
            await self._pipeline.deliver([payload])
        except Exception as exc:
            logger.warning(f"Acknowledgement for attempt {attempt.id} failed: {exc}")
            if self._tracker is not None:
                self._tracker.capture(exc, stage="acknowledge", attempt_id=attempt.id)
