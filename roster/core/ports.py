# roster/core/ports.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, Sequence

from roster.core.crewing.domain import (
    AttemptStatus,
    Candidate,
    ContactAttempt,
    HiringStatus,
    OutboundMessage,
    Position,
)
from roster.core.notifications.domain import (
    CallCardPush,
    CallSheet,
    CallSheetMember,
    MemberStatus,
    NotificationRecord,
)
from roster.core.notifications.payloads import EmailPayload, EmailResult, NotificationType


# ============================================================================
# PERSISTENCE
# ============================================================================

class AsyncCrewingRepository(Protocol):
    async def get_position(self, position_id: int) -> Optional[Position]: ...

    async def set_hiring_status(
        self, position_id: int, expected: HiringStatus, new: HiringStatus,
    ) -> bool:
        """Conditional update. True => this caller performed the transition."""
        ...

    async def get_candidate(self, candidate_id: int) -> Optional[Candidate]: ...

    async def list_candidates(self, position_id: int) -> list[Candidate]:
        """Candidates ordered by (priority, id), each with its attempt_count."""
        ...

    async def count_confirmed(self, position_id: int) -> int: ...

    async def has_active_attempt(self, position_id: int) -> bool: ...

    async def create_attempt(
        self, position_id: int, candidate_id: int, response_deadline: datetime, short_id: str,
    ) -> ContactAttempt:
        """Insert in `pending`. Raises ConflictError if the pair already has an active attempt."""
        ...

    async def get_attempt(self, attempt_id: int) -> Optional[ContactAttempt]: ...

    async def transition_attempt(
        self, attempt_id: int, expected: AttemptStatus, new: AttemptStatus,
    ) -> bool:
        """UPDATE ... WHERE status = expected. True => this caller won."""
        ...

    async def claim_send(self, attempt_id: int) -> bool:
        """Take the send claim on a `pending` attempt. True => this caller may deliver."""
        ...

    async def release_send_claim(self, attempt_id: int) -> None:
        """Drop the claim after a failed send so an explicit resend can take it."""
        ...

    async def mark_contacted(self, attempt_id: int, message: OutboundMessage) -> bool:
        """pending → contacted and record the outbound message, atomically."""
        ...

    async def latest_message_to(self, recipient: str) -> Optional[OutboundMessage]: ...


class AsyncNotificationLog(Protocol):
    async def append(self, record: NotificationRecord) -> bool:
        """
        True  => record written
        False => idempotency_key already present, nothing written
        """
        ...

    async def has_prior(self, recipient_address: str, types: Iterable[NotificationType]) -> bool: ...

    async def recent_for_call_sheet(self, call_sheet_id: str, limit: int = 50) -> list[NotificationRecord]: ...


class AsyncCallSheetRepository(Protocol):
    async def get_call_sheet(self, call_sheet_id: str) -> Optional[CallSheet]: ...

    async def list_members(
        self, call_sheet_id: str, statuses: Optional[Iterable[MemberStatus]] = None,
    ) -> list[CallSheetMember]: ...

    async def get_member(self, member_id: str) -> Optional[CallSheetMember]: ...

    async def update_member_status(
        self, member_id: str, status: MemberStatus, *, sent_at: Optional[datetime] = None,
    ) -> None: ...

    async def reset_statuses(self, call_sheet_id: str) -> int:
        """Set every member back to `pending`. Returns rows changed."""
        ...

    async def get_push(self, call_sheet_id: str) -> Optional[CallCardPush]: ...

    async def replace_push(self, push: CallCardPush) -> CallCardPush: ...


# ============================================================================
# OUTBOUND CHANNELS & WORKFLOW ENGINE
# ============================================================================

class SmsSender(Protocol):
    async def send(
        self,
        to: str,
        body: str,
        *,
        status_callback: Optional[str] = None,
        media_urls: Optional[Sequence[str]] = None,
    ) -> str:
        """Returns the provider message id. Raises DeliveryError."""
        ...


class EmailSender(Protocol):
    async def send_batch(self, items: Sequence[EmailPayload]) -> list[EmailResult]: ...


class JobQueue(Protocol):
    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
        run_at: Optional[datetime] = None,
        dedupe_key: Optional[str] = None,
    ) -> str: ...


class ErrorSink(Protocol):
    def capture(self, exc: BaseException, **context: Any) -> None: ...
