# roster/core/notifications/domain.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from roster.core.notifications.payloads import NotificationType


class MemberStatus(str, Enum):
    PENDING = "pending"
    SENT_CALL_CARD = "sent-call-card"
    CONFIRMED = "confirmed"
    SMS_DELIVERED = "call-card-sms-delivered"
    SMS_FAILED = "call-card-sms-failed"


@dataclass
class NotificationRecord:
    """Append-only log entry for one communication event."""

    type: NotificationType
    company_id: str | None = None
    call_sheet_id: str | None = None
    member_id: str | None = None
    attempt_id: int | None = None
    recipient_address: str | None = None
    content: str | None = None
    external_id: str | None = None
    idempotency_key: str | None = None
    is_read: bool = False
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class CallSheet:
    id: str
    company_id: str
    company_name: str
    job_name: str
    full_date: str | None = None  # MM/dd/yy
    general_crew_call: str | None = None
    short_id: str = ""


@dataclass
class CallSheetMember:
    id: str
    call_sheet_id: str
    name: str
    status: MemberStatus
    short_id: str
    phone: str | None = None
    email: str | None = None
    call_time: str | None = None
    sent_at: datetime | None = None


@dataclass
class CallCardPush:
    """A call-time shift. At most one per call sheet; re-creating replaces it."""

    id: str
    call_sheet_id: str
    hours: int = 0
    minutes: int = 0
    notify: bool = True
    pushed_by: str | None = None
    document_ref: str | None = None
    created_at: datetime | None = None
