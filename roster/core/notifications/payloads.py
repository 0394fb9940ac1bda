# roster/core/notifications/payloads.py
"""
Delivery value types.

Outbound notifications are a tagged variant: ``SmsPayload`` or
``EmailPayload``, each carrying only the fields its channel needs.
The pipeline routes on the concrete type, never on dict shape.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class NotificationType(str, Enum):
    """Notification log record types."""

    MESSAGE = "message"
    MESSAGE_DELIVERED = "message_delivered"
    MESSAGE_FAILED = "message_failed"
    MESSAGE_EMAIL = "message_email"
    CALL_CARD_SENT = "call_card_sent"
    CALL_CARD_DELIVERED = "call_card_delivered"
    CALL_CARD_FAILED = "call_card_failed"
    CALL_CARD_CONFIRMED = "call_card_confirmed"
    CALL_CARD_PUSH_SENT = "call_card_push_sent"
    CALL_CARD_EMAIL_SENT = "call_card_email_sent"
    OUTREACH_SENT = "outreach_sent"
    OUTREACH_EMAIL_SENT = "outreach_email_sent"
    OUTREACH_REPLY = "outreach_reply"


@dataclass(frozen=True)
class RecipientRef:
    """Entities a delivery is recorded against."""

    company_id: str | None = None
    call_sheet_id: str | None = None
    member_id: str | None = None
    attempt_id: int | None = None


@dataclass(frozen=True)
class SmsPayload:
    to: str
    body: str
    media_urls: tuple[str, ...] = ()
    status_callback: str | None = None
    record_type: NotificationType = NotificationType.MESSAGE
    ref: RecipientRef = field(default_factory=RecipientRef)
    idempotency_key: str | None = None
    mark_status: str | None = None  # member status to set after a successful send

    @property
    def channel(self) -> Channel:
        return Channel.SMS


@dataclass(frozen=True)
class EmailPayload:
    to: str
    subject: str
    body: str
    html: str | None = None
    tags: tuple[str, ...] = ()
    record_type: NotificationType = NotificationType.MESSAGE_EMAIL
    ref: RecipientRef = field(default_factory=RecipientRef)
    idempotency_key: str | None = None
    mark_status: str | None = None

    @property
    def channel(self) -> Channel:
        return Channel.EMAIL


Payload = Union[SmsPayload, EmailPayload]


@dataclass(frozen=True)
class EmailResult:
    """Per-item outcome of ``EmailSender.send_batch``."""

    to: str
    ok: bool
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class DeliveryConfig:
    """Provider throughput limits, passed into the pipeline at construction."""

    sms_batch_size: int = 50
    email_batch_size: int = 100
    inter_batch_delay: float = 1.0

    def __post_init__(self):
        if self.sms_batch_size < 1 or self.email_batch_size < 1:
            raise ValueError("batch sizes must be >= 1")
        if self.inter_batch_delay < 0:
            raise ValueError("inter_batch_delay must be >= 0")

    @classmethod
    def from_settings(cls, s) -> "DeliveryConfig":
        return cls(
            sms_batch_size=max(1, s.sms_batch_size),
            email_batch_size=max(1, s.email_batch_size),
            inter_batch_delay=max(0.0, s.inter_batch_delay_seconds),
        )

    def batch_size(self, channel: Channel) -> int:
        return self.sms_batch_size if channel is Channel.SMS else self.email_batch_size


@dataclass
class DeliveryResult:
    payload: Payload
    ok: bool
    external_id: str | None = None
    error: str | None = None


@dataclass
class ChannelSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass
class DeliverySummary:
    sms: ChannelSummary = field(default_factory=ChannelSummary)
    email: ChannelSummary = field(default_factory=ChannelSummary)
    results: list[DeliveryResult] = field(default_factory=list)

    def for_channel(self, channel: Channel) -> ChannelSummary:
        return self.sms if channel is Channel.SMS else self.email

    @property
    def attempted(self) -> int:
        return self.sms.attempted + self.email.attempted

    @property
    def succeeded(self) -> int:
        return self.sms.succeeded + self.email.succeeded

    @property
    def failed(self) -> int:
        return self.sms.failed + self.email.failed

    def report(self) -> str:
        return f"sent to {self.succeeded} of {self.attempted}"

    def as_dict(self) -> dict:
        return {
            "sms": vars(self.sms).copy(),
            "email": vars(self.email).copy(),
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "report": self.report(),
        }
