# roster/core/crewing/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class HiringStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    COMPLETED = "completed"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    NO_RESPONSE = "no_response"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({AttemptStatus.PENDING, AttemptStatus.CONTACTED})

# The only transitions the state machine performs
ALLOWED_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.PENDING: frozenset({AttemptStatus.CONTACTED}),
    AttemptStatus.CONTACTED: frozenset({
        AttemptStatus.CONFIRMED,
        AttemptStatus.DECLINED,
        AttemptStatus.NO_RESPONSE,
    }),
}


def can_transition(current: AttemptStatus, new: AttemptStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


class ReplyClass(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    UNKNOWN = "unknown"


@dataclass
class Position:
    id: int
    project_id: str
    title: str
    quantity: int
    hiring_status: HiringStatus
    company_id: str | None = None
    company_name: str = ""
    shoot_dates: list[str] = field(default_factory=list)  # MM/dd/yy


@dataclass
class Candidate:
    """A crew member queued for a position. Lower priority is contacted first."""

    id: int
    position_id: int
    crew_member_id: int
    priority: int
    first_name: str
    phone: str | None = None
    email: str | None = None
    attempt_count: int = 0


@dataclass
class ContactAttempt:
    id: int
    position_id: int
    candidate_id: int
    status: AttemptStatus
    response_deadline: datetime
    short_id: str
    contacted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class OutboundMessage:
    """A logged send tied to a contact attempt. Immutable once written."""

    attempt_id: int
    channel: str
    recipient: str
    external_id: str | None = None
    source: str = "twilio"
    id: int | None = None
    created_at: datetime | None = None
