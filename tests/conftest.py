# tests/conftest.py
"""Pytest configuration, in-memory repositories and shared fixtures"""
from __future__ import annotations

import asyncio
import itertools
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from roster.core.crewing.contact_attempt import ContactAttemptService  # noqa: E402
from roster.core.crewing.domain import (  # noqa: E402
    AttemptStatus,
    Candidate,
    ContactAttempt,
    HiringStatus,
    OutboundMessage,
    Position,
    can_transition,
)
from roster.core.crewing.queue_advancer import PositionQueueAdvancer  # noqa: E402
from roster.core.errors import ConflictError, DeliveryError  # noqa: E402
from roster.core.notifications.call_cards import CallCardService  # noqa: E402
from roster.core.notifications.delivery import BatchedDeliveryPipeline  # noqa: E402
from roster.core.notifications.domain import (  # noqa: E402
    CallCardPush,
    CallSheet,
    CallSheetMember,
    MemberStatus,
    NotificationRecord,
)
from roster.core.notifications.first_contact import FirstContactDetector  # noqa: E402
from roster.core.notifications.payloads import (  # noqa: E402
    DeliveryConfig,
    EmailPayload,
    EmailResult,
    NotificationType,
)
from roster.core.notifications.push import PushResetCoordinator  # noqa: E402
from roster.infra.metrics import get_metrics_collector  # noqa: E402

SITE_URL = "https://crew.example.com"
VCARD_URL = "https://crew.example.com/api/vcard"
STATUS_URL = "https://crew.example.com/webhooks/twilio/delivery-status"

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory repositories
# ---------------------------------------------------------------------------

class InMemoryCrewingRepository:
    """Crewing store with the same conditional-update semantics as Postgres."""

    def __init__(self):
        self.positions: dict[int, Position] = {}
        self.candidates: dict[int, Candidate] = {}
        self.attempts: dict[int, ContactAttempt] = {}
        self.messages: list[OutboundMessage] = []
        self.send_claims: set[int] = set()
        self._ids = itertools.count(1)

    def add_position(self, position: Position) -> Position:
        self.positions[position.id] = position
        return position

    def add_candidate(self, candidate: Candidate) -> Candidate:
        self.candidates[candidate.id] = candidate
        return candidate

    def add_attempt(self, position_id: int, candidate_id: int, status: AttemptStatus) -> ContactAttempt:
        attempt = ContactAttempt(
            id=next(self._ids),
            position_id=position_id,
            candidate_id=candidate_id,
            status=status,
            response_deadline=NOW,
            short_id=f"s{len(self.attempts) + 1}",
        )
        self.attempts[attempt.id] = attempt
        return attempt

    async def get_position(self, position_id: int) -> Optional[Position]:
        return self.positions.get(position_id)

    async def set_hiring_status(self, position_id: int, expected: HiringStatus, new: HiringStatus) -> bool:
        position = self.positions.get(position_id)
        if position is None or position.hiring_status != expected:
            return False
        position.hiring_status = new
        return True

    def _with_count(self, candidate: Candidate) -> Candidate:
        count = sum(
            1 for a in self.attempts.values()
            if a.position_id == candidate.position_id and a.candidate_id == candidate.id
        )
        return replace(candidate, attempt_count=count)

    async def get_candidate(self, candidate_id: int) -> Optional[Candidate]:
        candidate = self.candidates.get(candidate_id)
        return self._with_count(candidate) if candidate else None

    async def list_candidates(self, position_id: int) -> list[Candidate]:
        found = [c for c in self.candidates.values() if c.position_id == position_id]
        return [self._with_count(c) for c in sorted(found, key=lambda c: (c.priority, c.id))]

    async def count_confirmed(self, position_id: int) -> int:
        return sum(
            1 for a in self.attempts.values()
            if a.position_id == position_id and a.status == AttemptStatus.CONFIRMED
        )

    async def has_active_attempt(self, position_id: int) -> bool:
        return any(a.position_id == position_id and a.status.is_active for a in self.attempts.values())

    async def create_attempt(
        self, position_id: int, candidate_id: int, response_deadline: datetime, short_id: str,
    ) -> ContactAttempt:
        for a in self.attempts.values():
            if a.position_id == position_id and a.candidate_id == candidate_id and a.status.is_active:
                raise ConflictError(f"Candidate {candidate_id} already has an active attempt")
        attempt = ContactAttempt(
            id=next(self._ids),
            position_id=position_id,
            candidate_id=candidate_id,
            status=AttemptStatus.PENDING,
            response_deadline=response_deadline,
            short_id=short_id,
        )
        self.attempts[attempt.id] = attempt
        return replace(attempt)

    async def get_attempt(self, attempt_id: int) -> Optional[ContactAttempt]:
        attempt = self.attempts.get(attempt_id)
        return replace(attempt) if attempt else None

    async def transition_attempt(self, attempt_id: int, expected: AttemptStatus, new: AttemptStatus) -> bool:
        if not can_transition(expected, new):
            raise ValueError(f"Illegal attempt transition {expected.value} → {new.value}")
        attempt = self.attempts.get(attempt_id)
        if attempt is None or attempt.status != expected:
            return False
        attempt.status = new
        return True

    async def claim_send(self, attempt_id: int) -> bool:
        attempt = self.attempts.get(attempt_id)
        if attempt is None or attempt.status != AttemptStatus.PENDING or attempt_id in self.send_claims:
            return False
        self.send_claims.add(attempt_id)
        return True

    async def release_send_claim(self, attempt_id: int) -> None:
        attempt = self.attempts.get(attempt_id)
        if attempt is not None and attempt.status == AttemptStatus.PENDING:
            self.send_claims.discard(attempt_id)

    async def mark_contacted(self, attempt_id: int, message: OutboundMessage) -> bool:
        attempt = self.attempts.get(attempt_id)
        if attempt is None or attempt.status != AttemptStatus.PENDING:
            return False
        attempt.status = AttemptStatus.CONTACTED
        attempt.contacted_at = NOW
        self.messages.append(replace(message, id=len(self.messages) + 1))
        return True

    async def latest_message_to(self, recipient: str) -> Optional[OutboundMessage]:
        for message in reversed(self.messages):
            if message.recipient == recipient:
                return message
        return None


class InMemoryNotificationLog:
    def __init__(self):
        self.records: list[NotificationRecord] = []
        self.fail_appends = False

    async def append(self, record: NotificationRecord) -> bool:
        if self.fail_appends:
            raise RuntimeError("notification_log unavailable")
        if record.idempotency_key and any(
            r.idempotency_key == record.idempotency_key for r in self.records
        ):
            return False
        self.records.append(replace(record, id=len(self.records) + 1, created_at=NOW))
        return True

    async def has_prior(self, recipient_address: str, types: Iterable[NotificationType]) -> bool:
        wanted = set(types)
        return any(r.recipient_address == recipient_address and r.type in wanted for r in self.records)

    async def recent_for_call_sheet(self, call_sheet_id: str, limit: int = 50) -> list[NotificationRecord]:
        found = [r for r in self.records if r.call_sheet_id == call_sheet_id]
        return list(reversed(found))[:limit]

    def of_type(self, record_type: NotificationType) -> list[NotificationRecord]:
        return [r for r in self.records if r.type == record_type]


class InMemoryCallSheetRepository:
    def __init__(self):
        self.sheets: dict[str, CallSheet] = {}
        self.members: dict[str, CallSheetMember] = {}
        self.pushes: dict[str, CallCardPush] = {}

    def add_sheet(self, sheet: CallSheet) -> CallSheet:
        self.sheets[sheet.id] = sheet
        return sheet

    def add_member(self, member: CallSheetMember) -> CallSheetMember:
        self.members[member.id] = member
        return member

    async def get_call_sheet(self, call_sheet_id: str) -> Optional[CallSheet]:
        return self.sheets.get(call_sheet_id)

    async def list_members(
        self, call_sheet_id: str, statuses: Optional[Iterable[MemberStatus]] = None,
    ) -> list[CallSheetMember]:
        wanted = set(statuses) if statuses is not None else None
        return [
            replace(m) for m in self.members.values()
            if m.call_sheet_id == call_sheet_id and (wanted is None or m.status in wanted)
        ]

    async def get_member(self, member_id: str) -> Optional[CallSheetMember]:
        member = self.members.get(member_id)
        return replace(member) if member else None

    async def update_member_status(
        self, member_id: str, status: MemberStatus, *, sent_at: Optional[datetime] = None,
    ) -> None:
        member = self.members[member_id]
        member.status = status
        if sent_at is not None:
            member.sent_at = sent_at

    async def reset_statuses(self, call_sheet_id: str) -> int:
        count = 0
        for member in self.members.values():
            if member.call_sheet_id == call_sheet_id and member.status != MemberStatus.PENDING:
                member.status = MemberStatus.PENDING
                count += 1
        return count

    async def get_push(self, call_sheet_id: str) -> Optional[CallCardPush]:
        return self.pushes.get(call_sheet_id)

    async def replace_push(self, push: CallCardPush) -> CallCardPush:
        self.pushes[push.call_sheet_id] = push
        return push


class InMemoryJobQueue:
    """Records enqueued jobs; a repeated dedupe_key returns the existing id."""

    def __init__(self):
        self.jobs: list[dict[str, Any]] = []

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
        run_at: datetime | None = None,
        dedupe_key: str | None = None,
    ) -> str:
        if dedupe_key:
            for job in self.jobs:
                if job["dedupe_key"] == dedupe_key:
                    return job["id"]
        job = {
            "id": f"job-{len(self.jobs) + 1}",
            "job_type": job_type,
            "payload": payload,
            "max_attempts": max_attempts,
            "run_at": run_at,
            "dedupe_key": dedupe_key,
        }
        self.jobs.append(job)
        return job["id"]

    def of_type(self, job_type: str) -> list[dict[str, Any]]:
        return [j for j in self.jobs if j["job_type"] == job_type]


# ---------------------------------------------------------------------------
# Senders and sinks
# ---------------------------------------------------------------------------

class FakeSmsSender:
    """Records sends. Addresses in ``failing`` raise DeliveryError."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.failing: set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, to, body, *, status_callback=None, media_urls=None) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if to in self.failing:
                raise DeliveryError("Twilio rejected the message", channel="sms", recipient=to[:4])
            self.sent.append({
                "to": to,
                "body": body,
                "status_callback": status_callback,
                "media_urls": list(media_urls or []),
            })
            return f"SM{len(self.sent):04d}"
        finally:
            self.in_flight -= 1

    def bodies_to(self, to: str) -> list[str]:
        return [s["body"] for s in self.sent if s["to"] == to]


class FakeEmailSender:
    def __init__(self):
        self.batches: list[list[EmailPayload]] = []
        self.failing: set[str] = set()
        self.raise_on_batch: Optional[int] = None

    async def send_batch(self, items) -> list[EmailResult]:
        self.batches.append(list(items))
        if self.raise_on_batch == len(self.batches):
            raise DeliveryError("SMTP connection refused", channel="email")
        return [
            EmailResult(to=i.to, ok=False, error="mailbox unavailable") if i.to in self.failing
            else EmailResult(to=i.to, ok=True, message_id=f"<m{n}@roster>")
            for n, i in enumerate(items)
        ]

    @property
    def sent(self) -> list[EmailPayload]:
        return [i for batch in self.batches for i in batch if i.to not in self.failing]


class RecordingTracker:
    def __init__(self):
        self.captured: list[tuple[BaseException, dict]] = []

    def capture(self, exc: BaseException, **context) -> None:
        self.captured.append((exc, context))


class RecordingAlert:
    def __init__(self):
        self.messages: list[str] = []

    async def __call__(self, text: str) -> bool:
        self.messages.append(text)
        return True


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


@pytest.fixture
def crewing_repo():
    return InMemoryCrewingRepository()


@pytest.fixture
def notification_log():
    return InMemoryNotificationLog()


@pytest.fixture
def call_sheet_repo():
    return InMemoryCallSheetRepository()


@pytest.fixture
def job_queue():
    return InMemoryJobQueue()


@pytest.fixture
def sms_sender():
    return FakeSmsSender()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def tracker():
    return RecordingTracker()


@pytest.fixture
def alerts():
    return RecordingAlert()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def delivery_config():
    return DeliveryConfig(sms_batch_size=50, email_batch_size=100, inter_batch_delay=1.0)


@pytest.fixture
def pipeline(sms_sender, email_sender, notification_log, call_sheet_repo, tracker, sleeper, delivery_config):
    return BatchedDeliveryPipeline(
        sms_sender,
        email_sender,
        notification_log,
        delivery_config,
        tracker=tracker,
        members=call_sheet_repo,
        first_contact=FirstContactDetector(notification_log, VCARD_URL),
        sleep=sleeper,
        clock=lambda: NOW,
    )


@pytest.fixture
def attempt_service(crewing_repo, notification_log, pipeline, job_queue, tracker, alerts):
    short_ids = (f"short{n}" for n in itertools.count(1))
    return ContactAttemptService(
        crewing_repo,
        notification_log,
        pipeline,
        job_queue,
        site_url=SITE_URL,
        tracker=tracker,
        alert=alerts,
        clock=lambda: NOW,
        short_id_factory=lambda: next(short_ids),
    )


@pytest.fixture
def advancer(crewing_repo, job_queue):
    return PositionQueueAdvancer(crewing_repo, job_queue)


@pytest.fixture
def call_card_service(call_sheet_repo, notification_log, pipeline, alerts):
    return CallCardService(
        call_sheet_repo,
        notification_log,
        pipeline,
        site_url=SITE_URL,
        status_callback_url=STATUS_URL,
        alert=alerts,
    )


@pytest.fixture
def push_coordinator(call_sheet_repo, pipeline, job_queue):
    return PushResetCoordinator(
        call_sheet_repo,
        pipeline,
        job_queue,
        site_url=SITE_URL,
        status_callback_url=STATUS_URL,
    )


@pytest.fixture
def position(crewing_repo):
    """Open position for one gaffer on a two-day shoot, candidates C1 (prio 1) and C2 (prio 2)."""
    pos = crewing_repo.add_position(Position(
        id=1,
        project_id="proj-1",
        title="Gaffer",
        quantity=1,
        hiring_status=HiringStatus.OPEN,
        company_id="co-1",
        company_name="Acme Films",
        shoot_dates=["03/03/26", "03/05/26"],
    ))
    crewing_repo.add_candidate(Candidate(
        id=11, position_id=1, crew_member_id=101, priority=1, first_name="Dana", phone="+15550000001",
    ))
    crewing_repo.add_candidate(Candidate(
        id=12, position_id=1, crew_member_id=102, priority=2, first_name="Lee", phone="+15550000002",
    ))
    return pos


@pytest.fixture
def call_sheet(call_sheet_repo):
    return call_sheet_repo.add_sheet(CallSheet(
        id="cs-1",
        company_id="co-1",
        company_name="Acme Films",
        job_name="Night Shoot",
        full_date="03/03/26",
        general_crew_call="7am",
        short_id="CS1",
    ))
