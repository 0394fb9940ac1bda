# roster/infra/pg_crewing_repo_async.py
"""
Async PostgreSQL crewing repository (asyncpg).

Positions, candidates, contact attempts and their outbound messages.
Status changes are conditional updates (``WHERE status = $expected``):
the returned bool says whether this caller performed the transition.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

import asyncpg

from roster.core.crewing.domain import (
    AttemptStatus,
    Candidate,
    ContactAttempt,
    HiringStatus,
    OutboundMessage,
    Position,
    can_transition,
)
from roster.core.errors import ConflictError
from roster.core.ports import AsyncCrewingRepository
from roster.infra.db_resilience_async import safe_db_conn
from roster.infra.logging_config import get_logger
from roster.infra.metrics import AppMetrics

logger = get_logger(__name__)


def _affected(result: str | None) -> int:
    # "UPDATE 1" → 1
    return int(result.split()[-1]) if result else 0


def _row_to_position(row) -> Position:
    return Position(
        id=row["id"],
        project_id=str(row["project_id"]),
        title=row["title"],
        quantity=row["quantity"],
        hiring_status=HiringStatus(row["hiring_status"]),
        company_id=str(row["company_id"]) if row["company_id"] else None,
        company_name=row["company_name"] or "",
        shoot_dates=list(row["dates"] or []),
    )


def _row_to_candidate(row) -> Candidate:
    return Candidate(
        id=row["id"],
        position_id=row["position_id"],
        crew_member_id=row["crew_member_id"],
        priority=row["priority"],
        first_name=row["first_name"],
        phone=row["phone"],
        email=row["email"],
        attempt_count=row["attempt_count"],
    )


def _row_to_attempt(row) -> ContactAttempt:
    return ContactAttempt(
        id=row["id"],
        position_id=row["position_id"],
        candidate_id=row["candidate_id"],
        status=AttemptStatus(row["status"]),
        response_deadline=row["response_deadline"],
        short_id=row["short_id"],
        contacted_at=row["contacted_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row) -> OutboundMessage:
    return OutboundMessage(
        id=row["id"],
        attempt_id=row["attempt_id"],
        channel=row["channel"],
        recipient=row["recipient"],
        external_id=row["external_id"],
        source=row["source"],
        created_at=row["created_at"],
    )


_CANDIDATE_SELECT = """
    SELECT pc.id, pc.position_id, pc.crew_member_id, pc.priority,
           cm.first_name, cm.phone, cm.email,
           (SELECT count(*)::int FROM contact_attempts ca
             WHERE ca.position_id = pc.position_id AND ca.candidate_id = pc.id) AS attempt_count
    FROM position_candidates pc
    JOIN crew_members cm ON cm.id = pc.crew_member_id
"""


class AsyncPostgresCrewingRepository(AsyncCrewingRepository):

    async def get_position(self, position_id: int) -> Optional[Position]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT p.id, p.project_id, p.title, p.quantity, p.hiring_status,
                       pr.dates, c.id AS company_id, c.name AS company_name
                FROM positions p
                JOIN projects pr ON pr.id = p.project_id
                LEFT JOIN companies c ON c.id = pr.company_id
                WHERE p.id = $1
                """,
                position_id,
            )
            return _row_to_position(row) if row else None

    async def set_hiring_status(
        self, position_id: int, expected: HiringStatus, new: HiringStatus,
    ) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "UPDATE positions SET hiring_status = $3 WHERE id = $1 AND hiring_status = $2",
                position_id, expected.value, new.value,
            )
            return _affected(result) == 1

    async def get_candidate(self, candidate_id: int) -> Optional[Candidate]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(_CANDIDATE_SELECT + " WHERE pc.id = $1", candidate_id)
            return _row_to_candidate(row) if row else None

    async def list_candidates(self, position_id: int) -> list[Candidate]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                _CANDIDATE_SELECT + " WHERE pc.position_id = $1 ORDER BY pc.priority, pc.id",
                position_id,
            )
            return [_row_to_candidate(row) for row in rows]

    async def count_confirmed(self, position_id: int) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT count(*)::int FROM contact_attempts WHERE position_id = $1 AND status = 'confirmed'",
                position_id,
            )

    async def has_active_attempt(self, position_id: int) -> bool:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM contact_attempts
                    WHERE position_id = $1 AND status IN ('pending', 'contacted')
                )
                """,
                position_id,
            )

    async def create_attempt(
        self, position_id: int, candidate_id: int, response_deadline: datetime, short_id: str,
    ) -> ContactAttempt:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO contact_attempts (position_id, candidate_id, status, response_deadline, short_id)
                    VALUES ($1, $2, 'pending', $3, $4)
                    RETURNING *
                    """,
                    position_id, candidate_id, response_deadline, short_id,
                )
        except asyncpg.UniqueViolationError as exc:
            if getattr(exc, "constraint_name", None) == "uq_contact_attempts_active":
                raise ConflictError(
                    f"Candidate {candidate_id} already has an active attempt for position {position_id}"
                ) from exc
            raise
        return _row_to_attempt(row)

    async def get_attempt(self, attempt_id: int) -> Optional[ContactAttempt]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM contact_attempts WHERE id = $1", attempt_id)
            return _row_to_attempt(row) if row else None

    async def transition_attempt(
        self, attempt_id: int, expected: AttemptStatus, new: AttemptStatus,
    ) -> bool:
        if not can_transition(expected, new):
            raise ValueError(f"Illegal attempt transition {expected.value} → {new.value}")
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    UPDATE contact_attempts
                    SET status = $3, updated_at = now()
                    WHERE id = $1 AND status = $2
                    """,
                    attempt_id, expected.value, new.value,
                )
        except Exception:
            AppMetrics.database_error("attempt_transition")
            raise
        won = _affected(result) == 1
        if not won:
            logger.debug(f"Attempt {attempt_id}: {expected.value} → {new.value} lost (status changed)")
        return won

    async def claim_send(self, attempt_id: int) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE contact_attempts
                SET send_claimed_at = now(), updated_at = now()
                WHERE id = $1 AND status = 'pending' AND send_claimed_at IS NULL
                """,
                attempt_id,
            )
        return _affected(result) == 1

    async def release_send_claim(self, attempt_id: int) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE contact_attempts
                SET send_claimed_at = NULL, updated_at = now()
                WHERE id = $1 AND status = 'pending'
                """,
                attempt_id,
            )

    async def mark_contacted(self, attempt_id: int, message: OutboundMessage) -> bool:
        async with safe_db_conn(autocommit=False) as conn:
            result = await conn.execute(
                """
                UPDATE contact_attempts
                SET status = 'contacted', contacted_at = now(), updated_at = now()
                WHERE id = $1 AND status = 'pending'
                """,
                attempt_id,
            )
            if _affected(result) != 1:
                return False
            await conn.execute(
                """
                INSERT INTO contact_attempt_messages (attempt_id, channel, source, external_id, recipient)
                VALUES ($1, $2, $3, $4, $5)
                """,
                attempt_id, message.channel, message.source, message.external_id, message.recipient,
            )
            return True

    async def latest_message_to(self, recipient: str) -> Optional[OutboundMessage]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM contact_attempt_messages
                WHERE recipient = $1
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                recipient,
            )
            return _row_to_message(row) if row else None


_crewing_repo: AsyncPostgresCrewingRepository | None = None


def get_crewing_repo() -> AsyncPostgresCrewingRepository:
    global _crewing_repo
    if _crewing_repo is None:
        _crewing_repo = AsyncPostgresCrewingRepository()
    return _crewing_repo
