# roster/infra/pg_call_sheet_repo_async.py
"""
Async PostgreSQL call-sheet repository (asyncpg): call sheets, their
members' delivery statuses, and the one active push per sheet.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from roster.core.notifications.domain import (
    CallCardPush,
    CallSheet,
    CallSheetMember,
    MemberStatus,
)
from roster.core.ports import AsyncCallSheetRepository
from roster.infra.db_resilience_async import safe_db_conn
from roster.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_sheet(row) -> CallSheet:
    return CallSheet(
        id=str(row["id"]),
        company_id=str(row["company_id"]),
        company_name=row["company_name"] or "",
        job_name=row["job_name"],
        full_date=row["full_date"],
        general_crew_call=row["general_crew_call"],
        short_id=row["short_id"],
    )


def _row_to_member(row) -> CallSheetMember:
    return CallSheetMember(
        id=str(row["id"]),
        call_sheet_id=str(row["call_sheet_id"]),
        name=row["name"],
        status=MemberStatus(row["status"]),
        short_id=row["short_id"],
        phone=row["phone"],
        email=row["email"],
        call_time=row["call_time"],
        sent_at=row["sent_at"],
    )


def _row_to_push(row) -> CallCardPush:
    return CallCardPush(
        id=str(row["id"]),
        call_sheet_id=str(row["call_sheet_id"]),
        hours=row["hours"],
        minutes=row["minutes"],
        notify=row["notify"],
        pushed_by=row["pushed_by"],
        document_ref=row["document_ref"],
        created_at=row["created_at"],
    )


class AsyncPostgresCallSheetRepository(AsyncCallSheetRepository):

    async def get_call_sheet(self, call_sheet_id: str) -> Optional[CallSheet]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT cs.*, c.name AS company_name
                FROM call_sheets cs
                JOIN companies c ON c.id = cs.company_id
                WHERE cs.id = $1
                """,
                call_sheet_id,
            )
            return _row_to_sheet(row) if row else None

    async def list_members(
        self, call_sheet_id: str, statuses: Optional[Iterable[MemberStatus]] = None,
    ) -> list[CallSheetMember]:
        async with safe_db_conn() as conn:
            if statuses is None:
                rows = await conn.fetch(
                    "SELECT * FROM call_sheet_members WHERE call_sheet_id = $1 ORDER BY created_at, id",
                    call_sheet_id,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM call_sheet_members
                    WHERE call_sheet_id = $1 AND status = ANY($2::text[])
                    ORDER BY created_at, id
                    """,
                    call_sheet_id,
                    [s.value for s in statuses],
                )
            return [_row_to_member(row) for row in rows]

    async def get_member(self, member_id: str) -> Optional[CallSheetMember]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM call_sheet_members WHERE id = $1", member_id)
            return _row_to_member(row) if row else None

    async def update_member_status(
        self, member_id: str, status: MemberStatus, *, sent_at: Optional[datetime] = None,
    ) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE call_sheet_members
                SET status = $2, sent_at = COALESCE($3, sent_at)
                WHERE id = $1
                """,
                member_id,
                status.value,
                sent_at,
            )

    async def reset_statuses(self, call_sheet_id: str) -> int:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE call_sheet_members
                SET status = 'pending'
                WHERE call_sheet_id = $1 AND status <> 'pending'
                """,
                call_sheet_id,
            )
            return int(result.split()[-1]) if result else 0

    async def get_push(self, call_sheet_id: str) -> Optional[CallCardPush]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM call_sheet_pushes WHERE call_sheet_id = $1", call_sheet_id,
            )
            return _row_to_push(row) if row else None

    async def replace_push(self, push: CallCardPush) -> CallCardPush:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO call_sheet_pushes (id, call_sheet_id, hours, minutes, notify, pushed_by, document_ref)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (call_sheet_id) DO UPDATE SET
                    id = EXCLUDED.id,
                    hours = EXCLUDED.hours,
                    minutes = EXCLUDED.minutes,
                    notify = EXCLUDED.notify,
                    pushed_by = EXCLUDED.pushed_by,
                    document_ref = EXCLUDED.document_ref,
                    created_at = now()
                RETURNING *
                """,
                push.id,
                push.call_sheet_id,
                push.hours,
                push.minutes,
                push.notify,
                push.pushed_by,
                push.document_ref,
            )
        logger.info(f"Push stored for call sheet {push.call_sheet_id}: {push.hours}h{push.minutes}m notify={push.notify}")
        return _row_to_push(row)


_call_sheet_repo: AsyncPostgresCallSheetRepository | None = None


def get_call_sheet_repo() -> AsyncPostgresCallSheetRepository:
    global _call_sheet_repo
    if _call_sheet_repo is None:
        _call_sheet_repo = AsyncPostgresCallSheetRepository()
    return _call_sheet_repo
