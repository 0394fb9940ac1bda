# roster/infra/pg_notification_repo_async.py
"""
Async PostgreSQL notification log (asyncpg).

Append-only. ``idempotency_key`` is unique: appending a record whose
key already exists writes nothing, so a re-executed job step cannot
log the same send twice.
"""
from __future__ import annotations

from typing import Iterable

from roster.core.notifications.domain import NotificationRecord
from roster.core.notifications.payloads import NotificationType
from roster.core.ports import AsyncNotificationLog
from roster.infra.db_resilience_async import safe_db_conn
from roster.infra.logging_config import get_logger
from roster.infra.metrics import inc_counter

logger = get_logger(__name__)


def _row_to_record(row) -> NotificationRecord:
    return NotificationRecord(
        id=row["id"],
        type=NotificationType(row["type"]),
        company_id=str(row["company_id"]) if row["company_id"] else None,
        call_sheet_id=str(row["call_sheet_id"]) if row["call_sheet_id"] else None,
        member_id=str(row["call_sheet_member"]) if row["call_sheet_member"] else None,
        attempt_id=row["attempt_id"],
        recipient_address=row["recipient_address"],
        content=row["content"],
        external_id=row["external_id"],
        idempotency_key=row["idempotency_key"],
        is_read=row["is_read"],
        created_at=row["created_at"],
    )


class AsyncPostgresNotificationLog(AsyncNotificationLog):

    async def append(self, record: NotificationRecord) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                INSERT INTO notification_log (
                    type, company_id, call_sheet_id, call_sheet_member, attempt_id,
                    recipient_address, content, external_id, idempotency_key
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (idempotency_key) DO NOTHING
                """,
                record.type.value,
                record.company_id,
                record.call_sheet_id,
                record.member_id,
                record.attempt_id,
                record.recipient_address,
                record.content,
                record.external_id,
                record.idempotency_key,
            )
        written = bool(result) and int(result.split()[-1]) == 1
        inc_counter("notification_records_total", type=record.type.value, written=str(written).lower())
        return written

    async def has_prior(self, recipient_address: str, types: Iterable[NotificationType]) -> bool:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM notification_log
                    WHERE recipient_address = $1 AND type = ANY($2::text[])
                )
                """,
                recipient_address,
                [t.value for t in types],
            )

    async def recent_for_call_sheet(self, call_sheet_id: str, limit: int = 50) -> list[NotificationRecord]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM notification_log
                WHERE call_sheet_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2
                """,
                call_sheet_id,
                limit,
            )
            return [_row_to_record(row) for row in rows]


_notification_log: AsyncPostgresNotificationLog | None = None


def get_notification_log() -> AsyncPostgresNotificationLog:
    global _notification_log
    if _notification_log is None:
        _notification_log = AsyncPostgresNotificationLog()
    return _notification_log
