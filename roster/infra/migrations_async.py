# roster/infra/migrations_async.py
"""
Async database migrations runner and schema version check (asyncpg).

The application never migrates on startup: migrations run through
``python -m roster.infra.migrate`` and the app only validates that the
latest applied migration matches ``settings.expected_schema_version``.
"""
from __future__ import annotations
from pathlib import Path

from roster.config import settings
from roster.infra.db_async import db_conn
from roster.infra.logging_config import get_logger

logger = get_logger(__name__)


def _sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


async def apply_migrations() -> dict:
    """
    Apply SQL migrations from roster/infra/sql in alphabetical order.

    Already applied migrations are tracked in the schema_migrations table.

    Returns:
        dict with keys ok, applied (filenames applied in this run), count
    """
    files = sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())

    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row['version'] for row in rows}

        applied_now = []
        for p in files:
            version = p.name
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_migrations(version) VALUES ($1)",
                version
            )

            applied_now.append(version)
            logger.info(f"Migration {version} applied successfully")

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}


async def validate_schema_version() -> dict:
    """
    Check that the latest applied migration matches the expected version.

    Raises:
        RuntimeError: If migrations were never applied or the version differs
    """
    async with db_conn() as conn:
        table_exists = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_schema = 'public'
                AND table_name = 'schema_migrations'
            )
            """
        )
        if not table_exists:
            error = "Schema migrations table not found. Run migrations first: python -m roster.infra.migrate"
            logger.critical(error)
            raise RuntimeError(error)

        current_version = await conn.fetchval(
            "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    expected = settings.expected_schema_version
    if current_version != expected:
        error = f"Schema version mismatch: current={current_version}, expected={expected}"
        logger.critical(error)
        raise RuntimeError(error)

    logger.info(f"Schema version OK: {current_version}")
    return {"ok": True, "current_version": current_version, "expected_version": expected}
