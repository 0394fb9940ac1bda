#!/usr/bin/env python3
# roster/infra/migrate.py
"""
Standalone migration runner.

    python -m roster.infra.migrate

Run it in CI/CD before deployment or in a dedicated "migrate"
container. The application validates the schema version at startup
but does NOT run migrations.
"""
import asyncio
import sys

from roster.infra.migrations_async import apply_migrations
from roster.infra.db_async import init_pool, close_pool
from roster.infra.logging_config import setup_logging, get_logger
from roster.config import settings

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


async def main() -> int:
    logger.info("=" * 60)
    logger.info("Database Migration Runner")
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")
    logger.info("=" * 60)

    await init_pool()
    try:
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result['applied']:
        for migration in result['applied']:
            logger.info(f"  applied {migration}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result['ok'] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
