#!/usr/bin/env python3
# fieldops/infra/migrate.py
"""
Standalone migration runner.

    python -m fieldops.infra.migrate

Run it before starting the application (CI step, init container or by
hand).  The application itself never applies migrations.
"""
import asyncio
import sys

from fieldops.config import settings
from fieldops.infra.db_async import close_pool, init_pool
from fieldops.infra.logging_config import get_logger, setup_logging
from fieldops.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    logger.info("=" * 60)
    logger.info("Database Migration Runner")
    logger.info(f"Environment: {settings.app_env}")
    logger.info("=" * 60)

    if not settings.database_url:
        logger.critical("DATABASE_URL is not set")
        return 1

    try:
        await init_pool(
            settings.database_url,
            min_size=1,
            max_size=2,
        )
        result = await apply_migrations()
        if result["applied"]:
            for migration in result["applied"]:
                logger.info(f"  ✓ {migration}")
        else:
            logger.info("No new migrations to apply")
        return 0 if result["ok"] else 1
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()


if __name__ == "__main__":
    setup_logging(level="INFO", use_json=False)
    sys.exit(asyncio.run(main()))
