#!/usr/bin/env python3
# leadflow/infra/migrate.py
"""
Standalone migration runner.

    python -m leadflow.infra.migrate

Run it in CI/CD or as an init container before the dispatch service
starts; the service itself only validates the schema version.
"""
import asyncio
import sys

from leadflow.config import settings
from leadflow.infra.db_async import init_pool, close_pool
from leadflow.infra.logging_config import setup_logging, get_logger
from leadflow.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    target = "DATABASE_URL" if settings.database_url else f"{settings.pghost}:{settings.pgport}/{settings.pgdatabase}"
    logger.info(f"Migrating {target} (env={settings.app_env})")

    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for name in result["applied"]:
            logger.info(f"  applied {name}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result["ok"] else 1


def cli() -> None:
    setup_logging(level=settings.log_level, use_json=settings.log_json)
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
