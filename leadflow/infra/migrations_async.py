# leadflow/infra/migrations_async.py
"""
SQL migrations and schema version checks (asyncpg).

The web/worker processes never migrate on startup. ``python -m
leadflow.infra.migrate`` applies the files in ``leadflow/infra/sql``; the
application only verifies that the latest applied file is the one it was
built against (``settings.expected_schema_version``).
"""
from __future__ import annotations
from pathlib import Path

from leadflow.config import settings
from leadflow.infra.db_async import db_conn
from leadflow.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATE_HINT = "Run migrations first: python -m leadflow.infra.migrate"


def _sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    """Migration files in apply order (lexical: 001_init.sql, 002_...)"""
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply pending migrations in one transaction.

    Returns:
        {"ok": True, "applied": [filenames applied now], "count": n}
    """
    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        done = {row["version"] for row in await conn.fetch("SELECT version FROM schema_migrations")}

        applied_now = []
        for path in migration_files():
            if path.name in done:
                logger.debug(f"Migration {path.name} already applied, skipping")
                continue

            logger.info(f"Applying migration: {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)
            applied_now.append(path.name)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}


async def _latest_migration(conn) -> dict | None:
    exists = await conn.fetchval("SELECT to_regclass('public.schema_migrations') IS NOT NULL")
    if not exists:
        return None
    row = await conn.fetchrow(
        "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
    )
    return dict(row) if row else None


async def validate_schema_version() -> dict:
    """
    Fail startup unless the database is at ``expected_schema_version``.

    Raises:
        RuntimeError: schema missing, empty, or at a different version
    """
    async with db_conn() as conn:
        latest = await _latest_migration(conn)

    if latest is None:
        error = f"Database schema is not initialized. {_MIGRATE_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    current = latest["version"]
    if current != settings.expected_schema_version:
        error = (
            f"Schema version mismatch: expected {settings.expected_schema_version}, "
            f"found {current}. {_MIGRATE_HINT}"
        )
        logger.critical(error, extra={"expected": settings.expected_schema_version, "current": current})
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current}")
    return {"ok": True, "current_version": current, "expected_version": settings.expected_schema_version}


async def get_schema_info() -> dict:
    """Schema state for /ready"""
    async with db_conn() as conn:
        latest = await _latest_migration(conn)

    if latest is None:
        return {
            "initialized": False,
            "latest_version": None,
            "expected_version": settings.expected_schema_version,
            "is_compatible": False,
        }

    return {
        "initialized": True,
        "latest_version": latest["version"],
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest["version"] == settings.expected_schema_version,
    }
