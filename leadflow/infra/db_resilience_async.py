# leadflow/infra/db_resilience_async.py
"""
Async database resilience utilities.

Transient-error classification and connection acquisition with retry.
Only *acquiring* a connection is retried here; a statement that fails
inside a caller's block propagates, so a half-applied side effect is
never silently replayed.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager

import asyncpg
from leadflow.infra.db_async import get_pool
from leadflow.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock
    """
    if isinstance(
        exc,
        (
            asyncpg.PostgresConnectionError,
            asyncpg.TooManyConnectionsError,
            asyncpg.DeadlockDetectedError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
    ):
        return True

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


async def _acquire_with_retry(max_retries: int, initial_delay: float) -> tuple[asyncpg.Pool, asyncpg.Connection]:
    pool = await get_pool()
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            return pool, await pool.acquire()
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= max_retries:
                logger.error(f"Could not acquire database connection after {attempt + 1} attempt(s): {exc}")
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)

    raise RuntimeError("unreachable")  # pragma: no cover


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, max_retries: int = 3):
    """
    Database connection with retry on transient acquisition errors.

    Usage:
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute(...)
            await conn.execute(...)   # same transaction

    Args:
        autocommit: If False, the block runs in a single transaction.
        max_retries: Retries for acquiring the connection.
    """
    pool, conn = await _acquire_with_retry(max_retries, initial_delay=0.1)

    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)
